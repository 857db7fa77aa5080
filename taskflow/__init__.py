"""
Taskflow - Task Lifecycle & Review Engine

Backend core for a multi-role production dashboard. Moves units of work
("tasks") through department-specific production stages, gates every move on
the actor's role, routes client approval and revision feedback, and keeps every
connected viewer consistent through pushed change events.

Components (leaf-first):
- task_model: closed vocabulary, stage graphs, records
- task_store: versioned task records with compare-and-swap updates
- attachment_ledger: append-only deliverable files per task
- comment_log: append-only comment threads per task
- accounts: server-side account directory (role/department lookup)
- role_gate: pure role-authorization gate
- stage_engine: forward stage transitions (assign, start, mark-stage-done, submit-for-review)
- revision_loop: client approve / reject-with-feedback
- notification_dispatcher: per-recipient notifications and role-correct deep links
- change_feed / realtime: change events, read-through cache, viewer fan-out
- service / api / main: wiring and the FastAPI surface
"""

__version__ = "1.0.0"
