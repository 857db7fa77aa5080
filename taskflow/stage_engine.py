"""
Stage Transition Engine

The task state machine proper. Given the task's current stage, its task
type's stage graph and the requested action, it computes the next state
and applies it through the task store's compare-and-swap.

Key features:
- Deterministic forward progress (no branching, no stage skipping)
- Role gate consulted on every request
- Optimistic concurrency: a lost race is reported as CONFLICT, never overwritten
- Idempotent retries via from_stage: re-sending mark-stage-done against an
  already-advanced stage is an INVALID_TRANSITION, never a double advance
- Immutable JSONL audit trail of accepted and refused transitions, readable
  per task or department (the activity log)
- Best-effort notifications after every accepted transition

Check order for every mutating call:
    NOT_FOUND → CONFLICT (expected_version) → ALREADY_TERMINAL →
    INVALID_TRANSITION (from_stage) → UNAUTHORIZED → INVALID_TRANSITION →
    VALIDATION_ERROR → compare-and-swap (CONFLICT on loss)
"""

import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from .attachment_ledger import AttachmentLedger
from .notification_dispatcher import NotificationDispatcher
from .role_gate import check_permission
from .task_model import (
    Actor,
    Attachment,
    Department,
    Task,
    TaskAction,
    TaskStatus,
    TransitionError,
    TransitionRecord,
    TransitionResult,
    WorkflowStage,
    first_production_stage,
    last_pre_review_stage,
    next_stage,
    return_stage,
    stage_owners,
    utc_now,
)
from .task_store import TaskStore

logger = logging.getLogger("stage_engine")

Plan = Tuple[Optional[TransitionError], str, Dict[str, Any]]


class StageTransitionEngine:
    """
    Forward stage transitions: assign, start, mark-stage-done, submit-for-review.

    Also owns the shared commit path (compare-and-swap, audit, notify) used by
    the revision loop, deliverable uploads and administrative close.
    """

    def __init__(
        self,
        store: TaskStore,
        ledger: AttachmentLedger,
        dispatcher: Optional[NotificationDispatcher] = None,
        audit_log: Optional[Path] = None,
        require_final_for_review: bool = False,
    ):
        """
        Args:
            store: Task store (single shared mutable resource)
            ledger: Attachment ledger consulted for final deliverables
            dispatcher: Notification dispatcher (None disables notifications)
            audit_log: JSONL audit trail path (None disables the trail)
            require_final_for_review: also require a final attachment when
                mark-stage-done moves a task into review
        """
        self._store = store
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._audit_log = audit_log
        self._require_final_for_review = require_final_for_review

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def ledger(self) -> AttachmentLedger:
        return self._ledger

    # -------------------------------------------------------------------------
    # Planning (pure)
    # -------------------------------------------------------------------------

    def plan_transition(
        self,
        task: Task,
        action: TaskAction,
        assignee_id: Optional[str] = None,
        editor_id: Optional[str] = None,
    ) -> Plan:
        """
        Compute the field changes for an advance action.

        Returns (error, message, changes); error is None when the action is
        valid from the task's current state.
        """
        stage = task.workflow_stage

        if action == TaskAction.ASSIGN:
            if stage == WorkflowStage.REVIEW:
                return TransitionError.INVALID_TRANSITION, "Cannot reassign a task in review", {}
            if not assignee_id and not editor_id:
                return TransitionError.VALIDATION_ERROR, "assign requires assignee_id or editor_id", {}
            changes: Dict[str, Any] = {}
            if assignee_id:
                changes["assigned_to"] = assignee_id
            if editor_id:
                changes["editor_id"] = editor_id
            return None, "Assignment updated", changes

        if action == TaskAction.START:
            if stage == WorkflowStage.NEW:
                target = first_production_stage(task.task_type)
                return None, f"Started: {stage.value} -> {target.value}", {
                    "workflow_stage": target,
                    "status": TaskStatus.IN_PROGRESS,
                }
            if task.status == TaskStatus.REVISION:
                return None, f"Revision resumed at {stage.value}", {"status": TaskStatus.IN_PROGRESS}
            return TransitionError.INVALID_TRANSITION, f"Task already started (stage '{stage.value}')", {}

        if action == TaskAction.MARK_STAGE_DONE:
            target = next_stage(task.task_type, stage)
            if target is None:
                return (
                    TransitionError.INVALID_TRANSITION,
                    f"No stage follows '{stage.value}' for '{task.task_type.value}' tasks",
                    {},
                )
            status = TaskStatus.IN_REVIEW if target == WorkflowStage.REVIEW else TaskStatus.IN_PROGRESS
            return None, f"Stage done: {stage.value} -> {target.value}", {
                "workflow_stage": target,
                "status": status,
            }

        if action == TaskAction.SUBMIT_FOR_REVIEW:
            expected = last_pre_review_stage(task.task_type)
            if stage != expected:
                return (
                    TransitionError.INVALID_TRANSITION,
                    f"Submit for review is only valid from '{expected.value}' (stage is '{stage.value}')",
                    {},
                )
            return None, f"Submitted for review from {stage.value}", {
                "workflow_stage": WorkflowStage.REVIEW,
                "status": TaskStatus.IN_REVIEW,
            }

        return TransitionError.INVALID_TRANSITION, f"'{action.value}' is not an advance action", {}

    # -------------------------------------------------------------------------
    # Advance
    # -------------------------------------------------------------------------

    async def advance(
        self,
        task_id: str,
        actor: Actor,
        action: Any,
        assignee_id: Optional[str] = None,
        editor_id: Optional[str] = None,
        from_stage: Optional[Any] = None,
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """
        Apply an advance action to a task.

        Args:
            task_id: Task to advance
            actor: Acting account (role/department resolved server-side)
            action: assign, start, mark-stage-done or submit-for-review
            assignee_id / editor_id: new assignees (assign only)
            from_stage: stage the caller believes the task is in; makes retries idempotent
            expected_version: version the caller last read; mismatch is a CONFLICT
        """
        try:
            requested = TaskAction(action)
        except ValueError:
            return TransitionResult.fail(TransitionError.INVALID_TRANSITION, f"Unknown action '{action}'")
        if requested not in TaskAction.advance_actions():
            return TransitionResult.fail(
                TransitionError.INVALID_TRANSITION,
                f"'{requested.value}' is not an advance action",
            )

        expected_stage: Optional[WorkflowStage] = None
        if from_stage is not None:
            try:
                expected_stage = WorkflowStage(from_stage)
            except ValueError:
                return TransitionResult.fail(TransitionError.VALIDATION_ERROR, f"Unknown stage '{from_stage}'")

        task, failure = await self.load_for_action(task_id, actor, requested, expected_version, expected_stage)
        if failure is not None:
            return failure

        error, message, changes = self.plan_transition(task, requested, assignee_id, editor_id)
        if error is not None:
            return await self.refuse(task, actor, requested, error, message)

        entering_review = changes.get("workflow_stage") == WorkflowStage.REVIEW
        final_required = requested == TaskAction.SUBMIT_FOR_REVIEW or (
            entering_review and self._require_final_for_review
        )
        if final_required and not await self._ledger.list_final(task.id):
            return await self.refuse(
                task,
                actor,
                requested,
                TransitionError.VALIDATION_ERROR,
                "A final attachment is required before review",
            )

        return await self.commit(task, actor, requested, changes, message)

    # -------------------------------------------------------------------------
    # Administrative Close
    # -------------------------------------------------------------------------

    async def close(
        self,
        task_id: str,
        actor: Actor,
        reason: str,
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """Administratively reject a task (terminal status "rejected")."""
        task, failure = await self.load_for_action(task_id, actor, TaskAction.CLOSE, expected_version)
        if failure is not None:
            return failure
        if not (reason or "").strip():
            return await self.refuse(
                task, actor, TaskAction.CLOSE, TransitionError.VALIDATION_ERROR, "A reason is required to close a task"
            )
        return await self.commit(
            task,
            actor,
            TaskAction.CLOSE,
            {"status": TaskStatus.REJECTED},
            f"Closed: {reason.strip()}",
            feedback=reason.strip(),
        )

    # -------------------------------------------------------------------------
    # Deliverables
    # -------------------------------------------------------------------------

    async def upload_deliverable(
        self,
        task_id: str,
        actor: Actor,
        file_url: str,
        file_name: str,
        is_final: bool = False,
        file_type: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> Tuple[TransitionResult, Optional[Attachment]]:
        """
        Attach an uploaded file to a task. Does not change the stage.

        `file_url`/`file_name` come from blob storage; this core never sees file bytes.
        """
        task, failure = await self.load_for_action(task_id, actor, TaskAction.UPLOAD)
        if failure is not None:
            return failure, None
        if not (file_url or "").strip() or not (file_name or "").strip():
            return TransitionResult.fail(
                TransitionError.VALIDATION_ERROR, "file_url and file_name are required", task
            ), None
        if file_size is not None and file_size < 0:
            return TransitionResult.fail(
                TransitionError.VALIDATION_ERROR, "file_size cannot be negative", task
            ), None

        attachment = await self._ledger.add_attachment(
            task_id=task.id,
            file_url=file_url.strip(),
            file_name=file_name.strip(),
            uploaded_by=actor.user_id,
            is_final=is_final,
            file_type=file_type,
            file_size=file_size,
        )
        await self._log_audit(
            task=task,
            event="attachment_added",
            from_stage=task.workflow_stage.value,
            to_stage=task.workflow_stage.value,
            action=TaskAction.UPLOAD.value,
            actor=actor,
            reason=f"{'final' if is_final else 'draft'}: {attachment.file_name}",
            metadata={"attachment_id": attachment.id},
        )
        return TransitionResult.ok(task, "Attachment added"), attachment

    async def mark_final(self, attachment_id: str, actor: Actor) -> TransitionResult:
        """Flag an existing attachment as a final deliverable."""
        attachment = await self._ledger.get(attachment_id)
        if attachment is None:
            return TransitionResult.fail(TransitionError.NOT_FOUND, f"Attachment '{attachment_id}' not found")

        task, failure = await self.load_for_action(attachment.task_id, actor, TaskAction.UPLOAD)
        if failure is not None:
            return failure

        success, message = await self._ledger.mark_final(attachment_id)
        if not success:
            return TransitionResult.fail(TransitionError.NOT_FOUND, message, task)
        return TransitionResult.ok(task, message)

    # -------------------------------------------------------------------------
    # Guidance
    # -------------------------------------------------------------------------

    def available_actions(self, task: Task, actor: Actor) -> List[TaskAction]:
        """Actions the actor could successfully request right now."""
        if task.is_terminal:
            return []

        actions: List[TaskAction] = []
        for action in TaskAction:
            decision = check_permission(actor.role, actor.department, task, action, actor.user_id)
            if not decision.allowed:
                continue
            if action in TaskAction.advance_actions():
                error, _, _ = self.plan_transition(task, action, assignee_id=actor.user_id)
                if error is not None:
                    continue
            elif action in TaskAction.review_actions():
                if task.workflow_stage != WorkflowStage.REVIEW:
                    continue
            actions.append(action)
        return actions

    def get_guidance(self, task: Task, actor: Actor) -> Dict[str, Any]:
        """
        What happens next for this task, from the actor's point of view.
        """
        stage = task.workflow_stage
        following = next_stage(task.task_type, stage)

        if task.is_terminal:
            waiting_for = None
        elif stage == WorkflowStage.REVIEW:
            waiting_for = "client"
        else:
            owners = stage_owners(task.task_type, stage)
            waiting_for = ", ".join(sorted(r.value for r in owners)) if owners else "team lead"

        return {
            "task_id": task.id,
            "status": task.status.value,
            "current_stage": stage.value,
            "next_stage": following.value if following and not task.is_terminal else None,
            "return_stage": return_stage(task.task_type).value,
            "waiting_for": waiting_for,
            "available_actions": [a.value for a in self.available_actions(task, actor)],
            "version": task.version,
        }

    # -------------------------------------------------------------------------
    # Shared Load / Commit Path
    # -------------------------------------------------------------------------

    async def load_for_action(
        self,
        task_id: str,
        actor: Actor,
        action: TaskAction,
        expected_version: Optional[int] = None,
        expected_stage: Optional[WorkflowStage] = None,
    ) -> Tuple[Optional[Task], Optional[TransitionResult]]:
        """
        Load a task and run the checks common to every mutating action.

        Returns (task, None) when the action may proceed, else (task_or_None, failure).
        """
        task = await self._store.get_task(task_id)
        if task is None:
            return None, TransitionResult.fail(TransitionError.NOT_FOUND, f"Task '{task_id}' not found")

        if expected_version is not None and task.version != expected_version:
            return task, TransitionResult.fail(
                TransitionError.CONFLICT,
                f"Task {task_id} changed: expected version {expected_version}, found {task.version}",
                task,
            )

        if task.is_terminal:
            return task, await self.refuse(
                task,
                actor,
                action,
                TransitionError.ALREADY_TERMINAL,
                f"Task is already {task.status.value}",
            )

        if expected_stage is not None and task.workflow_stage != expected_stage:
            return task, await self.refuse(
                task,
                actor,
                action,
                TransitionError.INVALID_TRANSITION,
                f"Task is no longer in stage '{expected_stage.value}' (now '{task.workflow_stage.value}')",
            )

        decision = check_permission(actor.role, actor.department, task, action, actor.user_id)
        if not decision.allowed:
            return task, await self.refuse(task, actor, action, TransitionError.UNAUTHORIZED, decision.reason)

        return task, None

    async def refuse(
        self,
        task: Task,
        actor: Actor,
        action: TaskAction,
        error: TransitionError,
        message: str,
    ) -> TransitionResult:
        """Audit and return a refused transition."""
        await self._log_audit(
            task=task,
            event="transition_rejected",
            from_stage=task.workflow_stage.value,
            to_stage=None,
            action=action.value,
            actor=actor,
            reason=f"{error.value}: {message}",
            metadata={"version": task.version},
        )
        logger.info(f"Refused {action.value} on task {task.id} by {actor.user_id} ({error.value}): {message}")
        return TransitionResult.fail(error, message, task)

    async def commit(
        self,
        task: Task,
        actor: Actor,
        action: TaskAction,
        changes: Dict[str, Any],
        message: str,
        feedback: Optional[str] = None,
        recipients: Optional[List[str]] = None,
    ) -> TransitionResult:
        """
        Write `changes` with compare-and-swap against the version `task` was read at,
        then audit and notify.
        """
        success, cas_message, updated = await self._store.compare_and_swap(task.id, task.version, changes)
        if not success:
            if updated is None:
                return TransitionResult.fail(TransitionError.NOT_FOUND, cas_message)
            return await self.refuse(updated, actor, action, TransitionError.CONFLICT, cas_message)

        record = TransitionRecord(
            task_id=task.id,
            action=action,
            actor_id=actor.user_id,
            actor_role=actor.role,
            from_stage=task.workflow_stage,
            to_stage=updated.workflow_stage,
            from_status=task.status,
            to_status=updated.status,
            feedback=feedback,
        )

        await self._log_audit(
            task=task,
            event="transition_completed",
            from_stage=task.workflow_stage.value,
            to_stage=updated.workflow_stage.value,
            action=action.value,
            actor=actor,
            reason=message,
            metadata={
                "record_id": record.record_id,
                "from_status": task.status.value,
                "to_status": updated.status.value,
                "version": updated.version,
            },
        )

        logger.info(
            f"Task {task.id}: {task.workflow_stage.value}/{task.status.value} -> "
            f"{updated.workflow_stage.value}/{updated.status.value} "
            f"(action: {action.value}, by: {actor.user_id})"
        )

        if self._dispatcher is not None:
            await self._dispatcher.notify(updated, record, recipients)

        return TransitionResult.ok(updated, message)

    # -------------------------------------------------------------------------
    # Audit Logging
    # -------------------------------------------------------------------------
    async def _log_audit(
        self,
        task: Task,
        event: str,
        from_stage: Optional[str],
        to_stage: Optional[str],
        action: str,
        actor: Actor,
        reason: str,
        metadata: Dict[str, Any],
    ) -> None:
        """
        Log an entry to the immutable audit trail.
        """
        if self._audit_log is None:
            return
        try:
            self._audit_log.parent.mkdir(parents=True, exist_ok=True)

            entry = {
                "timestamp": utc_now().isoformat(),
                "task_id": task.id,
                "department": task.department.value,
                "event": event,
                "from_stage": from_stage,
                "to_stage": to_stage,
                "action": action,
                "actor_id": actor.user_id,
                "role": actor.role.value,
                "reason": reason,
                "metadata": metadata,
            }

            with open(self._audit_log, "a") as f:
                f.write(json.dumps(entry) + "\n")

        except IOError as e:
            logger.warning(f"Failed to write audit log: {e}")

    def read_audit(
        self,
        task_id: Optional[str] = None,
        department: Optional[Department] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        Read the audit trail, newest first.

        Args:
            task_id: only entries for this task
            department: only entries for tasks of this department
            limit: maximum number of entries returned
        """
        if self._audit_log is None or not self._audit_log.exists():
            return []

        entries: List[Dict[str, Any]] = []
        try:
            with open(self._audit_log, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    if task_id and entry.get("task_id") != task_id:
                        continue
                    if department and entry.get("department") != department.value:
                        continue
                    entries.append(entry)
        except IOError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries.reverse()
        return entries[:limit]


logger.info("Stage Transition Engine module loaded")
