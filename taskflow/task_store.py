"""
Task Store - Versioned Task Records with Compare-And-Swap

Durable record of each task's identity, classification and lifecycle
position. Every mutation goes through compare_and_swap(), which succeeds
only if the caller's expected version matches the stored one.

Key features:
- Optimistic concurrency via an explicit version counter (updated_at bumped alongside)
- All-or-nothing updates: the new record is validated and persisted before
  it becomes visible; a failed snapshot write leaves the store unchanged
- Only lifecycle fields are mutable; classification is fixed at creation
- Atomic JSON snapshot persistence (temp file + replace)
- Committed writes are published to the change feed
"""

import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from .change_feed import ChangeEvent, ChangeEventType, ChangeFeed, TASKS_TABLE
from .task_model import (
    Department,
    MUTABLE_TASK_FIELDS,
    Task,
    TaskStatus,
    TaskType,
    WorkflowStage,
    new_id,
    utc_now,
)

logger = logging.getLogger("task_store")


class TaskStore:
    """
    Shared task records.

    Reads return copies; the stored record only changes through
    compare_and_swap() under the store lock, which linearizes writes per task.
    """

    def __init__(
        self,
        state_file: Optional[Path] = None,
        change_feed: Optional[ChangeFeed] = None,
    ):
        """
        Initialize store.

        Args:
            state_file: JSON snapshot path (None keeps tasks in memory only)
            change_feed: Feed that receives committed changes
        """
        self._state_file = state_file
        self._feed = change_feed
        self._tasks: Dict[str, Task] = {}
        self._lock = asyncio.Lock()
        self._load_state()

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def create_task(
        self,
        title: str,
        department: Department,
        task_type: TaskType,
        created_by: str,
        assigned_to: Optional[str] = None,
        editor_id: Optional[str] = None,
        client_id: Optional[str] = None,
        project_id: Optional[str] = None,
        description: str = "",
        deadline: Optional[str] = None,
        scheduled_date: Optional[str] = None,
        scheduled_time: Optional[str] = None,
        location: Optional[str] = None,
        company_name: Optional[str] = None,
    ) -> Task:
        """Create a task in stage "new" with version 1."""
        if not title.strip():
            raise ValueError("Task title cannot be empty")

        now = utc_now()
        task = Task(
            id=new_id(),
            title=title,
            department=department,
            task_type=task_type,
            created_by=created_by,
            status=TaskStatus.NEW,
            workflow_stage=WorkflowStage.NEW,
            assigned_to=assigned_to,
            editor_id=editor_id,
            client_id=client_id,
            project_id=project_id,
            description=description,
            deadline=deadline,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            location=location,
            company_name=company_name,
            created_at=now,
            updated_at=now,
            version=1,
        )

        async with self._lock:
            pending = dict(self._tasks)
            pending[task.id] = task
            if not self._save_state(pending):
                raise IOError(f"Failed to persist new task {task.id}")
            self._tasks = pending

        logger.info(f"Created task {task.id} ({task.task_type.value}/{task.department.value}): {title}")
        self._publish(ChangeEventType.INSERT, task)
        return task.copy()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.copy() if task else None

    async def list_tasks(
        self,
        assigned_to: Optional[str] = None,
        client_id: Optional[str] = None,
        department: Optional[Department] = None,
        status: Optional[TaskStatus] = None,
        task_type: Optional[TaskType] = None,
        limit: int = 100,
    ) -> List[Task]:
        """
        List tasks with optional filtering, newest first.
        """
        tasks = list(self._tasks.values())

        if assigned_to:
            tasks = [t for t in tasks if t.assigned_to == assigned_to or t.editor_id == assigned_to]
        if client_id:
            tasks = [t for t in tasks if t.client_id == client_id]
        if department:
            tasks = [t for t in tasks if t.department == department]
        if status:
            tasks = [t for t in tasks if t.status == status]
        if task_type:
            tasks = [t for t in tasks if t.task_type == task_type]

        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return [t.copy() for t in tasks[:limit]]

    # -------------------------------------------------------------------------
    # Conditional Update
    # -------------------------------------------------------------------------

    async def compare_and_swap(
        self,
        task_id: str,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> Tuple[bool, str, Optional[Task]]:
        """
        Apply `changes` iff the stored version equals `expected_version`.

        Returns (success, message, task). On a version mismatch the current
        record is returned so the caller can re-sync; an unknown id returns None.
        A failed snapshot write also returns (False, message, current) and
        leaves the record untouched. Raises ValueError for changes to immutable
        fields or changes that would break a record invariant (nothing is
        written in that case).
        """
        illegal = set(changes) - MUTABLE_TASK_FIELDS
        if illegal:
            raise ValueError(f"Fields cannot be changed after creation: {sorted(illegal)}")

        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                return False, f"Task '{task_id}' not found", None

            if current.version != expected_version:
                return (
                    False,
                    f"Version conflict on task {task_id}: expected {expected_version}, found {current.version}",
                    current.copy(),
                )

            # replace() re-runs __post_init__, so an invalid result never lands
            updated = replace(
                current,
                **changes,
                version=current.version + 1,
                updated_at=utc_now(),
            )
            pending = dict(self._tasks)
            pending[task_id] = updated
            if not self._save_state(pending):
                return False, f"Failed to persist task {task_id}; update not applied", current.copy()
            self._tasks = pending

        logger.debug(f"Task {task_id} updated to version {updated.version}: {sorted(changes)}")
        self._publish(ChangeEventType.UPDATE, updated, old=current)
        return True, f"Task updated to version {updated.version}", updated.copy()

    # -------------------------------------------------------------------------
    # Change Events
    # -------------------------------------------------------------------------

    def _publish(self, event_type: ChangeEventType, task: Task, old: Optional[Task] = None) -> None:
        if self._feed is None:
            return
        self._feed.publish(ChangeEvent(
            table=TASKS_TABLE,
            event_type=event_type,
            record=task.to_dict(),
            old_record=old.to_dict() if old else None,
        ))

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load_state(self) -> None:
        """Load the snapshot file, if any."""
        if self._state_file is None or not self._state_file.exists():
            return
        try:
            state = json.loads(self._state_file.read_text())
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to load task snapshot: {e}")
            return

        for task_data in state.get("tasks", {}).values():
            try:
                task = Task.from_dict(task_data)
            except (KeyError, ValueError) as e:
                logger.warning(f"Failed to deserialize task: {e}")
                continue
            self._tasks[task.id] = task

    def _save_state(self, tasks: Dict[str, Task]) -> bool:
        """
        Save `tasks` as the snapshot atomically. Caller holds the lock.

        Returns False if the snapshot could not be written.
        """
        if self._state_file is None:
            return True
        state = {
            "tasks": {task_id: task.to_dict() for task_id, task in tasks.items()},
            "last_updated": utc_now().isoformat(),
        }
        temp_file = self._state_file.with_suffix(".tmp")
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file.write_text(json.dumps(state, indent=2, default=str))
            temp_file.replace(self._state_file)
        except IOError as e:
            logger.error(f"Failed to save task snapshot: {e}")
            if temp_file.exists():
                temp_file.unlink()
            return False
        return True

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def recover_state(self) -> Dict[str, Any]:
        """
        Summarize recovered state after restart.
        """
        summary: Dict[str, Any] = {
            "total": len(self._tasks),
            "by_status": {},
            "by_stage": {},
            "active": [],
        }

        for task in self._tasks.values():
            status_val = task.status.value
            summary["by_status"][status_val] = summary["by_status"].get(status_val, 0) + 1
            stage_val = task.workflow_stage.value
            summary["by_stage"][stage_val] = summary["by_stage"].get(stage_val, 0) + 1
            if not task.is_terminal:
                summary["active"].append({
                    "id": task.id,
                    "title": task.title,
                    "task_type": task.task_type.value,
                    "stage": stage_val,
                })

        logger.info(f"Recovered {summary['total']} tasks ({len(summary['active'])} active)")
        return summary


logger.info("Task Store module loaded")
