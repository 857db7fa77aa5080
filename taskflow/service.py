"""
Taskflow Service - Component Wiring

Builds the engine's components from Settings and exposes the operations
the HTTP layer needs that are not themselves transitions: task creation,
scoped task listing and the status board, the department activity log,
comments, and notification reads with per-viewer link resolution.
"""

import logging
from typing import Optional, Dict, Any, List, Tuple

from .accounts import AccountDirectory
from .attachment_ledger import AttachmentLedger
from .change_feed import ChangeFeed
from .comment_log import CommentLog
from .config import (
    ATTACHMENTS_FILE,
    COMMENTS_FILE,
    NOTIFICATIONS_FILE,
    TASKS_SNAPSHOT_FILE,
    TRANSITION_AUDIT_FILE,
    Settings,
)
from .notification_dispatcher import (
    ROLE_PATHS,
    NotificationDispatcher,
    NotificationStore,
    load_role_paths,
    resolve_link_for_viewer,
    webhook_channel,
)
from .realtime import RealtimeBroadcaster, default_task_filters
from .revision_loop import RevisionLoopController
from .role_gate import check_permission
from .stage_engine import StageTransitionEngine
from .task_model import (
    Actor,
    Comment,
    Department,
    Task,
    TaskAction,
    TaskStatus,
    TaskType,
    TransitionError,
    TransitionResult,
    UserRole,
)
from .task_store import TaskStore

logger = logging.getLogger("taskflow_service")

BOARD_TASK_LIMIT = 1000


class TaskflowService:
    """All engine components, wired against one change feed."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        s = self.settings

        self.feed = ChangeFeed()
        self.directory = AccountDirectory(s.accounts_file)
        self.store = TaskStore(s.state_file(TASKS_SNAPSHOT_FILE), self.feed)
        self.ledger = AttachmentLedger(s.state_file(ATTACHMENTS_FILE), self.feed)
        self.comments = CommentLog(s.state_file(COMMENTS_FILE), self.feed)
        self.notifications = NotificationStore(s.state_file(NOTIFICATIONS_FILE), self.feed)

        self.role_paths = load_role_paths(s.role_paths_file) if s.role_paths_file else ROLE_PATHS
        self.dispatcher = NotificationDispatcher(self.notifications, self.directory, self.role_paths)
        if s.notification_webhook_url:
            self.dispatcher.register_channel("webhook", webhook_channel(s.notification_webhook_url))

        self.engine = StageTransitionEngine(
            store=self.store,
            ledger=self.ledger,
            dispatcher=self.dispatcher,
            audit_log=s.state_file(TRANSITION_AUDIT_FILE),
            require_final_for_review=s.require_final_for_review,
        )
        self.revisions = RevisionLoopController(self.engine)
        self.broadcaster = RealtimeBroadcaster(self.feed, self.store)

        logger.info(
            f"Taskflow service initialized (state_dir={s.state_dir}, "
            f"require_final_for_review={s.require_final_for_review})"
        )

    # -------------------------------------------------------------------------
    # Actors
    # -------------------------------------------------------------------------

    def resolve_actor(self, user_id: str) -> Optional[Actor]:
        """Current role/department of an account, looked up on every call."""
        return self.directory.resolve_actor(user_id)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    async def create_task(
        self,
        actor: Actor,
        title: str,
        department: Department,
        task_type: TaskType,
        **fields: Any,
    ) -> TransitionResult:
        """Create a task in stage "new". Admins and the department's leads only."""
        allowed = actor.role == UserRole.ADMIN or (
            actor.role in UserRole.leads()
            and (actor.department is None or actor.department == department)
        )
        if not allowed:
            return TransitionResult.fail(
                TransitionError.UNAUTHORIZED,
                f"Role '{actor.role.value}' cannot create '{department.value}' tasks",
            )
        if not (title or "").strip():
            return TransitionResult.fail(TransitionError.VALIDATION_ERROR, "Task title cannot be empty")

        task = await self.store.create_task(
            title=title.strip(),
            department=department,
            task_type=task_type,
            created_by=actor.user_id,
            **fields,
        )
        return TransitionResult.ok(task, "Task created")

    def can_view(self, actor: Actor, task: Task) -> bool:
        filters = default_task_filters(actor)
        if filters is None:
            return True
        record = task.to_dict()
        return any(all(record.get(k) == v for k, v in f.items()) for f in filters)

    async def get_task_for(self, actor: Actor, task_id: str) -> Tuple[Optional[Task], Optional[TransitionError]]:
        task = await self.store.get_task(task_id)
        if task is None:
            return None, TransitionError.NOT_FOUND
        if not self.can_view(actor, task):
            return None, TransitionError.UNAUTHORIZED
        return task, None

    async def list_tasks_for(
        self,
        actor: Actor,
        status: Optional[TaskStatus] = None,
        task_type: Optional[TaskType] = None,
        limit: int = 100,
    ) -> List[Task]:
        """Tasks visible to the actor, newest first."""
        if actor.role == UserRole.CLIENT:
            tasks = await self.store.list_tasks(client_id=actor.user_id, status=status, task_type=task_type, limit=limit)
        elif actor.role in UserRole.specialists():
            tasks = await self.store.list_tasks(assigned_to=actor.user_id, status=status, task_type=task_type, limit=limit)
        elif actor.role in UserRole.leads() and actor.department is not None:
            tasks = await self.store.list_tasks(
                department=actor.department, status=status, task_type=task_type, limit=limit
            )
        elif actor.role == UserRole.ACCOUNTANT:
            tasks = []
        else:
            tasks = await self.store.list_tasks(status=status, task_type=task_type, limit=limit)
        return tasks

    async def task_board_for(self, actor: Actor) -> Dict[str, List[Task]]:
        """
        Visible tasks grouped into one column per status, most recently updated first.

        Every status has a column, empty or not.
        """
        tasks = await self.list_tasks_for(actor, limit=BOARD_TASK_LIMIT)
        tasks.sort(key=lambda t: t.updated_at, reverse=True)
        columns: Dict[str, List[Task]] = {status.value: [] for status in TaskStatus}
        for task in tasks:
            columns[task.status.value].append(task)
        return columns

    # -------------------------------------------------------------------------
    # Activity Log
    # -------------------------------------------------------------------------

    def activity_for(
        self,
        actor: Actor,
        task_id: Optional[str] = None,
        department: Optional[Department] = None,
        limit: int = 100,
    ) -> Tuple[List[Dict[str, Any]], Optional[TransitionError]]:
        """
        Audit entries an admin or lead may read, newest first.

        Leads with a department only see their own department.
        """
        if actor.role == UserRole.ADMIN:
            scope = department
        elif actor.role in UserRole.leads():
            if actor.department is not None and department not in (None, actor.department):
                return [], TransitionError.UNAUTHORIZED
            scope = actor.department or department
        else:
            return [], TransitionError.UNAUTHORIZED
        return self.engine.read_audit(task_id=task_id, department=scope, limit=limit), None

    # -------------------------------------------------------------------------
    # Comments
    # -------------------------------------------------------------------------

    async def add_comment(
        self,
        task_id: str,
        actor: Actor,
        content: str,
    ) -> Tuple[TransitionResult, Optional[Comment]]:
        task = await self.store.get_task(task_id)
        if task is None:
            return TransitionResult.fail(TransitionError.NOT_FOUND, f"Task '{task_id}' not found"), None

        decision = check_permission(actor.role, actor.department, task, TaskAction.COMMENT, actor.user_id)
        if not decision.allowed:
            return TransitionResult.fail(TransitionError.UNAUTHORIZED, decision.reason, task), None
        if not (content or "").strip():
            return TransitionResult.fail(TransitionError.VALIDATION_ERROR, "Comment cannot be empty", task), None

        comment = await self.comments.add_comment(task_id, actor.user_id, content)
        return TransitionResult.ok(task, "Comment added"), comment

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def list_notifications(
        self,
        actor: Actor,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """A user's notifications with links resolved for their current role."""
        items = await self.notifications.list_for_user(actor.user_id, unread_only=unread_only, limit=limit)
        result = []
        for notification in items:
            data = notification.to_dict()
            data["link"] = resolve_link_for_viewer(notification.link, actor.role, self.role_paths)
            data["stored_link"] = notification.link
            result.append(data)
        return result


# -----------------------------------------------------------------------------
# Global Service Instance
# -----------------------------------------------------------------------------

_service_instance: Optional[TaskflowService] = None


def get_service() -> TaskflowService:
    """Get or create the service singleton."""
    global _service_instance
    if _service_instance is None:
        _service_instance = TaskflowService()
    return _service_instance


logger.info("Taskflow service module loaded")
