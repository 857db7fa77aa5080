"""
Notification Dispatcher - Per-Recipient Notifications and Deep Links

On every accepted transition this module:
1. Works out who is affected (department leads, the client once a task
   reaches review, the responsible specialist after assignment or revision)
2. Creates one notification per recipient with a deep link in the
   *actor's* role-prefixed path convention (e.g. /team-leader/revisions)
3. Hands the notification to registered delivery channels in the
   background (fire-and-forget), so a slow channel never delays the transition

At read time, resolve_link_for_viewer() rewrites a stored link onto the
reader's own dashboard so a single stored link works for every role.

IMPORTANT:
- Best-effort: a failure here is logged and never fails the transition
- No retries; the notification record is the source of truth
- resolve_link_for_viewer is pure and total, it never raises
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable, Awaitable, FrozenSet, Set, Tuple

import httpx
import yaml

from .accounts import AccountDirectory
from .change_feed import ChangeEvent, ChangeEventType, ChangeFeed, NOTIFICATIONS_TABLE
from .task_model import (
    Notification,
    Task,
    TaskAction,
    TransitionRecord,
    UserRole,
    WorkflowStage,
    new_id,
    responsible_user,
    utc_now,
)

logger = logging.getLogger("notification_dispatcher")

DEFAULT_ROLE_PATHS_FILE = Path(__file__).parent / "role_paths.yaml"
ROOT_PATH = "/"


# -----------------------------------------------------------------------------
# Role Base-Path Table
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class RolePath:
    """Dashboard root of a role and the top-level sub-paths it serves."""
    base: str
    known_subpaths: FrozenSet[str]


def load_role_paths(path: Optional[Path] = None) -> Dict[UserRole, RolePath]:
    """
    Load the role → {base, known_subpaths} table from YAML.

    Every role must be present; a missing role is a configuration error.
    """
    source = path or DEFAULT_ROLE_PATHS_FILE
    data = yaml.safe_load(source.read_text()) or {}
    entries = data.get("roles", {})

    table: Dict[UserRole, RolePath] = {}
    for role_name, entry in entries.items():
        role = UserRole(role_name)
        base = "/" + str(entry["base"]).strip("/")
        subpaths = frozenset(str(s).strip("/") for s in entry.get("subpaths", []) or [])
        table[role] = RolePath(base=base, known_subpaths=subpaths)

    missing = [r.value for r in UserRole if r not in table]
    if missing:
        raise ValueError(f"Role path table {source} is missing roles: {missing}")
    return table


ROLE_PATHS: Dict[UserRole, RolePath] = load_role_paths()


def _split_suffix(link: str) -> Tuple[str, str]:
    """Split '/a/b?x=1#y' into ('/a/b', '?x=1#y')."""
    cut = len(link)
    for marker in ("?", "#"):
        index = link.find(marker)
        if index != -1:
            cut = min(cut, index)
    return link[:cut], link[cut:]


def _match_base(path: str, table: Dict[UserRole, RolePath]) -> Optional[str]:
    """Longest role base path that `path` starts with, on a segment boundary."""
    best: Optional[str] = None
    for role_path in table.values():
        base = role_path.base
        if path == base or path.startswith(base + "/"):
            if best is None or len(base) > len(best):
                best = base
    return best


def resolve_link_for_viewer(
    link: Optional[str],
    viewer_role: Any,
    role_paths: Optional[Dict[UserRole, RolePath]] = None,
) -> str:
    """
    Rewrite a stored deep link for the role reading it.

    - Same base path as the viewer: returned unchanged
    - Sub-path known to the viewer: viewer base + sub-path
    - Otherwise: the viewer's dashboard root

    Examples:
        ("/team-leader/revisions", "account_manager") -> "/account-manager/revisions"
        ("/team-leader/logs", "client") -> "/client"
        ("/client/tasks", "client") -> "/client/tasks"
    """
    table = role_paths or ROLE_PATHS

    try:
        viewer: Optional[UserRole] = UserRole(viewer_role)
    except (ValueError, TypeError):
        viewer = None
    viewer_path = table.get(viewer) if viewer is not None else None
    fallback = viewer_path.base if viewer_path else ROOT_PATH

    if viewer_path is None or not isinstance(link, str) or not link.startswith("/"):
        return fallback

    path, suffix = _split_suffix(link)
    matched = _match_base(path, table)
    if matched is None:
        return fallback
    if matched == viewer_path.base:
        return link

    rest = path[len(matched):]
    segment = rest.strip("/").split("/")[0]
    if segment and segment in viewer_path.known_subpaths:
        return viewer_path.base + rest + suffix
    return viewer_path.base


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------

class NotificationTemplates:
    """Title, message and link sub-path for each kind of transition."""

    @staticmethod
    def for_transition(task: Task, transition: TransitionRecord) -> Tuple[str, str, str]:
        """Returns (title, message, subpath)."""
        title = task.title
        action = transition.action

        if action == TaskAction.REJECT:
            return (
                "Revision Requested",
                f'Changes requested on "{title}": {transition.feedback}',
                "/revisions",
            )
        if action == TaskAction.APPROVE:
            return (
                "Task Approved",
                f'"{title}" was approved',
                "/tasks",
            )
        if action == TaskAction.CLOSE:
            reason = f": {transition.feedback}" if transition.feedback else ""
            return (
                "Task Closed",
                f'"{title}" was closed{reason}',
                "/tasks",
            )
        if action == TaskAction.ASSIGN:
            return (
                "New Task Assigned",
                f'You have been assigned to "{title}"',
                "/schedule",
            )
        if transition.to_stage == WorkflowStage.REVIEW:
            return (
                "Ready for Review",
                f'"{title}" is ready for review',
                "/tasks",
            )
        if action == TaskAction.START and transition.from_stage == transition.to_stage:
            return (
                "Revision In Progress",
                f'Work resumed on "{title}" at {transition.to_stage.value}',
                "/schedule",
            )
        return (
            "Stage Completed",
            f'"{title}" moved from {transition.from_stage.value} to {transition.to_stage.value}',
            "/schedule",
        )


# -----------------------------------------------------------------------------
# Notification Store
# -----------------------------------------------------------------------------

RECORD_NOTIFICATION = "notification"
RECORD_READ = "read"


class NotificationStore:
    """
    Notification persistence keyed by recipient.

    Creations and read-marks are appended to a JSONL log and replayed on
    start-up.
    """

    def __init__(
        self,
        log_file: Optional[Path] = None,
        change_feed: Optional[ChangeFeed] = None,
    ):
        self._log_file = log_file
        self._feed = change_feed
        self._notifications: Dict[str, Notification] = {}
        self._replay()

    async def create(
        self,
        user_id: str,
        title: str,
        message: str,
        link: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            id=new_id(),
            user_id=user_id,
            title=title,
            message=message,
            link=link,
            task_id=task_id,
        )
        self._append_record({"record_type": RECORD_NOTIFICATION, **notification.to_dict()})
        self._notifications[notification.id] = notification
        self._publish(ChangeEventType.INSERT, notification)
        return notification

    async def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[Notification]:
        """Notifications of one recipient, newest first."""
        items = [n for n in self._notifications.values() if n.user_id == user_id]
        if unread_only:
            items = [n for n in items if not n.is_read]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items[:limit]

    async def unread_count(self, user_id: str) -> int:
        return sum(1 for n in self._notifications.values() if n.user_id == user_id and not n.is_read)

    async def mark_read(self, notification_id: str, user_id: str) -> bool:
        """Mark one notification read. Only its recipient may do so."""
        notification = self._notifications.get(notification_id)
        if notification is None or notification.user_id != user_id:
            return False
        if not notification.is_read:
            self._set_read([notification])
        return True

    async def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification of a user read. Returns the count."""
        unread = [n for n in self._notifications.values() if n.user_id == user_id and not n.is_read]
        self._set_read(unread)
        return len(unread)

    def _set_read(self, notifications: List[Notification]) -> None:
        for notification in notifications:
            self._append_record({
                "record_type": RECORD_READ,
                "notification_id": notification.id,
                "read_at": utc_now().isoformat(),
            })
            old = Notification.from_dict(notification.to_dict())
            notification.is_read = True
            self._publish(ChangeEventType.UPDATE, notification, old=old)

    def _publish(self, event_type: ChangeEventType, notification: Notification, old: Optional[Notification] = None) -> None:
        if self._feed is None:
            return
        self._feed.publish(ChangeEvent(
            table=NOTIFICATIONS_TABLE,
            event_type=event_type,
            record=notification.to_dict(),
            old_record=old.to_dict() if old else None,
        ))

    def _append_record(self, record: Dict[str, Any]) -> None:
        if self._log_file is None:
            return
        self._log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self._log_file, "a") as f:
            f.write(json.dumps(record) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _replay(self) -> None:
        if self._log_file is None or not self._log_file.exists():
            return
        with open(self._log_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    continue
                record_type = record.pop("record_type", RECORD_NOTIFICATION)
                if record_type == RECORD_NOTIFICATION:
                    notification = Notification.from_dict(record)
                    self._notifications[notification.id] = notification
                elif record_type == RECORD_READ:
                    existing = self._notifications.get(record.get("notification_id"))
                    if existing is not None:
                        existing.is_read = True


# -----------------------------------------------------------------------------
# Delivery Channels
# -----------------------------------------------------------------------------

ChannelHandler = Callable[[Notification], Awaitable[bool]]


def webhook_channel(url: str, timeout: float = 10.0) -> ChannelHandler:
    """Channel that POSTs each notification as JSON to `url`."""

    async def send(notification: Notification) -> bool:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(url, json=notification.to_dict())
            if response.status_code >= 300:
                logger.warning(f"Webhook returned {response.status_code} for notification {notification.id}")
                return False
            return True

    return send


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------

class NotificationDispatcher:
    """
    Creates notifications for the parties affected by a transition.

    Features:
    - Recipient selection from the task and the account directory
    - Links in the acting role's path convention
    - Pluggable delivery channels (webhook, ...)
    """

    def __init__(
        self,
        store: NotificationStore,
        directory: Optional[AccountDirectory] = None,
        role_paths: Optional[Dict[UserRole, RolePath]] = None,
    ):
        self._store = store
        self._directory = directory
        self._role_paths = role_paths or ROLE_PATHS
        self._channels: Dict[str, ChannelHandler] = {}
        self._deliveries: Set[asyncio.Task] = set()

    @property
    def store(self) -> NotificationStore:
        return self._store

    @property
    def role_paths(self) -> Dict[UserRole, RolePath]:
        return self._role_paths

    def register_channel(self, name: str, handler: ChannelHandler) -> None:
        """Register a notification delivery channel."""
        self._channels[name] = handler
        logger.info(f"Registered notification channel: {name}")

    # -------------------------------------------------------------------------
    # Recipients and Links
    # -------------------------------------------------------------------------

    def recipients_for(self, task: Task, transition: TransitionRecord) -> List[str]:
        """
        Users affected by a transition, in notification order, without the actor.
        """
        leads = self._directory.leads_for(task.department) if self._directory else []
        action = transition.action
        candidates: List[Optional[str]] = []

        if action == TaskAction.ASSIGN:
            candidates = [task.assigned_to, task.editor_id]
        elif action == TaskAction.REJECT:
            candidates = [task.assigned_to, *leads]
        elif action in (TaskAction.APPROVE, TaskAction.CLOSE):
            candidates = [*leads, task.assigned_to, task.editor_id]
        elif transition.to_stage == WorkflowStage.REVIEW:
            candidates = [task.client_id, *leads]
        else:
            # Forward progress: managers, plus whoever picks up the new stage
            candidates = [*leads, responsible_user(task, transition.to_stage)]

        recipients: List[str] = []
        for user_id in candidates:
            if user_id and user_id != transition.actor_id and user_id not in recipients:
                recipients.append(user_id)
        return recipients

    def build_link(self, actor_role: UserRole, subpath: str) -> str:
        role_path = self._role_paths.get(actor_role)
        base = role_path.base if role_path else ""
        return (base + subpath) or ROOT_PATH

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def notify(
        self,
        task: Task,
        transition: TransitionRecord,
        recipients: Optional[List[str]] = None,
    ) -> List[Notification]:
        """
        Create and deliver one notification per recipient.

        Never raises. Returns the notifications that were created.
        """
        created: List[Notification] = []
        try:
            if recipients is None:
                recipients = self.recipients_for(task, transition)
            title, message, subpath = NotificationTemplates.for_transition(task, transition)
            link = self.build_link(transition.actor_role, subpath)
        except Exception as e:
            logger.error(f"Failed to prepare notifications for task {task.id}: {e}")
            return created

        for user_id in recipients:
            try:
                notification = await self._store.create(
                    user_id=user_id,
                    title=title,
                    message=message,
                    link=link,
                    task_id=task.id,
                )
            except Exception as e:
                logger.error(f"Failed to create notification for {user_id} on task {task.id}: {e}")
                continue
            created.append(notification)
            if self._channels:
                self._schedule_delivery(notification)

        if created:
            logger.info(
                f"Notified {len(created)} recipient(s) of {transition.action.value} on task {task.id}"
            )
        return created

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    def _schedule_delivery(self, notification: Notification) -> None:
        task = asyncio.create_task(self._deliver(notification))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Notification delivery task failed: {error}")

    async def drain(self) -> None:
        """Wait for every in-flight channel delivery (called on shutdown)."""
        if not self._deliveries:
            return
        logger.info(f"Waiting for {len(self._deliveries)} notification delivery(ies)")
        await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def _deliver(self, notification: Notification) -> bool:
        delivered = False
        for name, handler in self._channels.items():
            try:
                if await handler(notification):
                    delivered = True
            except Exception as e:
                logger.error(f"Channel {name} delivery failed: {e}")
        return delivered


logger.info("Notification Dispatcher module loaded")
