"""
Realtime Broadcaster

Keeps every open dashboard consistent without polling. The broadcaster
subscribes to the change feed for tasks, attachments, comments and
notifications and fans each committed event out to the viewer sessions
that can see it.

Each session holds a read-through cache of task records keyed by task id.
An entry is loaded from the task store on first read and dropped exactly
when a change event for that id arrives; it is never invalidated
speculatively. Viewers may briefly read a stale stage until the push
arrives, but every session converges within one broadcast cycle.

IMPORTANT:
- READ-ONLY: the broadcaster never mutates task state
- Fan-out never blocks the writer (events are queued per session)
- Session queues are bounded; a viewer that falls behind is disconnected
  and re-syncs from the store when it reconnects
- A failing session is logged and skipped, never propagated
"""

import asyncio
import logging
from typing import Optional, Dict, Any, List, Callable, Awaitable, Set

from .change_feed import (
    ATTACHMENTS_TABLE,
    COMMENTS_TABLE,
    NOTIFICATIONS_TABLE,
    TASKS_TABLE,
    ChangeEvent,
    ChangeFeed,
    Subscription,
)
from .task_model import Actor, Task, UserRole, new_id
from .task_store import TaskStore

logger = logging.getLogger("realtime")

TaskLoader = Callable[[str], Awaitable[Optional[Task]]]

DEFAULT_SESSION_QUEUE_SIZE = 1000


# -----------------------------------------------------------------------------
# Read-Through Cache
# -----------------------------------------------------------------------------

class TaskViewCache:
    """
    Read-through cache of task records keyed by task id.
    """

    def __init__(self, loader: TaskLoader):
        self._loader = loader
        self._entries: Dict[str, Task] = {}
        # Bumped on every invalidation so an in-flight load cannot store a stale record
        self._generations: Dict[str, int] = {}
        self.hits = 0
        self.misses = 0

    async def get(self, task_id: str) -> Optional[Task]:
        cached = self._entries.get(task_id)
        if cached is not None:
            self.hits += 1
            return cached.copy()

        self.misses += 1
        generation = self._generations.get(task_id, 0)
        task = await self._loader(task_id)
        if task is not None and self._generations.get(task_id, 0) == generation:
            self._entries[task_id] = task
        return task.copy() if task else None

    def invalidate(self, task_id: str) -> bool:
        """Drop the entry for task_id. Returns True if one was cached."""
        self._generations[task_id] = self._generations.get(task_id, 0) + 1
        return self._entries.pop(task_id, None) is not None

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# -----------------------------------------------------------------------------
# Viewer Session
# -----------------------------------------------------------------------------

def default_task_filters(actor: Actor) -> Optional[List[Dict[str, Any]]]:
    """
    Task visibility of a viewer as equality filters (any filter may match).

    None means every task.
    """
    if actor.role == UserRole.ADMIN:
        return None
    if actor.role == UserRole.CLIENT:
        return [{"client_id": actor.user_id}]
    if actor.role in UserRole.leads():
        if actor.department is None:
            return None
        return [{"department": actor.department.value}]
    if actor.role in UserRole.specialists():
        return [{"assigned_to": actor.user_id}, {"editor_id": actor.user_id}]
    return []


class ViewerSession:
    """One connected dashboard."""

    def __init__(
        self,
        viewer_id: str,
        role: UserRole,
        loader: TaskLoader,
        task_filters: Optional[List[Dict[str, Any]]] = None,
        max_pending: int = DEFAULT_SESSION_QUEUE_SIZE,
    ):
        self.session_id = new_id()
        self.viewer_id = viewer_id
        self.role = role
        self.task_filters = task_filters
        self.cache = TaskViewCache(loader)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._visible_tasks: Set[str] = set()
        self._closed = False

    def _matches_task(self, record: Optional[Dict[str, Any]]) -> bool:
        if record is None:
            return False
        if self.task_filters is None:
            return True
        return any(
            all(record.get(key) == value for key, value in filters.items())
            for filters in self.task_filters
        )

    def wants(self, event: ChangeEvent) -> bool:
        """True if this viewer should be told about the event."""
        if event.table == NOTIFICATIONS_TABLE:
            return event.record.get("user_id") == self.viewer_id
        if event.table == TASKS_TABLE:
            # The old record counts too, so a viewer hears that a task left their view
            return self._matches_task(event.record) or self._matches_task(event.old_record)
        return self.task_filters is None or event.task_id in self._visible_tasks

    async def resolve_visibility(self, event: ChangeEvent) -> None:
        """
        Learn whether the task behind an attachment or comment event is visible.

        Loads the task through the session cache the first time one of its
        attachments or comments is seen, so a viewer hears about activity on
        tasks it can see even if it never read them.
        """
        if self._closed or self.task_filters is None:
            return
        if event.table not in (ATTACHMENTS_TABLE, COMMENTS_TABLE):
            return
        task_id = event.task_id
        if not task_id or task_id in self._visible_tasks:
            return
        await self.get_task(task_id)

    def deliver(self, event: ChangeEvent) -> None:
        """
        Invalidate the cache entry for the event's task and queue the event.

        Raises asyncio.QueueFull when the viewer has fallen too far behind.
        """
        if self._closed:
            return
        if event.table == TASKS_TABLE and event.task_id:
            self.cache.invalidate(event.task_id)
        if not self.wants(event):
            return
        if event.table == TASKS_TABLE and event.task_id:
            if self._matches_task(event.record):
                self._visible_tasks.add(event.task_id)
            else:
                self._visible_tasks.discard(event.task_id)
        self._queue.put_nowait(event)

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Read a task through the session cache; None if not visible to this viewer."""
        task = await self.cache.get(task_id)
        if task is None:
            return None
        record = task.to_dict()
        if not self._matches_task(record):
            return None
        self._visible_tasks.add(task_id)
        return task

    async def next_event(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """Next pushed event; None on timeout or once the session is closed."""
        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                return await self._queue.get()
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, discard_pending: bool = False) -> None:
        """
        Close the session; next_event() returns None once the queue is drained.

        With discard_pending the queued events are dropped so the viewer
        stops at once (it must re-sync from the store anyway).
        """
        if self._closed:
            return
        self._closed = True
        if discard_pending:
            while not self._queue.empty():
                self._queue.get_nowait()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


# -----------------------------------------------------------------------------
# Broadcaster
# -----------------------------------------------------------------------------

class RealtimeBroadcaster:
    """
    Fans committed change events out to viewer sessions.

    Reads the task store only through session caches; never writes.
    """

    TABLES = (TASKS_TABLE, ATTACHMENTS_TABLE, COMMENTS_TABLE, NOTIFICATIONS_TABLE)

    def __init__(
        self,
        feed: ChangeFeed,
        store: TaskStore,
        session_queue_size: int = DEFAULT_SESSION_QUEUE_SIZE,
    ):
        self._feed = feed
        self._session_queue_size = session_queue_size
        self._store = store
        self._sessions: Dict[str, ViewerSession] = {}
        self._subscriptions: List[Subscription] = []
        self._pumps: List[asyncio.Task] = []
        self._running = False
        self._delivered = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Subscribe to every watched table and start pumping events."""
        if self._running:
            return
        for table in self.TABLES:
            subscription = self._feed.subscribe(table)
            self._subscriptions.append(subscription)
            self._pumps.append(asyncio.create_task(self._pump(subscription)))
        self._running = True
        logger.info(f"Realtime broadcaster started ({', '.join(self.TABLES)})")

    async def stop(self) -> None:
        """Close subscriptions and sessions, and wait for the pumps to finish."""
        if not self._running:
            return
        self._running = False
        for subscription in self._subscriptions:
            subscription.close()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        self._subscriptions.clear()
        self._pumps.clear()
        for session in list(self._sessions.values()):
            session.close()
        self._sessions.clear()
        logger.info("Realtime broadcaster stopped")

    def connect(
        self,
        actor: Actor,
        task_filters: Optional[List[Dict[str, Any]]] = None,
        use_default_filters: bool = True,
    ) -> ViewerSession:
        """Open a session for a viewer."""
        if task_filters is None and use_default_filters:
            task_filters = default_task_filters(actor)
        session = ViewerSession(
            viewer_id=actor.user_id,
            role=actor.role,
            loader=self._store.get_task,
            task_filters=task_filters,
            max_pending=self._session_queue_size,
        )
        self._sessions[session.session_id] = session
        logger.info(f"Viewer {actor.user_id} ({actor.role.value}) connected: session {session.session_id}")
        return session

    def disconnect(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            session.close()
            logger.info(f"Viewer {session.viewer_id} disconnected: session {session_id}")

    def session_count(self) -> int:
        return len(self._sessions)

    async def _pump(self, subscription: Subscription) -> None:
        async for event in subscription:
            await self.resolve_visibility(event)
            self.broadcast(event)

    async def resolve_visibility(self, event: ChangeEvent) -> None:
        """Let every session decide whether it can see the task behind `event`."""
        for session in list(self._sessions.values()):
            try:
                await session.resolve_visibility(event)
            except Exception as e:
                logger.error(f"Failed to resolve visibility for session {session.session_id}: {e}")

    def broadcast(self, event: ChangeEvent) -> int:
        """Deliver one event to every session. Returns the number of sessions reached."""
        reached = 0
        for session in list(self._sessions.values()):
            try:
                before = session.pending
                session.deliver(event)
                if session.pending > before:
                    reached += 1
            except asyncio.QueueFull:
                logger.warning(
                    f"Viewer {session.viewer_id} fell behind ({session.pending} pending); "
                    f"disconnecting session {session.session_id}"
                )
                self._sessions.pop(session.session_id, None)
                session.close(discard_pending=True)
            except Exception as e:
                logger.error(f"Failed to deliver {event.table} event to session {session.session_id}: {e}")
        self._delivered += reached
        return reached

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "sessions": len(self._sessions),
            "delivered": self._delivered,
        }


logger.info("Realtime Broadcaster module loaded")
