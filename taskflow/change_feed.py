"""
Change Feed - In-Process Realtime Change Events

Committed writes of the task store, attachment ledger, comment log and
notification store are published here as change events. Consumers
subscribe per table with an optional equality filter, mirroring the
`subscribe(table, filter)` contract of the hosted realtime service.

IMPORTANT:
- publish() never blocks: writers must not wait on slow viewers
- Events are published only after the write is committed
- Subscriptions are bounded queues; a subscriber that falls behind is
  closed rather than allowed to grow without limit, and must re-subscribe
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Set

from .task_model import utc_now

logger = logging.getLogger("change_feed")

# -----------------------------------------------------------------------------
# Tables
# -----------------------------------------------------------------------------
TASKS_TABLE = "tasks"
ATTACHMENTS_TABLE = "task_attachments"
COMMENTS_TABLE = "task_comments"
NOTIFICATIONS_TABLE = "notifications"

DEFAULT_SUBSCRIPTION_QUEUE_SIZE = 10000


class ChangeEventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed insert or update on one table."""
    table: str
    event_type: ChangeEventType
    record: Dict[str, Any]
    old_record: Optional[Dict[str, Any]] = None
    committed_at: str = field(default_factory=lambda: utc_now().isoformat())

    @property
    def record_id(self) -> Optional[str]:
        return self.record.get("id")

    @property
    def task_id(self) -> Optional[str]:
        """Id of the task this event concerns."""
        if self.table == TASKS_TABLE:
            return self.record.get("id")
        return self.record.get("task_id")

    def matches(self, filters: Optional[Dict[str, Any]]) -> bool:
        """Equality filter on the new record (`column=eq.value`)."""
        if not filters:
            return True
        return all(self.record.get(key) == value for key, value in filters.items())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "event_type": self.event_type.value,
            "record": self.record,
            "old_record": self.old_record,
            "committed_at": self.committed_at,
        }


# -----------------------------------------------------------------------------
# Subscription
# -----------------------------------------------------------------------------

class Subscription:
    """
    Stream of change events for one table.

    Iterate with `async for event in subscription`; iteration ends after close().
    """

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        event_types: Optional[Set[ChangeEventType]] = None,
        max_pending: int = DEFAULT_SUBSCRIPTION_QUEUE_SIZE,
    ):
        self.table = table
        self.filters = dict(filters or {})
        self.event_types = set(event_types) if event_types else set(ChangeEventType)
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def accepts(self, event: ChangeEvent) -> bool:
        return (
            not self._closed
            and event.table == self.table
            and event.event_type in self.event_types
            and event.matches(self.filters)
        )

    def offer(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    async def get(self) -> Optional[ChangeEvent]:
        """Next event, or None once the subscription is closed."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed.unsubscribe(self)
        # Wake any pending get(); a full queue has no waiter to wake
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


# -----------------------------------------------------------------------------
# Change Feed
# -----------------------------------------------------------------------------

class ChangeFeed:
    """Fan-out of committed change events to table subscriptions."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._published = 0

    def subscribe(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        event_types: Optional[Set[ChangeEventType]] = None,
        max_pending: int = DEFAULT_SUBSCRIPTION_QUEUE_SIZE,
    ) -> Subscription:
        subscription = Subscription(self, table, filters, event_types, max_pending)
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {table} (filters={subscription.filters})")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every matching subscription.

        Returns the number of subscriptions that received it.
        """
        self._published += 1
        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.accepts(event):
                continue
            try:
                subscription.offer(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Subscription to {subscription.table} fell behind "
                    f"({subscription.pending} pending); closing it"
                )
                subscription.close()
                continue
            delivered += 1
        logger.debug(
            f"Published {event.event_type.value} on {event.table} "
            f"(id={event.record_id}) to {delivered} subscriber(s)"
        )
        return delivered

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is None:
            return len(self._subscriptions)
        return sum(1 for s in self._subscriptions if s.table == table)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "published": self._published,
            "subscribers": self.subscriber_count(),
        }


logger.info("Change Feed module loaded")
