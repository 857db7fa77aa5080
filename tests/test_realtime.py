"""
Tests for the Realtime Broadcaster

Covers:
- Sessions converge on the committed state after a transition
- Read-through cache: loaded once, invalidated exactly on a change event
- Visibility filters per role
- Failing sessions do not affect others
- Viewers that fall behind are disconnected
- Start/stop lifecycle
"""

import pytest

from taskflow.attachment_ledger import AttachmentLedger
from taskflow.change_feed import (
    ATTACHMENTS_TABLE,
    COMMENTS_TABLE,
    NOTIFICATIONS_TABLE,
    TASKS_TABLE,
    ChangeEvent,
    ChangeEventType,
)
from taskflow.comment_log import CommentLog
from taskflow.realtime import (
    RealtimeBroadcaster,
    TaskViewCache,
    ViewerSession,
    default_task_filters,
)
from taskflow.task_model import TaskAction, TaskType, WorkflowStage

pytestmark = pytest.mark.realtime


async def _next_from(session, table=TASKS_TABLE, timeout=1.0):
    """Next event on `table` pushed to the session, skipping others."""
    while True:
        event = await session.next_event(timeout=timeout)
        assert event is not None, f"no {table} event arrived"
        if event.table == table:
            return event


@pytest.fixture
async def broadcaster(feed, store):
    broadcaster = RealtimeBroadcaster(feed, store)
    await broadcaster.start()
    yield broadcaster
    await broadcaster.stop()


# -----------------------------------------------------------------------------
# Read-Through Cache
# -----------------------------------------------------------------------------
class TestTaskViewCache:
    """Tests for the per-session cache."""

    @pytest.mark.asyncio
    async def test_loads_once(self, store, make_task):
        task = await make_task()
        cache = TaskViewCache(store.get_task)

        await cache.get(task.id)
        await cache.get(task.id)
        assert (cache.misses, cache.hits) == (1, 1)
        assert task.id in cache

    @pytest.mark.asyncio
    async def test_invalidate_drops_entry(self, store, make_task):
        task = await make_task()
        cache = TaskViewCache(store.get_task)
        await cache.get(task.id)

        assert cache.invalidate(task.id)
        assert task.id not in cache
        assert not cache.invalidate(task.id)

    @pytest.mark.asyncio
    async def test_unknown_task_is_not_cached(self, store):
        cache = TaskViewCache(store.get_task)
        assert await cache.get("missing") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_load_racing_an_invalidation_is_not_cached(self, store, make_task):
        task = await make_task()

        async def loader(task_id):
            loaded = await store.get_task(task_id)
            cache.invalidate(task_id)
            return loaded

        cache = TaskViewCache(loader)
        assert (await cache.get(task.id)).id == task.id
        assert task.id not in cache

    @pytest.mark.asyncio
    async def test_cached_copies_are_independent(self, store, make_task):
        task = await make_task()
        cache = TaskViewCache(store.get_task)
        first = await cache.get(task.id)
        first.assigned_to = "someone-else"
        assert (await cache.get(task.id)).assigned_to == task.assigned_to


# -----------------------------------------------------------------------------
# Visibility
# -----------------------------------------------------------------------------
class TestVisibility:
    """Which events a viewer is told about."""

    def test_default_filters(self, actor):
        assert default_task_filters(actor("admin-1")) is None
        assert default_task_filters(actor("client-1")) == [{"client_id": "client-1"}]
        assert default_task_filters(actor("lead-photo")) == [{"department": "photography"}]
        assert default_task_filters(actor("editor-1")) == [{"assigned_to": "editor-1"}, {"editor_id": "editor-1"}]
        assert default_task_filters(actor("accountant-1")) == []

    @pytest.mark.asyncio
    async def test_session_filters_tasks(self, store, make_task, actor):
        task = await make_task(TaskType.VIDEO)
        client = actor("client-2")
        session = ViewerSession(client.user_id, client.role, store.get_task, default_task_filters(client))

        event = ChangeEvent(TASKS_TABLE, ChangeEventType.INSERT, task.to_dict())
        assert not session.wants(event)
        assert await session.get_task(task.id) is None

        editor = actor("editor-1")
        editor_session = ViewerSession(editor.user_id, editor.role, store.get_task, default_task_filters(editor))
        assert editor_session.wants(event)

    def test_task_leaving_view_is_still_pushed(self, store, actor):
        specialist = actor("video-1")
        session = ViewerSession(specialist.user_id, specialist.role, store.get_task, default_task_filters(specialist))
        event = ChangeEvent(
            TASKS_TABLE,
            ChangeEventType.UPDATE,
            record={"id": "task-1", "assigned_to": "editor-1"},
            old_record={"id": "task-1", "assigned_to": "video-1"},
        )
        assert session.wants(event)

    def test_notifications_only_for_recipient(self, store, actor):
        viewer = actor("client-1")
        session = ViewerSession(viewer.user_id, viewer.role, store.get_task, default_task_filters(viewer))
        mine = ChangeEvent(NOTIFICATIONS_TABLE, ChangeEventType.INSERT, {"id": "n1", "user_id": "client-1"})
        theirs = ChangeEvent(NOTIFICATIONS_TABLE, ChangeEventType.INSERT, {"id": "n2", "user_id": "client-2"})
        assert session.wants(mine)
        assert not session.wants(theirs)

    @pytest.mark.asyncio
    async def test_attachments_follow_task_visibility(self, store, make_task, actor):
        task = await make_task(TaskType.PHOTO)
        event = ChangeEvent(ATTACHMENTS_TABLE, ChangeEventType.INSERT, {"id": "a1", "task_id": task.id})

        sessions = {}
        for user_id in ("photo-1", "client-1", "client-2", "creator-1"):
            viewer = actor(user_id)
            session = ViewerSession(viewer.user_id, viewer.role, store.get_task, default_task_filters(viewer))
            await session.resolve_visibility(event)
            sessions[user_id] = session

        assert sessions["photo-1"].wants(event)
        assert sessions["client-1"].wants(event)
        assert not sessions["client-2"].wants(event)
        assert not sessions["creator-1"].wants(event)

    @pytest.mark.asyncio
    async def test_visibility_of_unknown_task(self, store, actor):
        viewer = actor("client-1")
        session = ViewerSession(viewer.user_id, viewer.role, store.get_task, default_task_filters(viewer))
        event = ChangeEvent(COMMENTS_TABLE, ChangeEventType.INSERT, {"id": "c1", "task_id": "missing"})
        await session.resolve_visibility(event)
        assert not session.wants(event)

    def test_invisible_event_still_invalidates_cache(self, store, actor):
        viewer = actor("client-2")
        session = ViewerSession(viewer.user_id, viewer.role, store.get_task, default_task_filters(viewer))
        session.cache._entries["task-1"] = object()

        session.deliver(ChangeEvent(TASKS_TABLE, ChangeEventType.UPDATE, {"id": "task-1", "client_id": "client-1"}))
        assert "task-1" not in session.cache
        assert session.pending == 0


# -----------------------------------------------------------------------------
# Broadcast
# -----------------------------------------------------------------------------
class TestBroadcast:
    """End-to-end fan-out from committed writes to sessions."""

    @pytest.mark.asyncio
    async def test_sessions_converge_after_transition(self, broadcaster, store, engine, make_task, actor):
        lead = broadcaster.connect(actor("lead-photo"))
        photographer = broadcaster.connect(actor("photo-1"))

        task = await make_task(TaskType.PHOTO)
        for session in (lead, photographer):
            inserted = await _next_from(session)
            assert inserted.record["id"] == task.id
            assert (await session.get_task(task.id)).workflow_stage == WorkflowStage.NEW

        result = await engine.advance(task.id, actor("photo-1"), TaskAction.MARK_STAGE_DONE)
        assert result.success

        for session in (lead, photographer):
            updated = await _next_from(session)
            assert updated.event_type == ChangeEventType.UPDATE
            assert task.id not in session.cache
            seen = await session.get_task(task.id)
            assert seen.workflow_stage == WorkflowStage.SHOOTING
            assert seen.version == 2

    @pytest.mark.asyncio
    async def test_notification_pushed_to_recipient(self, broadcaster, engine, make_task, actor):
        lead = broadcaster.connect(actor("lead-photo"))
        task = await make_task(TaskType.PHOTO)
        await engine.advance(task.id, actor("photo-1"), TaskAction.MARK_STAGE_DONE)

        pushed = await _next_from(lead, NOTIFICATIONS_TABLE)
        assert pushed.record["user_id"] == "lead-photo"
        assert pushed.record["link"] == "/photographer/schedule"

    @pytest.mark.asyncio
    async def test_comment_on_unread_task_reaches_viewers(self, broadcaster, feed, make_task, actor):
        task = await make_task(TaskType.PHOTO)
        client = broadcaster.connect(actor("client-1"))
        photographer = broadcaster.connect(actor("photo-1"))
        outsider = broadcaster.connect(actor("client-2"))

        comments = CommentLog(None, feed)
        await comments.add_comment(task.id, "lead-photo", "Please include the wide shots")

        for session in (client, photographer):
            pushed = await _next_from(session, COMMENTS_TABLE)
            assert pushed.task_id == task.id
        assert await outsider.next_event(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_attachment_on_unread_task_reaches_client(self, broadcaster, feed, make_task, actor):
        task = await make_task(TaskType.VIDEO)
        client = broadcaster.connect(actor("client-1"))

        ledger = AttachmentLedger(change_feed=feed)
        await ledger.add_attachment(task.id, "https://files.example/cut.mp4", "cut.mp4", "editor-1", is_final=True)

        pushed = await _next_from(client, ATTACHMENTS_TABLE)
        assert pushed.record["file_name"] == "cut.mp4"

    @pytest.mark.asyncio
    async def test_other_clients_see_nothing(self, broadcaster, engine, make_task, actor):
        outsider = broadcaster.connect(actor("client-2"))
        task = await make_task(TaskType.PHOTO)
        await engine.advance(task.id, actor("photo-1"), TaskAction.MARK_STAGE_DONE)

        assert await outsider.next_event(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_failing_session_is_skipped(self, feed, store, actor):
        broadcaster = RealtimeBroadcaster(feed, store)
        broken = broadcaster.connect(actor("admin-1"))
        healthy = broadcaster.connect(actor("admin-1"))

        def explode(event):
            raise RuntimeError("socket gone")

        broken.deliver = explode
        event = ChangeEvent(TASKS_TABLE, ChangeEventType.INSERT, {"id": "task-1"})
        assert broadcaster.broadcast(event) == 1
        assert healthy.pending == 1

    @pytest.mark.asyncio
    async def test_lagging_session_is_disconnected(self, feed, store, actor):
        broadcaster = RealtimeBroadcaster(feed, store, session_queue_size=2)
        lagging = broadcaster.connect(actor("admin-1"))

        for n in range(3):
            broadcaster.broadcast(ChangeEvent(TASKS_TABLE, ChangeEventType.INSERT, {"id": f"task-{n}"}))

        assert lagging.closed
        assert broadcaster.session_count() == 0
        assert await lagging.next_event() is None

        fresh = broadcaster.connect(actor("admin-1"))
        assert broadcaster.broadcast(ChangeEvent(TASKS_TABLE, ChangeEventType.INSERT, {"id": "task-9"})) == 1
        assert fresh.pending == 1

    @pytest.mark.asyncio
    async def test_broadcaster_never_writes(self, broadcaster, store, make_task, actor):
        task = await make_task()
        session = broadcaster.connect(actor("admin-1"))
        await session.get_task(task.id)
        await session.get_task(task.id)
        assert (await store.get_task(task.id)).version == 1

    @pytest.mark.asyncio
    async def test_disconnect_and_stop(self, feed, store, actor):
        broadcaster = RealtimeBroadcaster(feed, store)
        await broadcaster.start()
        assert broadcaster.running
        assert feed.subscriber_count() == len(RealtimeBroadcaster.TABLES)

        first = broadcaster.connect(actor("admin-1"))
        second = broadcaster.connect(actor("lead-photo"))
        broadcaster.disconnect(first.session_id)
        assert broadcaster.session_count() == 1
        assert await first.next_event() is None

        await broadcaster.stop()
        assert not broadcaster.running
        assert feed.subscriber_count() == 0
        assert broadcaster.session_count() == 0
        assert await second.next_event() is None
