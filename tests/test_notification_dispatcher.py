"""
Tests for the Notification Dispatcher

Covers:
- resolve_link_for_viewer (role-prefixed link rewriting)
- Role path table loading
- Recipient selection and link encoding per transition
- Best-effort delivery: failures never reach the caller
- Channel delivery runs in the background and never delays a transition
- Read marks and replay of the notification log
"""

import asyncio
import logging

import pytest
from unittest.mock import AsyncMock

from taskflow.notification_dispatcher import (
    ROLE_PATHS,
    NotificationDispatcher,
    NotificationStore,
    NotificationTemplates,
    load_role_paths,
    resolve_link_for_viewer,
)
from taskflow.task_model import (
    Department,
    Task,
    TaskAction,
    TaskStatus,
    TaskType,
    TransitionRecord,
    UserRole,
    WorkflowStage,
)


def _task(stage=WorkflowStage.EDITING, **overrides) -> Task:
    fields = dict(
        id="task-1",
        title="Brand film",
        department=Department.PHOTOGRAPHY,
        task_type=TaskType.VIDEO,
        created_by="lead-photo",
        status=TaskStatus.IN_PROGRESS,
        workflow_stage=stage,
        assigned_to="video-1",
        editor_id="editor-1",
        client_id="client-1",
    )
    fields.update(overrides)
    return Task(**fields)


def _transition(action, actor_id, actor_role, from_stage, to_stage, feedback=None) -> TransitionRecord:
    return TransitionRecord(
        task_id="task-1",
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        from_stage=from_stage,
        to_stage=to_stage,
        from_status=TaskStatus.IN_PROGRESS,
        to_status=TaskStatus.IN_PROGRESS,
        feedback=feedback,
    )


# -----------------------------------------------------------------------------
# Link Resolution
# -----------------------------------------------------------------------------
class TestResolveLinkForViewer:
    """Stored links render on the reader's own dashboard."""

    def test_known_subpath_is_rebased(self):
        assert resolve_link_for_viewer("/team-leader/revisions", "account_manager") == "/account-manager/revisions"

    def test_unknown_subpath_falls_back_to_root(self):
        assert resolve_link_for_viewer("/team-leader/logs", "client") == "/client"
        assert resolve_link_for_viewer("/team-leader/chat", "client") == "/client"
        assert resolve_link_for_viewer("/admin/account", "client") == "/client"

    def test_same_role_is_unchanged(self):
        assert resolve_link_for_viewer("/client/tasks", "client") == "/client/tasks"

    def test_deeper_path_and_query_are_kept(self):
        link = "/team-leader/schedule/2024-05?view=week#today"
        assert resolve_link_for_viewer(link, UserRole.CLIENT) == "/client/schedule/2024-05?view=week#today"

    def test_base_only_link(self):
        assert resolve_link_for_viewer("/admin", "editor") == "/editor"

    def test_shared_base_is_unchanged(self):
        """Creators and designers share /creator."""
        assert resolve_link_for_viewer("/creator/schedule", "designer") == "/creator/schedule"

    def test_prefix_must_end_on_segment(self):
        assert resolve_link_for_viewer("/clientele/tasks", "editor") == "/editor"

    def test_similar_bases_do_not_collide(self):
        table = load_role_paths()
        assert resolve_link_for_viewer("/account-manager/chat", "team_leader", table) == "/team-leader/chat"

    def test_client_project_pages(self):
        assert ROLE_PATHS[UserRole.CLIENT].known_subpaths == {"projects", "tasks", "revisions", "schedule"}
        assert resolve_link_for_viewer("/admin/projects/p-1", "client") == "/client/projects/p-1"
        assert resolve_link_for_viewer("/team-leader/logs", "client") == "/client"

    @pytest.mark.parametrize("link", [None, "", "https://example.com/x", "relative/path", 42])
    def test_malformed_links_fall_back(self, link):
        assert resolve_link_for_viewer(link, "client") == "/client"

    def test_unknown_viewer_gets_root(self):
        assert resolve_link_for_viewer("/client/tasks", "intern") == "/"
        assert resolve_link_for_viewer("/client/tasks", None) == "/"


class TestRolePathTable:
    """Tests for the YAML-backed table."""

    def test_every_role_present(self):
        assert set(ROLE_PATHS) == set(UserRole)
        assert ROLE_PATHS[UserRole.ACCOUNT_MANAGER].base == "/account-manager"

    def test_missing_role_is_a_configuration_error(self, tmp_path):
        path = tmp_path / "role_paths.yaml"
        path.write_text("roles:\n  admin:\n    base: /admin\n    subpaths: [tasks]\n")
        with pytest.raises(ValueError):
            load_role_paths(path)

    def test_override_file(self, tmp_path):
        lines = ["roles:"]
        for role in UserRole:
            lines.append(f"  {role.value}:")
            lines.append(f"    base: /{role.value}/")
            lines.append("    subpaths: [inbox]")
        path = tmp_path / "role_paths.yaml"
        path.write_text("\n".join(lines) + "\n")

        table = load_role_paths(path)
        assert table[UserRole.CLIENT].base == "/client"
        assert resolve_link_for_viewer("/admin/inbox", "editor", table) == "/editor/inbox"


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------
class TestRecipients:
    """Who hears about which transition."""

    def test_stage_completed_notifies_leads_and_next_owner(self, dispatcher):
        transition = _transition(
            TaskAction.MARK_STAGE_DONE, "video-1", UserRole.VIDEOGRAPHER, WorkflowStage.FILMING, WorkflowStage.EDITING
        )
        assert dispatcher.recipients_for(_task(), transition) == ["lead-photo", "am-photo", "editor-1"]

    def test_review_notifies_client_and_leads(self, dispatcher):
        task = _task(stage=WorkflowStage.REVIEW, status=TaskStatus.IN_REVIEW)
        transition = _transition(
            TaskAction.MARK_STAGE_DONE, "lead-photo", UserRole.TEAM_LEADER,
            WorkflowStage.EDITING_DONE, WorkflowStage.REVIEW,
        )
        assert dispatcher.recipients_for(task, transition) == ["client-1", "am-photo"]

    def test_actor_is_never_a_recipient(self, dispatcher):
        transition = _transition(
            TaskAction.ASSIGN, "video-1", UserRole.ADMIN, WorkflowStage.NEW, WorkflowStage.NEW
        )
        task = _task(stage=WorkflowStage.NEW, status=TaskStatus.NEW)
        assert dispatcher.recipients_for(task, transition) == ["editor-1"]

    def test_templates(self):
        task = _task()
        reject = _transition(
            TaskAction.REJECT, "client-1", UserRole.CLIENT, WorkflowStage.REVIEW, WorkflowStage.EDITING, "too long"
        )
        title, message, subpath = NotificationTemplates.for_transition(task, reject)
        assert title == "Revision Requested"
        assert "too long" in message
        assert subpath == "/revisions"


class TestNotify:
    """Notifications are created per recipient, best-effort."""

    @pytest.mark.asyncio
    async def test_link_uses_actor_role(self, dispatcher, notification_store):
        transition = _transition(
            TaskAction.MARK_STAGE_DONE, "editor-1", UserRole.EDITOR, WorkflowStage.EDITING, WorkflowStage.EDITING_DONE
        )
        created = await dispatcher.notify(_task(stage=WorkflowStage.EDITING_DONE), transition)

        assert {n.user_id for n in created} == {"lead-photo", "am-photo", "video-1"}
        assert all(n.link == "/editor/schedule" for n in created)
        assert all(n.task_id == "task-1" for n in created)

    @pytest.mark.asyncio
    async def test_explicit_recipients(self, dispatcher):
        transition = _transition(
            TaskAction.APPROVE, "client-1", UserRole.CLIENT, WorkflowStage.REVIEW, WorkflowStage.REVIEW
        )
        created = await dispatcher.notify(_task(), transition, recipients=["admin-1"])
        assert [n.user_id for n in created] == ["admin-1"]
        assert created[0].title == "Task Approved"

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self):
        store = NotificationStore()
        store.create = AsyncMock(side_effect=IOError("disk full"))
        dispatcher = NotificationDispatcher(store)

        transition = _transition(
            TaskAction.MARK_STAGE_DONE, "video-1", UserRole.VIDEOGRAPHER, WorkflowStage.FILMING, WorkflowStage.EDITING
        )
        created = await dispatcher.notify(_task(), transition, recipients=["lead-photo"])
        assert created == []
        store.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_channel_failure_is_swallowed(self, dispatcher, notification_store):
        failing = AsyncMock(side_effect=RuntimeError("webhook down"))
        working = AsyncMock(return_value=True)
        dispatcher.register_channel("failing", failing)
        dispatcher.register_channel("working", working)

        transition = _transition(
            TaskAction.MARK_STAGE_DONE, "video-1", UserRole.VIDEOGRAPHER, WorkflowStage.FILMING, WorkflowStage.EDITING
        )
        created = await dispatcher.notify(_task(), transition, recipients=["lead-photo"])
        await dispatcher.drain()

        assert len(created) == 1
        failing.assert_awaited_once()
        working.assert_awaited_once_with(created[0])

    @pytest.mark.asyncio
    async def test_slow_channel_does_not_delay_transition(self, engine, dispatcher, make_task, actor):
        release = asyncio.Event()
        delivered = []

        async def slow_channel(notification):
            await release.wait()
            delivered.append(notification.user_id)
            return True

        dispatcher.register_channel("slow", slow_channel)
        task = await make_task(TaskType.PHOTO)

        result = await asyncio.wait_for(
            engine.advance(task.id, actor("photo-1"), TaskAction.MARK_STAGE_DONE),
            timeout=1.0,
        )
        assert result.success
        assert delivered == []
        assert dispatcher.pending_deliveries == 2

        release.set()
        await dispatcher.drain()
        assert sorted(delivered) == ["am-photo", "lead-photo"]
        assert dispatcher.pending_deliveries == 0

    @pytest.mark.asyncio
    async def test_failed_delivery_task_is_logged(self, dispatcher, caplog):
        async def broken(notification):
            raise RuntimeError("socket closed")

        dispatcher.register_channel("broken", broken)
        transition = _transition(
            TaskAction.MARK_STAGE_DONE, "video-1", UserRole.VIDEOGRAPHER, WorkflowStage.FILMING, WorkflowStage.EDITING
        )
        with caplog.at_level(logging.ERROR, logger="notification_dispatcher"):
            await dispatcher.notify(_task(), transition, recipients=["lead-photo"])
            await dispatcher.drain()
        assert "Channel broken delivery failed" in caplog.text

    @pytest.mark.asyncio
    async def test_transition_survives_notification_failure(self, engine, dispatcher, make_task, actor):
        dispatcher.store.create = AsyncMock(side_effect=RuntimeError("database unavailable"))

        task = await make_task(TaskType.PHOTO)
        result = await engine.advance(task.id, actor("photo-1"), TaskAction.MARK_STAGE_DONE)
        assert result.success
        assert result.task.workflow_stage == WorkflowStage.SHOOTING


class TestNotificationStore:
    """Read marks and persistence."""

    @pytest.mark.asyncio
    async def test_mark_read(self):
        store = NotificationStore()
        first = await store.create("client-1", "Ready for Review", "ready", "/team-leader/tasks")
        await store.create("client-1", "Task Approved", "done", "/client/tasks")

        assert await store.unread_count("client-1") == 2
        assert await store.mark_read(first.id, "client-1")
        assert await store.unread_count("client-1") == 1
        unread = await store.list_for_user("client-1", unread_only=True)
        assert [n.title for n in unread] == ["Task Approved"]

    @pytest.mark.asyncio
    async def test_only_recipient_can_mark_read(self):
        store = NotificationStore()
        notification = await store.create("client-1", "Ready for Review", "ready")
        assert not await store.mark_read(notification.id, "client-2")
        assert not await store.mark_read("missing", "client-1")

    @pytest.mark.asyncio
    async def test_mark_all_read(self):
        store = NotificationStore()
        await store.create("editor-1", "a", "a")
        await store.create("editor-1", "b", "b")
        await store.create("video-1", "c", "c")

        assert await store.mark_all_read("editor-1") == 2
        assert await store.unread_count("editor-1") == 0
        assert await store.unread_count("video-1") == 1

    @pytest.mark.asyncio
    async def test_replay_restores_read_state(self, temp_state_dir):
        log_file = temp_state_dir / "notifications.jsonl"
        store = NotificationStore(log_file)
        read = await store.create("client-1", "Ready for Review", "ready", "/team-leader/tasks", "task-1")
        await store.create("client-1", "Task Approved", "done")
        await store.mark_read(read.id, "client-1")

        reloaded = NotificationStore(log_file)
        items = await reloaded.list_for_user("client-1")
        assert len(items) == 2
        assert await reloaded.unread_count("client-1") == 1
        restored = next(n for n in items if n.id == read.id)
        assert restored.is_read
        assert restored.link == "/team-leader/tasks"
