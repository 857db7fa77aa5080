"""
Pytest configuration for Taskflow tests.

This module provides:
1. A seeded account directory covering every role
2. Engine fixtures wired against one change feed
3. Task factories and helpers to drive a task to review
"""

import pytest
from pathlib import Path
from typing import Optional

from taskflow.accounts import AccountDirectory
from taskflow.attachment_ledger import AttachmentLedger
from taskflow.change_feed import ChangeFeed
from taskflow.notification_dispatcher import NotificationDispatcher, NotificationStore
from taskflow.revision_loop import RevisionLoopController
from taskflow.stage_engine import StageTransitionEngine
from taskflow.task_model import Department, TaskAction, TaskType, UserRole, WorkflowStage, stage_owners
from taskflow.task_store import TaskStore


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
TEST_ACCOUNTS = [
    ("admin-1", UserRole.ADMIN, None),
    ("accountant-1", UserRole.ACCOUNTANT, None),
    ("lead-photo", UserRole.TEAM_LEADER, Department.PHOTOGRAPHY),
    ("am-photo", UserRole.ACCOUNT_MANAGER, Department.PHOTOGRAPHY),
    ("lead-content", UserRole.TEAM_LEADER, Department.CONTENT),
    ("video-1", UserRole.VIDEOGRAPHER, Department.PHOTOGRAPHY),
    ("editor-1", UserRole.EDITOR, Department.PHOTOGRAPHY),
    ("photo-1", UserRole.PHOTOGRAPHER, Department.PHOTOGRAPHY),
    ("creator-1", UserRole.CREATOR, Department.CONTENT),
    ("designer-1", UserRole.DESIGNER, Department.CONTENT),
    ("client-1", UserRole.CLIENT, None),
    ("client-2", UserRole.CLIENT, None),
]

# Specialist who does the work for each task type
TYPE_SPECIALIST = {
    TaskType.VIDEO: "video-1",
    TaskType.EDITING: "editor-1",
    TaskType.PHOTO: "photo-1",
    TaskType.CONTENT: "creator-1",
    TaskType.DESIGN: "designer-1",
    TaskType.GENERAL: "creator-1",
}

TYPE_DEPARTMENT = {
    TaskType.VIDEO: Department.PHOTOGRAPHY,
    TaskType.EDITING: Department.PHOTOGRAPHY,
    TaskType.PHOTO: Department.PHOTOGRAPHY,
    TaskType.CONTENT: Department.CONTENT,
    TaskType.DESIGN: Department.CONTENT,
    TaskType.GENERAL: Department.CONTENT,
}

TYPE_LEAD = {
    Department.PHOTOGRAPHY: "lead-photo",
    Department.CONTENT: "lead-content",
}


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def temp_state_dir(tmp_path) -> Path:
    """Create a temporary state directory for testing."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def directory():
    """Account directory with one account per test persona."""
    accounts = AccountDirectory()
    for user_id, role, department in TEST_ACCOUNTS:
        accounts.upsert(user_id, role, department, full_name=user_id.replace("-", " ").title())
    return accounts


@pytest.fixture
def actor(directory):
    """Resolve a test persona to an Actor."""
    def _actor(user_id: str):
        resolved = directory.resolve_actor(user_id)
        assert resolved is not None, f"unknown test account {user_id}"
        return resolved
    return _actor


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def store(feed):
    return TaskStore(change_feed=feed)


@pytest.fixture
def ledger(feed):
    return AttachmentLedger(change_feed=feed)


@pytest.fixture
def notification_store(feed):
    return NotificationStore(change_feed=feed)


@pytest.fixture
def dispatcher(notification_store, directory):
    return NotificationDispatcher(notification_store, directory)


@pytest.fixture
def engine(store, ledger, dispatcher, temp_state_dir):
    return StageTransitionEngine(
        store=store,
        ledger=ledger,
        dispatcher=dispatcher,
        audit_log=temp_state_dir / "transition_audit.jsonl",
    )


@pytest.fixture
def revisions(engine):
    return RevisionLoopController(engine)


@pytest.fixture
def make_task(store):
    """Factory creating a task with the usual assignees for its type."""
    async def _make_task(
        task_type: TaskType = TaskType.VIDEO,
        title: str = "Spring campaign",
        client_id: Optional[str] = "client-1",
        **fields,
    ):
        department = TYPE_DEPARTMENT[task_type]
        fields.setdefault("assigned_to", TYPE_SPECIALIST[task_type])
        if task_type == TaskType.VIDEO:
            fields.setdefault("editor_id", "editor-1")
        return await store.create_task(
            title=title,
            department=department,
            task_type=task_type,
            created_by=TYPE_LEAD[department],
            client_id=client_id,
            **fields,
        )
    return _make_task


@pytest.fixture
def drive_to_review(engine, store, actor):
    """Mark stages done with the stage's owner (or the lead) until the task reaches review."""
    async def _drive(task):
        current = await store.get_task(task.id)
        calls = 0
        while current.workflow_stage != WorkflowStage.REVIEW:
            owners = stage_owners(current.task_type, current.workflow_stage)
            user_id = TYPE_SPECIALIST[current.task_type] if owners else TYPE_LEAD[current.department]
            if owners and UserRole.EDITOR in owners:
                user_id = "editor-1"
            result = await engine.advance(current.id, actor(user_id), TaskAction.MARK_STAGE_DONE)
            assert result.success, result.message
            current = result.task
            calls += 1
        return current, calls
    return _drive


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "realtime: tests that exercise the change feed and viewer sessions"
    )
