"""
Taskflow API Router

FastAPI routes for:
- Accounts (directory seeding)
- Tasks: create, list, status board, get, guidance
- Activity log (admins and leads)
- Transitions: advance, approve, reject, close
- Attachments and comments
- Notifications with per-viewer link resolution
- Realtime WebSocket feed

Every route resolves the acting account from the server-side directory;
a role supplied by the client is never trusted.
"""

import asyncio
import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from .service import TaskflowService
from .task_model import (
    Actor,
    Department,
    TaskStatus,
    TaskType,
    TransitionError,
    TransitionResult,
    UserRole,
)

logger = logging.getLogger("taskflow_api")

router = APIRouter(tags=["taskflow"])

ERROR_STATUS_CODES: Dict[TransitionError, int] = {
    TransitionError.NOT_FOUND: 404,
    TransitionError.UNAUTHORIZED: 403,
    TransitionError.CONFLICT: 409,
    TransitionError.ALREADY_TERMINAL: 409,
    TransitionError.INVALID_TRANSITION: 400,
    TransitionError.VALIDATION_ERROR: 422,
}


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------

class AccountRequest(BaseModel):
    """Create or update an account. Requires an admin actor once any account exists."""
    user_id: str
    role: str
    department: Optional[str] = None
    full_name: str = ""
    email: Optional[str] = None
    is_active: bool = True
    actor_id: Optional[str] = None


class CreateTaskRequest(BaseModel):
    actor_id: str
    title: str
    department: str
    task_type: str
    assigned_to: Optional[str] = None
    editor_id: Optional[str] = None
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    description: str = ""
    deadline: Optional[str] = None
    scheduled_date: Optional[str] = None
    scheduled_time: Optional[str] = None
    location: Optional[str] = None
    company_name: Optional[str] = None


class AdvanceRequest(BaseModel):
    """Request to advance a task (assign, start, mark-stage-done, submit-for-review)."""
    actor_id: str
    action: str
    assignee_id: Optional[str] = None
    editor_id: Optional[str] = None
    from_stage: Optional[str] = None
    expected_version: Optional[int] = None


class ReviewRequest(BaseModel):
    actor_id: str
    feedback: Optional[str] = None
    expected_version: Optional[int] = None


class CloseRequest(BaseModel):
    actor_id: str
    reason: str
    expected_version: Optional[int] = None


class AttachmentRequest(BaseModel):
    actor_id: str
    file_url: str
    file_name: str
    is_final: bool = False
    file_type: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0)


class ActorRequest(BaseModel):
    actor_id: str


class CommentRequest(BaseModel):
    actor_id: str
    content: str


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _service(request: Request) -> TaskflowService:
    return request.app.state.service


def _resolve_actor(service: TaskflowService, actor_id: str) -> Actor:
    actor = service.resolve_actor(actor_id)
    if actor is None:
        raise HTTPException(status_code=403, detail=f"Unknown or inactive account '{actor_id}'")
    return actor


def _parse_enum(enum_cls, value: Optional[str], field_name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {field_name} '{value}'. Valid values: {valid}",
        )


def _respond(result: TransitionResult) -> Dict[str, Any]:
    if not result.success:
        raise HTTPException(
            status_code=ERROR_STATUS_CODES.get(result.error, 400),
            detail={
                "error": result.error.value if result.error else None,
                "message": result.message,
                "task": result.task.to_dict() if result.task else None,
            },
        )
    return result.to_dict()


# -----------------------------------------------------------------------------
# Accounts
# -----------------------------------------------------------------------------

@router.post("/accounts")
async def upsert_account(body: AccountRequest, request: Request):
    """Create or update an account in the directory."""
    service = _service(request)
    if service.directory.list_accounts():
        actor = _resolve_actor(service, body.actor_id or "")
        if actor.role != UserRole.ADMIN:
            raise HTTPException(status_code=403, detail="Only admins can manage accounts")

    role = _parse_enum(UserRole, body.role, "role")
    department = _parse_enum(Department, body.department, "department")
    account = service.directory.upsert(
        user_id=body.user_id,
        role=role,
        department=department,
        full_name=body.full_name,
        email=body.email,
        is_active=body.is_active,
    )
    return {"success": True, "account": account.to_dict()}


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------

@router.post("/tasks")
async def create_task(body: CreateTaskRequest, request: Request):
    """Create a task in stage "new"."""
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    department = _parse_enum(Department, body.department, "department")
    task_type = _parse_enum(TaskType, body.task_type, "task_type")

    result = await service.create_task(
        actor,
        title=body.title,
        department=department,
        task_type=task_type,
        assigned_to=body.assigned_to,
        editor_id=body.editor_id,
        client_id=body.client_id,
        project_id=body.project_id,
        description=body.description,
        deadline=body.deadline,
        scheduled_date=body.scheduled_date,
        scheduled_time=body.scheduled_time,
        location=body.location,
        company_name=body.company_name,
    )
    return _respond(result)


@router.get("/tasks")
async def list_tasks(
    request: Request,
    actor_id: str = Query(...),
    status: Optional[str] = Query(None),
    task_type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    """List the tasks visible to the actor."""
    service = _service(request)
    actor = _resolve_actor(service, actor_id)
    tasks = await service.list_tasks_for(
        actor,
        status=_parse_enum(TaskStatus, status, "status"),
        task_type=_parse_enum(TaskType, task_type, "task_type"),
        limit=limit,
    )
    return {"tasks": [t.to_dict() for t in tasks], "count": len(tasks)}


@router.get("/tasks/board")
async def get_task_board(request: Request, actor_id: str = Query(...)):
    """Visible tasks in one column per status."""
    service = _service(request)
    actor = _resolve_actor(service, actor_id)
    columns = await service.task_board_for(actor)
    return {
        "columns": {status: [t.to_dict() for t in tasks] for status, tasks in columns.items()},
        "count": sum(len(tasks) for tasks in columns.values()),
    }


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, request: Request, actor_id: str = Query(...)):
    service = _service(request)
    actor = _resolve_actor(service, actor_id)
    task, error = await service.get_task_for(actor, task_id)
    if error is not None:
        raise HTTPException(status_code=ERROR_STATUS_CODES[error], detail=f"Task '{task_id}' not available")
    return {"task": task.to_dict()}


@router.get("/tasks/{task_id}/guidance")
async def get_task_guidance(task_id: str, request: Request, actor_id: str = Query(...)):
    """What happens next, and which actions the actor can take now."""
    service = _service(request)
    actor = _resolve_actor(service, actor_id)
    task, error = await service.get_task_for(actor, task_id)
    if error is not None:
        raise HTTPException(status_code=ERROR_STATUS_CODES[error], detail=f"Task '{task_id}' not available")
    return service.engine.get_guidance(task, actor)


# -----------------------------------------------------------------------------
# Transitions
# -----------------------------------------------------------------------------

@router.post("/tasks/{task_id}/advance")
async def advance_task(task_id: str, body: AdvanceRequest, request: Request):
    """
    Advance a task.

    Actions: assign, start, mark-stage-done, submit-for-review.
    Send from_stage to make retries safe; send expected_version to detect
    concurrent changes (409 on conflict, re-fetch and retry).
    """
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    result = await service.engine.advance(
        task_id,
        actor,
        body.action,
        assignee_id=body.assignee_id,
        editor_id=body.editor_id,
        from_stage=body.from_stage,
        expected_version=body.expected_version,
    )
    return _respond(result)


@router.post("/tasks/{task_id}/approve")
async def approve_task(task_id: str, body: ReviewRequest, request: Request):
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    result = await service.revisions.approve(task_id, actor, body.feedback, body.expected_version)
    return _respond(result)


@router.post("/tasks/{task_id}/reject")
async def reject_task(task_id: str, body: ReviewRequest, request: Request):
    """Request a revision. Feedback is required."""
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    result = await service.revisions.reject(task_id, actor, body.feedback, body.expected_version)
    return _respond(result)


@router.post("/tasks/{task_id}/close")
async def close_task(task_id: str, body: CloseRequest, request: Request):
    """Administratively reject a task."""
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    result = await service.engine.close(task_id, actor, body.reason, body.expected_version)
    return _respond(result)


# -----------------------------------------------------------------------------
# Attachments
# -----------------------------------------------------------------------------

@router.post("/tasks/{task_id}/attachments")
async def add_attachment(task_id: str, body: AttachmentRequest, request: Request):
    """Record a file already uploaded to blob storage."""
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    result, attachment = await service.engine.upload_deliverable(
        task_id,
        actor,
        file_url=body.file_url,
        file_name=body.file_name,
        is_final=body.is_final,
        file_type=body.file_type,
        file_size=body.file_size,
    )
    response = _respond(result)
    response["attachment"] = attachment.to_dict() if attachment else None
    return response


@router.get("/tasks/{task_id}/attachments")
async def list_attachments(
    task_id: str,
    request: Request,
    actor_id: str = Query(...),
    final_only: bool = Query(False),
):
    service = _service(request)
    actor = _resolve_actor(service, actor_id)
    _, error = await service.get_task_for(actor, task_id)
    if error is not None:
        raise HTTPException(status_code=ERROR_STATUS_CODES[error], detail=f"Task '{task_id}' not available")
    if final_only:
        attachments = await service.ledger.list_final(task_id)
    else:
        attachments = await service.ledger.list_for_task(task_id)
    return {"attachments": [a.to_dict() for a in attachments], "count": len(attachments)}


@router.post("/attachments/{attachment_id}/final")
async def mark_attachment_final(attachment_id: str, body: ActorRequest, request: Request):
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    result = await service.engine.mark_final(attachment_id, actor)
    return _respond(result)


# -----------------------------------------------------------------------------
# Comments
# -----------------------------------------------------------------------------

@router.post("/tasks/{task_id}/comments")
async def add_comment(task_id: str, body: CommentRequest, request: Request):
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    result, comment = await service.add_comment(task_id, actor, body.content)
    response = _respond(result)
    response["comment"] = comment.to_dict() if comment else None
    return response


@router.get("/tasks/{task_id}/comments")
async def list_comments(task_id: str, request: Request, actor_id: str = Query(...)):
    service = _service(request)
    actor = _resolve_actor(service, actor_id)
    _, error = await service.get_task_for(actor, task_id)
    if error is not None:
        raise HTTPException(status_code=ERROR_STATUS_CODES[error], detail=f"Task '{task_id}' not available")
    comments = await service.comments.list_for_task(task_id)
    return {"comments": [c.to_dict() for c in comments], "count": len(comments)}


# -----------------------------------------------------------------------------
# Activity Log
# -----------------------------------------------------------------------------

@router.get("/activity")
async def get_activity(
    request: Request,
    actor_id: str = Query(...),
    task_id: Optional[str] = Query(None),
    department: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    """Accepted and refused transitions, newest first. Admins and leads only."""
    service = _service(request)
    actor = _resolve_actor(service, actor_id)
    entries, error = service.activity_for(
        actor,
        task_id=task_id,
        department=_parse_enum(Department, department, "department"),
        limit=limit,
    )
    if error is not None:
        raise HTTPException(status_code=ERROR_STATUS_CODES[error], detail="Activity log is not available to this account")
    return {"entries": entries, "count": len(entries)}


# -----------------------------------------------------------------------------
# Notifications
# -----------------------------------------------------------------------------

@router.get("/notifications")
async def list_notifications(
    request: Request,
    actor_id: str = Query(...),
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
):
    """A user's notifications, links resolved for the reader's current role."""
    service = _service(request)
    actor = _resolve_actor(service, actor_id)
    notifications = await service.list_notifications(actor, unread_only=unread_only, limit=limit)
    unread = await service.notifications.unread_count(actor.user_id)
    return {"notifications": notifications, "unread_count": unread}


@router.post("/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: str, body: ActorRequest, request: Request):
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    if not await service.notifications.mark_read(notification_id, actor.user_id):
        raise HTTPException(status_code=404, detail=f"Notification '{notification_id}' not found")
    return {"success": True}


@router.post("/notifications/read-all")
async def mark_all_notifications_read(body: ActorRequest, request: Request):
    service = _service(request)
    actor = _resolve_actor(service, body.actor_id)
    count = await service.notifications.mark_all_read(actor.user_id)
    return {"success": True, "marked": count}


# -----------------------------------------------------------------------------
# Realtime
# -----------------------------------------------------------------------------

@router.websocket("/ws/{viewer_id}")
async def realtime_socket(websocket: WebSocket, viewer_id: str):
    """
    Push committed changes visible to the viewer.

    The client may send "ping" at any time and receives {"type": "pong"}.
    """
    service: TaskflowService = websocket.app.state.service
    actor = service.resolve_actor(viewer_id)
    if actor is None:
        await websocket.close(code=4403)
        return

    await websocket.accept()
    session = service.broadcaster.connect(actor)
    await websocket.send_json({"type": "connected", "session_id": session.session_id})

    async def forward_changes():
        while True:
            event = await session.next_event()
            if event is None:
                break
            await websocket.send_json({"type": "change", **event.to_dict()})
        # Session closed by the broadcaster (viewer fell behind or shutdown): reconnect to re-sync
        await websocket.close(code=1013)

    forwarder = asyncio.create_task(forward_changes())
    try:
        while True:
            message = await websocket.receive_text()
            if message.strip().lower() == "ping":
                await websocket.send_json({"type": "pong"})
    except WebSocketDisconnect:
        logger.info(f"WebSocket closed by viewer {viewer_id}")
    finally:
        forwarder.cancel()
        service.broadcaster.disconnect(session.session_id)
