"""
Task Model - Lifecycle Vocabulary, Stage Graphs and Records

This module is the single source of truth for the task lifecycle vocabulary:
- Closed enums for departments, task types, statuses, stages, roles and actions
- Static stage graph per task type (ordered, no branching in forward progress)
- Stage ownership and specialist task types
- Task, Attachment, Comment, Notification and transition records
- Typed transition results (the core never raises for domain failures)

Stage graphs:
    video:   new → filming → editing → editing_done → review
    editing: new → editing → editing_done → review
    photo:   new → shooting → review
    content / design / general: new → drafting → review

IMPORTANT:
- task_type and department never change after creation
- workflow_stage must always belong to the task type's stage graph
- A task in revision always carries non-empty client feedback
"""

import uuid
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Set, Tuple, FrozenSet


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class Department(str, Enum):
    """Organizational grouping used for authorization scoping."""
    PHOTOGRAPHY = "photography"
    CONTENT = "content"


class TaskType(str, Enum):
    """Classification that selects the stage graph of a task."""
    VIDEO = "video"
    PHOTO = "photo"
    EDITING = "editing"
    CONTENT = "content"
    DESIGN = "design"
    GENERAL = "general"


class TaskStatus(str, Enum):
    """
    Coarse lifecycle marker.

    IN_REVIEW is stored as "review" to stay wire-compatible with the
    dashboard's status column.
    """
    NEW = "new"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "review"
    REVISION = "revision"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def terminal_states(cls) -> Set["TaskStatus"]:
        """Statuses after which no further transition is accepted."""
        return {cls.APPROVED, cls.REJECTED}


class WorkflowStage(str, Enum):
    """Fine-grained production step. Valid values depend on the task type."""
    NEW = "new"
    FILMING = "filming"
    EDITING = "editing"
    EDITING_DONE = "editing_done"
    SHOOTING = "shooting"
    DRAFTING = "drafting"
    REVIEW = "review"


class UserRole(str, Enum):
    """Account roles of the dashboard."""
    ADMIN = "admin"
    ACCOUNTANT = "accountant"
    TEAM_LEADER = "team_leader"
    ACCOUNT_MANAGER = "account_manager"
    CREATOR = "creator"
    DESIGNER = "designer"
    CLIENT = "client"
    VIDEOGRAPHER = "videographer"
    EDITOR = "editor"
    PHOTOGRAPHER = "photographer"

    @classmethod
    def specialists(cls) -> Set["UserRole"]:
        """Roles that do the production work of a stage."""
        return {cls.VIDEOGRAPHER, cls.EDITOR, cls.PHOTOGRAPHER, cls.CREATOR, cls.DESIGNER}

    @classmethod
    def leads(cls) -> Set["UserRole"]:
        """Roles that manage a department's tasks."""
        return {cls.TEAM_LEADER, cls.ACCOUNT_MANAGER}


class TaskAction(str, Enum):
    """
    Every action an actor can request on a task.

    ASSIGN/START/MARK_STAGE_DONE/SUBMIT_FOR_REVIEW go through the stage engine,
    APPROVE/REJECT through the revision loop. CLOSE is the administrative
    rejection that ends a task with status "rejected".
    """
    ASSIGN = "assign"
    START = "start"
    MARK_STAGE_DONE = "mark-stage-done"
    SUBMIT_FOR_REVIEW = "submit-for-review"
    UPLOAD = "upload"
    APPROVE = "approve"
    REJECT = "reject"
    CLOSE = "close"
    COMMENT = "comment"

    @classmethod
    def advance_actions(cls) -> Set["TaskAction"]:
        """Actions accepted by the stage engine's advance()."""
        return {cls.ASSIGN, cls.START, cls.MARK_STAGE_DONE, cls.SUBMIT_FOR_REVIEW}

    @classmethod
    def forward_actions(cls) -> Set["TaskAction"]:
        """Actions that push production forward."""
        return {cls.START, cls.MARK_STAGE_DONE, cls.SUBMIT_FOR_REVIEW, cls.UPLOAD}

    @classmethod
    def corrective_actions(cls) -> Set["TaskAction"]:
        """Actions reserved for leads and admins."""
        return {cls.ASSIGN, cls.CLOSE}

    @classmethod
    def review_actions(cls) -> Set["TaskAction"]:
        """Client disposition of a task in review."""
        return {cls.APPROVE, cls.REJECT}


class TransitionError(str, Enum):
    """Failure classification returned to callers."""
    UNAUTHORIZED = "unauthorized"
    INVALID_TRANSITION = "invalid_transition"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    ALREADY_TERMINAL = "already_terminal"
    NOT_FOUND = "not_found"


# -----------------------------------------------------------------------------
# Stage Graphs
# -----------------------------------------------------------------------------
STAGE_GRAPHS: Dict[TaskType, Tuple[WorkflowStage, ...]] = {
    TaskType.VIDEO: (
        WorkflowStage.NEW,
        WorkflowStage.FILMING,
        WorkflowStage.EDITING,
        WorkflowStage.EDITING_DONE,
        WorkflowStage.REVIEW,
    ),
    TaskType.EDITING: (
        WorkflowStage.NEW,
        WorkflowStage.EDITING,
        WorkflowStage.EDITING_DONE,
        WorkflowStage.REVIEW,
    ),
    TaskType.PHOTO: (
        WorkflowStage.NEW,
        WorkflowStage.SHOOTING,
        WorkflowStage.REVIEW,
    ),
    TaskType.CONTENT: (
        WorkflowStage.NEW,
        WorkflowStage.DRAFTING,
        WorkflowStage.REVIEW,
    ),
    TaskType.DESIGN: (
        WorkflowStage.NEW,
        WorkflowStage.DRAFTING,
        WorkflowStage.REVIEW,
    ),
    TaskType.GENERAL: (
        WorkflowStage.NEW,
        WorkflowStage.DRAFTING,
        WorkflowStage.REVIEW,
    ),
}

# Roles that work a stage. An empty set is a hand-off stage: leads only.
STAGE_OWNERS: Dict[TaskType, Dict[WorkflowStage, FrozenSet[UserRole]]] = {
    TaskType.VIDEO: {
        WorkflowStage.NEW: frozenset({UserRole.VIDEOGRAPHER}),
        WorkflowStage.FILMING: frozenset({UserRole.VIDEOGRAPHER}),
        WorkflowStage.EDITING: frozenset({UserRole.EDITOR}),
        WorkflowStage.EDITING_DONE: frozenset(),
        WorkflowStage.REVIEW: frozenset(),
    },
    TaskType.EDITING: {
        WorkflowStage.NEW: frozenset({UserRole.EDITOR}),
        WorkflowStage.EDITING: frozenset({UserRole.EDITOR}),
        WorkflowStage.EDITING_DONE: frozenset(),
        WorkflowStage.REVIEW: frozenset(),
    },
    TaskType.PHOTO: {
        WorkflowStage.NEW: frozenset({UserRole.PHOTOGRAPHER}),
        WorkflowStage.SHOOTING: frozenset({UserRole.PHOTOGRAPHER}),
        WorkflowStage.REVIEW: frozenset(),
    },
    TaskType.CONTENT: {
        WorkflowStage.NEW: frozenset({UserRole.CREATOR}),
        WorkflowStage.DRAFTING: frozenset({UserRole.CREATOR}),
        WorkflowStage.REVIEW: frozenset(),
    },
    TaskType.DESIGN: {
        WorkflowStage.NEW: frozenset({UserRole.DESIGNER}),
        WorkflowStage.DRAFTING: frozenset({UserRole.DESIGNER}),
        WorkflowStage.REVIEW: frozenset(),
    },
    TaskType.GENERAL: {
        WorkflowStage.NEW: frozenset({UserRole.CREATOR, UserRole.DESIGNER}),
        WorkflowStage.DRAFTING: frozenset({UserRole.CREATOR, UserRole.DESIGNER}),
        WorkflowStage.REVIEW: frozenset(),
    },
}

# Task types each specialist may work on
ROLE_TASK_TYPES: Dict[UserRole, FrozenSet[TaskType]] = {
    UserRole.VIDEOGRAPHER: frozenset({TaskType.VIDEO}),
    UserRole.EDITOR: frozenset({TaskType.VIDEO, TaskType.EDITING}),
    UserRole.PHOTOGRAPHER: frozenset({TaskType.PHOTO}),
    UserRole.CREATOR: frozenset({TaskType.CONTENT, TaskType.GENERAL}),
    UserRole.DESIGNER: frozenset({TaskType.DESIGN, TaskType.GENERAL}),
}

# Home department of each specialist
ROLE_DEPARTMENTS: Dict[UserRole, Department] = {
    UserRole.VIDEOGRAPHER: Department.PHOTOGRAPHY,
    UserRole.EDITOR: Department.PHOTOGRAPHY,
    UserRole.PHOTOGRAPHER: Department.PHOTOGRAPHY,
    UserRole.CREATOR: Department.CONTENT,
    UserRole.DESIGNER: Department.CONTENT,
}

# Fields the engine may change after creation
MUTABLE_TASK_FIELDS: FrozenSet[str] = frozenset({
    "workflow_stage",
    "status",
    "assigned_to",
    "editor_id",
    "client_feedback",
})


def _validate_tables() -> None:
    """Every task type and specialist must be covered by the static tables."""
    for task_type in TaskType:
        graph = STAGE_GRAPHS.get(task_type)
        if not graph:
            raise RuntimeError(f"No stage graph for task type '{task_type.value}'")
        if graph[0] != WorkflowStage.NEW or graph[-1] != WorkflowStage.REVIEW:
            raise RuntimeError(f"Stage graph for '{task_type.value}' must run from new to review")
        owners = STAGE_OWNERS.get(task_type, {})
        missing = [s.value for s in graph if s not in owners]
        if missing:
            raise RuntimeError(f"No stage owners for '{task_type.value}': {missing}")
    for role in UserRole.specialists():
        if role not in ROLE_TASK_TYPES or role not in ROLE_DEPARTMENTS:
            raise RuntimeError(f"Specialist role '{role.value}' has no specialty")


_validate_tables()


# -----------------------------------------------------------------------------
# Graph Queries
# -----------------------------------------------------------------------------

def stage_graph(task_type: TaskType) -> Tuple[WorkflowStage, ...]:
    return STAGE_GRAPHS[task_type]


def is_valid_stage(task_type: TaskType, stage: WorkflowStage) -> bool:
    return stage in STAGE_GRAPHS[task_type]


def next_stage(task_type: TaskType, stage: WorkflowStage) -> Optional[WorkflowStage]:
    """
    The single stage that follows `stage` in the task type's graph.

    Returns None when `stage` is review (end of graph) or not part of the graph.
    """
    graph = STAGE_GRAPHS[task_type]
    if stage not in graph:
        return None
    index = graph.index(stage)
    if index + 1 >= len(graph):
        return None
    return graph[index + 1]


def first_production_stage(task_type: TaskType) -> WorkflowStage:
    return STAGE_GRAPHS[task_type][1]


def last_pre_review_stage(task_type: TaskType) -> WorkflowStage:
    return STAGE_GRAPHS[task_type][-2]


def stage_owners(task_type: TaskType, stage: WorkflowStage) -> FrozenSet[UserRole]:
    return STAGE_OWNERS[task_type].get(stage, frozenset())


def production_stages(task_type: TaskType) -> List[WorkflowStage]:
    """Stages (other than new) worked by a specialist, in graph order."""
    return [
        stage for stage in STAGE_GRAPHS[task_type]
        if stage != WorkflowStage.NEW and stage_owners(task_type, stage)
    ]


def return_stage(task_type: TaskType) -> WorkflowStage:
    """
    Stage a rejected task goes back to: the last production stage before review.

    video → editing, editing → editing, photo → shooting,
    content / design / general → drafting.
    """
    return production_stages(task_type)[-1]


# -----------------------------------------------------------------------------
# Records
# -----------------------------------------------------------------------------

def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Task:
    """
    A unit of production work.

    Records handed out by the store are copies; mutate through
    TaskStore.compare_and_swap only.
    """
    id: str
    title: str
    department: Department
    task_type: TaskType
    created_by: str
    status: TaskStatus = TaskStatus.NEW
    workflow_stage: WorkflowStage = WorkflowStage.NEW
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
    client_feedback: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    version: int = 1

    def __post_init__(self):
        if not is_valid_stage(self.task_type, self.workflow_stage):
            raise ValueError(
                f"Stage '{self.workflow_stage.value}' is not valid for task type '{self.task_type.value}'"
            )
        if self.status == TaskStatus.REVISION and not (self.client_feedback or "").strip():
            raise ValueError("A task in revision must carry client feedback")
        if self.version < 1:
            raise ValueError(f"version must be positive: {self.version}")

    @property
    def is_terminal(self) -> bool:
        return self.status in TaskStatus.terminal_states()

    def copy(self) -> "Task":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "department": self.department.value,
            "task_type": self.task_type.value,
            "status": self.status.value,
            "workflow_stage": self.workflow_stage.value,
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "editor_id": self.editor_id,
            "client_id": self.client_id,
            "project_id": self.project_id,
            "description": self.description,
            "deadline": self.deadline,
            "scheduled_date": self.scheduled_date,
            "scheduled_time": self.scheduled_time,
            "location": self.location,
            "company_name": self.company_name,
            "client_feedback": self.client_feedback,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            title=data["title"],
            department=Department(data["department"]),
            task_type=TaskType(data["task_type"]),
            created_by=data["created_by"],
            status=TaskStatus(data.get("status", TaskStatus.NEW.value)),
            workflow_stage=WorkflowStage(data.get("workflow_stage", WorkflowStage.NEW.value)),
            assigned_to=data.get("assigned_to"),
            editor_id=data.get("editor_id"),
            client_id=data.get("client_id"),
            project_id=data.get("project_id"),
            description=data.get("description", ""),
            deadline=data.get("deadline"),
            scheduled_date=data.get("scheduled_date"),
            scheduled_time=data.get("scheduled_time"),
            location=data.get("location"),
            company_name=data.get("company_name"),
            client_feedback=data.get("client_feedback"),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
            version=data.get("version", 1),
        )


@dataclass(frozen=True)
class Attachment:
    """
    A file attached to a task.

    Append-only. is_final is the only field that can change, and only
    from False to True (recorded as a separate finalize entry in the ledger).
    """
    id: str
    task_id: str
    file_url: str
    file_name: str
    uploaded_by: str
    is_final: bool
    created_at: str  # ISO format
    file_type: Optional[str] = None
    file_size: Optional[int] = None

    def __post_init__(self):
        if not self.file_url:
            raise ValueError("file_url is required")
        if not self.file_name:
            raise ValueError("file_name is required")
        if self.file_size is not None and self.file_size < 0:
            raise ValueError(f"file_size cannot be negative: {self.file_size}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            file_url=data["file_url"],
            file_name=data["file_name"],
            uploaded_by=data["uploaded_by"],
            is_final=bool(data.get("is_final", False)),
            created_at=data["created_at"],
            file_type=data.get("file_type"),
            file_size=data.get("file_size"),
        )


@dataclass(frozen=True)
class Comment:
    """A comment on a task thread."""
    id: str
    task_id: str
    user_id: str
    content: str
    created_at: str  # ISO format

    def __post_init__(self):
        if not self.content.strip():
            raise ValueError("Comment content cannot be empty")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Comment":
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            user_id=data["user_id"],
            content=data["content"],
            created_at=data["created_at"],
        )


@dataclass
class Notification:
    """
    A notification for exactly one recipient.

    `link` carries the sender's role prefix; resolve it for the reader with
    notification_dispatcher.resolve_link_for_viewer.
    """
    id: str
    user_id: str
    title: str
    message: str
    link: Optional[str] = None
    task_id: Optional[str] = None
    is_read: bool = False
    created_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            title=data["title"],
            message=data["message"],
            link=data.get("link"),
            task_id=data.get("task_id"),
            is_read=bool(data.get("is_read", False)),
            created_at=data.get("created_at") or utc_now().isoformat(),
        )


@dataclass(frozen=True)
class Actor:
    """
    The account performing an action.

    Resolved server-side for every request; role and department are mutable
    attributes of the account and must never be cached between requests.
    """
    user_id: str
    role: UserRole
    department: Optional[Department] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "role": self.role.value,
            "department": self.department.value if self.department else None,
        }


@dataclass(frozen=True)
class TransitionRecord:
    """An accepted transition, handed to the notification dispatcher."""
    task_id: str
    action: TaskAction
    actor_id: str
    actor_role: UserRole
    from_stage: WorkflowStage
    to_stage: WorkflowStage
    from_status: TaskStatus
    to_status: TaskStatus
    feedback: Optional[str] = None
    record_id: str = field(default_factory=new_id)
    occurred_at: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "task_id": self.task_id,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role.value,
            "from_stage": self.from_stage.value,
            "to_stage": self.to_stage.value,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "feedback": self.feedback,
            "occurred_at": self.occurred_at,
        }


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of a mutating operation.

    Exactly one of `task` (on success) or `error` (on failure) is meaningful;
    a failed result may still carry the current task for the caller to re-sync.
    """
    success: bool
    message: str
    task: Optional[Task] = None
    error: Optional[TransitionError] = None

    @classmethod
    def ok(cls, task: Task, message: str) -> "TransitionResult":
        return cls(success=True, message=message, task=task)

    @classmethod
    def fail(cls, error: TransitionError, message: str, task: Optional[Task] = None) -> "TransitionResult":
        return cls(success=False, message=message, task=task, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error.value if self.error else None,
            "task": self.task.to_dict() if self.task else None,
        }


def responsible_user(task: Task, stage: WorkflowStage) -> Optional[str]:
    """
    User who answers for `stage` of `task`.

    Editing stages go to the task's editor when one is set, every other
    stage to the assignee.
    """
    if UserRole.EDITOR in stage_owners(task.task_type, stage) and task.editor_id:
        return task.editor_id
    return task.assigned_to
