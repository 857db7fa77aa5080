"""
Role-Authorization Gate

Decides whether an actor may perform an action on a task. This module is
the single source of truth for who may advance what.

Rules:
- ADMIN bypasses every check
- ACCOUNTANT has no task actions
- TEAM_LEADER / ACCOUNT_MANAGER: any forward or corrective action within
  their department (a lead without a department covers all departments)
- Specialists (videographer, editor, photographer, creator, designer):
  forward actions only, only when the current stage belongs to their
  specialty and the task's department/task_type match their own
- CLIENT: approve/reject only while workflow_stage == review, and only on
  their own task when the actor id is known

The gate is pure and must be evaluated on every request: role and
department are mutable account attributes, so decisions are never cached.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, FrozenSet, Union

from .task_model import (
    Department,
    ROLE_DEPARTMENTS,
    ROLE_TASK_TYPES,
    Task,
    TaskAction,
    UserRole,
    WorkflowStage,
    stage_owners,
)

logger = logging.getLogger("role_gate")

# -----------------------------------------------------------------------------
# Role → Allowed Actions (before task-specific checks)
# -----------------------------------------------------------------------------
_LEAD_ACTIONS: FrozenSet[TaskAction] = frozenset({
    TaskAction.ASSIGN,
    TaskAction.START,
    TaskAction.MARK_STAGE_DONE,
    TaskAction.SUBMIT_FOR_REVIEW,
    TaskAction.UPLOAD,
    TaskAction.CLOSE,
    TaskAction.COMMENT,
})

_SPECIALIST_ACTIONS: FrozenSet[TaskAction] = frozenset({
    TaskAction.START,
    TaskAction.MARK_STAGE_DONE,
    TaskAction.SUBMIT_FOR_REVIEW,
    TaskAction.UPLOAD,
    TaskAction.COMMENT,
})

ROLE_ALLOWED_ACTIONS: Dict[UserRole, FrozenSet[TaskAction]] = {
    UserRole.ADMIN: frozenset(TaskAction),
    UserRole.ACCOUNTANT: frozenset(),
    UserRole.TEAM_LEADER: _LEAD_ACTIONS,
    UserRole.ACCOUNT_MANAGER: _LEAD_ACTIONS,
    UserRole.VIDEOGRAPHER: _SPECIALIST_ACTIONS,
    UserRole.EDITOR: _SPECIALIST_ACTIONS,
    UserRole.PHOTOGRAPHER: _SPECIALIST_ACTIONS,
    UserRole.CREATOR: _SPECIALIST_ACTIONS,
    UserRole.DESIGNER: _SPECIALIST_ACTIONS,
    UserRole.CLIENT: frozenset({TaskAction.APPROVE, TaskAction.REJECT, TaskAction.COMMENT}),
}

_missing_roles = [r.value for r in UserRole if r not in ROLE_ALLOWED_ACTIONS]
if _missing_roles:
    raise RuntimeError(f"Roles without an action table: {_missing_roles}")


@dataclass(frozen=True)
class GateDecision:
    """
    Result of a gate evaluation.

    If allowed is False, the action MUST NOT proceed.
    """
    allowed: bool
    reason: str
    role: Optional[str] = None
    action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "role": self.role,
            "action": self.action,
        }


def _deny(reason: str, role: Optional[UserRole], action: Optional[TaskAction]) -> GateDecision:
    return GateDecision(
        allowed=False,
        reason=reason,
        role=role.value if role else None,
        action=action.value if action else None,
    )


def _allow(reason: str, role: UserRole, action: TaskAction) -> GateDecision:
    return GateDecision(allowed=True, reason=reason, role=role.value, action=action.value)


# -----------------------------------------------------------------------------
# Evaluation
# -----------------------------------------------------------------------------

def check_permission(
    actor_role: Union[UserRole, str],
    actor_department: Optional[Union[Department, str]],
    task: Task,
    action: Union[TaskAction, str],
    actor_id: Optional[str] = None,
) -> GateDecision:
    """
    Evaluate an action against the role rules.

    Unknown role, department or action strings are denied, never raised.
    """
    try:
        role = UserRole(actor_role)
    except ValueError:
        return _deny(f"Unknown role '{actor_role}'", None, None)
    try:
        requested = TaskAction(action)
    except ValueError:
        return _deny(f"Unknown action '{action}'", role, None)
    department: Optional[Department] = None
    if actor_department:
        try:
            department = Department(actor_department)
        except ValueError:
            return _deny(f"Unknown department '{actor_department}'", role, requested)

    if requested not in ROLE_ALLOWED_ACTIONS[role]:
        return _deny(f"Role '{role.value}' cannot perform '{requested.value}'", role, requested)

    if role == UserRole.ADMIN:
        return _allow("Admin bypass", role, requested)

    if role in UserRole.leads():
        if department is not None and department != task.department:
            return _deny(
                f"Role '{role.value}' of department '{department.value}' cannot act on "
                f"'{task.department.value}' tasks",
                role,
                requested,
            )
        return _allow(f"Lead action within '{task.department.value}'", role, requested)

    if role in UserRole.specialists():
        if task.task_type not in ROLE_TASK_TYPES[role]:
            return _deny(
                f"Role '{role.value}' does not work '{task.task_type.value}' tasks",
                role,
                requested,
            )
        home_department = department or ROLE_DEPARTMENTS[role]
        if home_department != task.department:
            return _deny(
                f"Role '{role.value}' of department '{home_department.value}' cannot act on "
                f"'{task.department.value}' tasks",
                role,
                requested,
            )
        if requested == TaskAction.COMMENT:
            return _allow("Specialist comment", role, requested)
        owners = stage_owners(task.task_type, task.workflow_stage)
        if role not in owners:
            return _deny(
                f"Stage '{task.workflow_stage.value}' is not worked by '{role.value}'",
                role,
                requested,
            )
        return _allow(f"Specialist owns stage '{task.workflow_stage.value}'", role, requested)

    if role == UserRole.CLIENT:
        if actor_id is not None and task.client_id != actor_id:
            return _deny("Clients may only act on their own tasks", role, requested)
        if requested == TaskAction.COMMENT:
            return _allow("Client comment on own task", role, requested)
        if task.workflow_stage != WorkflowStage.REVIEW:
            return _deny(
                f"Clients may only '{requested.value}' in review (stage is '{task.workflow_stage.value}')",
                role,
                requested,
            )
        return _allow("Client disposition in review", role, requested)

    # ACCOUNTANT has an empty action table and never reaches here
    return _deny(f"No rule for role '{role.value}'", role, requested)


def can_perform(
    actor_role: Union[UserRole, str],
    actor_department: Optional[Union[Department, str]],
    task: Task,
    action: Union[TaskAction, str],
    actor_id: Optional[str] = None,
) -> bool:
    """True if the actor may perform `action` on `task` right now."""
    return check_permission(actor_role, actor_department, task, action, actor_id).allowed


def permitted_actions(
    actor_role: Union[UserRole, str],
    actor_department: Optional[Union[Department, str]],
    task: Task,
    actor_id: Optional[str] = None,
) -> List[TaskAction]:
    """Every action the gate allows, ignoring whether the stage graph permits it."""
    return [
        action for action in TaskAction
        if can_perform(actor_role, actor_department, task, action, actor_id)
    ]


logger.info("Role Gate module loaded")
