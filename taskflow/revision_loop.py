"""
Revision Loop Controller

Client disposition of a task in review:
- approve: status "approved" (terminal); the stage stays "review" as a
  terminal marker; optional confirmation text is stored as client_feedback
- reject: requires feedback; the task goes back to its return stage (the last
  production stage before review) with status "revision", the feedback stored
  verbatim and responsibility handed to whoever owns that stage

Rejection means "fix the deliverable", not "start over": the task re-enters
the normal forward path on the next mark-stage-done.

Only the task's client (or an admin acting for them) may call either action;
this is enforced by the role gate through the stage engine's load path.
"""

import logging
from typing import Optional, Dict, Any

from .stage_engine import StageTransitionEngine
from .task_model import (
    Actor,
    TaskAction,
    TaskStatus,
    TransitionError,
    TransitionResult,
    UserRole,
    WorkflowStage,
    responsible_user,
    return_stage,
)

logger = logging.getLogger("revision_loop")

CLIENT_APPROVAL_TEXT = "Approved by client"


class RevisionLoopController:
    """Approve / reject-with-feedback on top of the stage engine."""

    def __init__(self, engine: StageTransitionEngine):
        self._engine = engine

    async def reject(
        self,
        task_id: str,
        actor: Actor,
        feedback: Optional[str],
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """
        Send a task in review back to its return stage with feedback.

        Empty or whitespace-only feedback is always a VALIDATION_ERROR.
        """
        if not feedback or not feedback.strip():
            return TransitionResult.fail(
                TransitionError.VALIDATION_ERROR,
                "Feedback is required to request a revision",
            )

        task, failure = await self._engine.load_for_action(task_id, actor, TaskAction.REJECT, expected_version)
        if failure is not None:
            return failure

        if task.workflow_stage != WorkflowStage.REVIEW:
            return await self._engine.refuse(
                task,
                actor,
                TaskAction.REJECT,
                TransitionError.INVALID_TRANSITION,
                f"Only tasks in review can be rejected (stage is '{task.workflow_stage.value}')",
            )

        target = return_stage(task.task_type)
        changes: Dict[str, Any] = {
            "workflow_stage": target,
            "status": TaskStatus.REVISION,
            "client_feedback": feedback,
        }
        responsible = responsible_user(task, target)
        if responsible and responsible != task.assigned_to:
            changes["assigned_to"] = responsible

        logger.info(f"Revision requested on task {task.id} by {actor.user_id}: back to {target.value}")
        return await self._engine.commit(
            task,
            actor,
            TaskAction.REJECT,
            changes,
            f"Revision requested: back to {target.value}",
            feedback=feedback,
        )

    async def approve(
        self,
        task_id: str,
        actor: Actor,
        feedback: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> TransitionResult:
        """
        Approve a task in review. Terminal: a second call returns ALREADY_TERMINAL.
        """
        task, failure = await self._engine.load_for_action(task_id, actor, TaskAction.APPROVE, expected_version)
        if failure is not None:
            return failure

        if task.workflow_stage != WorkflowStage.REVIEW:
            return await self._engine.refuse(
                task,
                actor,
                TaskAction.APPROVE,
                TransitionError.INVALID_TRANSITION,
                f"Only tasks in review can be approved (stage is '{task.workflow_stage.value}')",
            )

        changes: Dict[str, Any] = {"status": TaskStatus.APPROVED}
        confirmation = feedback.strip() if feedback and feedback.strip() else None
        if confirmation is None and actor.role == UserRole.CLIENT:
            confirmation = CLIENT_APPROVAL_TEXT
        if confirmation is not None:
            changes["client_feedback"] = confirmation

        return await self._engine.commit(
            task,
            actor,
            TaskAction.APPROVE,
            changes,
            "Task approved",
            feedback=confirmation,
        )


logger.info("Revision Loop module loaded")
