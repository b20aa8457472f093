"""Step execution for contentflow workflows."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .actions import ActionContext, ActionRunner
from .collaborators import NotificationGateway
from .conditions import evaluate
from .constants import DELAY_JOB
from .contracts import (
    ActionStep,
    ApprovalStep,
    ConditionStep,
    DelayStep,
    ForkStep,
    JoinStep,
    NotificationStep,
    Step,
    utcnow,
)
from .errors import ActionExecutionError, WorkflowError
from .persistence.models import InstanceStep, WorkflowInstance
from .scheduling import BaseScheduler
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class StepOutcome(BaseModel):
    """What the engine should do after a step handler returns.

    ``completed`` outcomes advance the instance immediately; suspended ones
    leave the step in progress until an external call or scheduler job
    completes it.
    """

    completed: bool
    result: Any = None
    next_step_id: Optional[str] = None
    assignee: Optional[str] = None
    job_ids: List[str] = Field(default_factory=list)
    fork_branches: List[str] = Field(default_factory=list)

    @classmethod
    def complete(cls, result: Any = None, next_step_id: Optional[str] = None) -> "StepOutcome":
        return cls(completed=True, result=result, next_step_id=next_step_id)

    @classmethod
    def suspend(cls, **kwargs: Any) -> "StepOutcome":
        return cls(completed=False, **kwargs)


def _notification_data(instance: WorkflowInstance, step: Step) -> Dict[str, Any]:
    return {
        "instanceId": instance.id,
        "stepId": step.id,
        "workflowId": instance.workflow_id,
    }


class StepExecutor:
    """Runs one step of an instance and reports how it finished."""

    def __init__(
        self,
        notifications: NotificationGateway,
        actions: ActionRunner,
        scheduler: BaseScheduler,
    ) -> None:
        self._notifications = notifications
        self._actions = actions
        self._scheduler = scheduler

    async def run(
        self, instance: WorkflowInstance, step: Step, visit: InstanceStep
    ) -> StepOutcome:
        """Dispatch ``step`` to the handler for its type."""
        if isinstance(step, ApprovalStep):
            return await self._run_approval(instance, step, visit)
        if isinstance(step, NotificationStep):
            return await self._run_notification(instance, step)
        if isinstance(step, ConditionStep):
            return self._run_condition(instance, step)
        if isinstance(step, ActionStep):
            return await self._run_action(instance, step)
        if isinstance(step, DelayStep):
            return await self._run_delay(instance, step)
        if isinstance(step, ForkStep):
            return StepOutcome(
                completed=True,
                result={"branches": list(step.next_steps)},
                fork_branches=list(step.next_steps),
            )
        if isinstance(step, JoinStep):
            return self._run_join(instance, step)
        raise WorkflowError(f"Unsupported step type: {type(step).__name__}")

    async def _run_approval(
        self, instance: WorkflowInstance, step: ApprovalStep, visit: InstanceStep
    ) -> StepOutcome:
        data = _notification_data(instance, step)
        assignee = None
        if step.auto_assign and step.approvers and visit.assignee is None:
            assignee = step.approvers[0]
            await self._notifications.send(
                assignee,
                "workflow_assignment",
                "Workflow Approval Required",
                "You have been assigned to approve a workflow step",
                data,
            )
        for approver in step.approvers:
            await self._notifications.send(
                approver,
                "workflow_approval",
                "Workflow Approval Required",
                "Your approval is required for a workflow step",
                data,
            )
        return StepOutcome.suspend(assignee=assignee)

    async def _run_notification(
        self, instance: WorkflowInstance, step: NotificationStep
    ) -> StepOutcome:
        data = {**step.data, **_notification_data(instance, step)}
        for recipient in step.recipients:
            await self._notifications.send(
                recipient,
                "workflow_notification",
                step.title or "Workflow Notification",
                step.message or "Notification from workflow",
                data,
            )
        return StepOutcome.complete({"recipients": list(step.recipients), "sent": True})

    def _run_condition(self, instance: WorkflowInstance, step: ConditionStep) -> StepOutcome:
        if step.condition is None or isinstance(step.condition, str):
            raise WorkflowError(f"Condition step {step.id} has no structured predicate")
        matched = evaluate(step.condition, instance.data)
        next_step_id = step.true_step_id if matched else step.false_step_id
        logger.debug(f"Condition {step.id} on instance {instance.id} -> {matched}")
        return StepOutcome.complete(
            {
                "condition": step.condition.model_dump(mode="json", by_alias=True),
                "result": matched,
                "next_step_id": next_step_id,
            },
            next_step_id=next_step_id,
        )

    async def _run_action(self, instance: WorkflowInstance, step: ActionStep) -> StepOutcome:
        if not step.action:
            raise ActionExecutionError("", f"step {step.id} names no action")
        context = ActionContext(
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            step_id=step.id,
            tenant_id=instance.tenant_id,
            content_id=instance.content_id,
            subject_type=instance.subject_type,
            user_id=instance.user_id,
            media_id=instance.media_id,
            created_by=instance.created_by,
            data=dict(instance.data),
        )
        policy = step.retry
        max_retries = policy.max_retries if policy else 0
        attempt = 0
        while True:
            try:
                result = await self._actions.invoke(step.action, step.params, context)
                return StepOutcome.complete(result)
            except ActionExecutionError as e:
                if attempt >= max_retries:
                    raise
                logger.warning(
                    f"Action {step.action} failed on instance {instance.id} "
                    f"(retry {attempt + 1}/{max_retries}): {e}"
                )
                await schedule_retry(attempt, policy.backoff_base, policy.jitter)
                attempt += 1

    async def _run_delay(self, instance: WorkflowInstance, step: DelayStep) -> StepOutcome:
        run_at = utcnow() + timedelta(milliseconds=step.delay_ms)
        job_id = await self._scheduler.schedule(
            DELAY_JOB, run_at, {"instance_id": instance.id, "step_id": step.id}
        )
        logger.info(
            f"Instance {instance.id} delayed at {step.id} until {run_at.isoformat()}"
        )
        return StepOutcome.suspend(job_ids=[job_id])

    def _run_join(self, instance: WorkflowInstance, step: JoinStep) -> StepOutcome:
        barriers = [
            barrier
            for barrier in instance.join_barriers.values()
            if barrier.join_step_id == step.id
        ]
        if not barriers:
            return StepOutcome.complete({"joined": True, "branches": []})
        if all(barrier.is_complete for barrier in barriers):
            branches: List[str] = []
            for barrier in barriers:
                branches.extend(barrier.expected)
            return StepOutcome.complete({"joined": True, "branches": branches})
        return StepOutcome.suspend()
