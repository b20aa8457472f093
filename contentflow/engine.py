"""Workflow engine: moves instances through their step graphs."""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from .actions import ActionRunner, build_action_registry
from .collaborators import (
    AuditRecorder,
    InMemoryAuditRecorder,
    LoggingNotificationGateway,
    NotificationGateway,
)
from .config import EngineConfig
from .constants import DELAY_JOB, TIMEOUT_JOB
from .contracts import DelayStep, ForkStep, JoinStep, Step, WorkflowDefinition, utcnow
from .errors import (
    ConcurrentModificationError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    StepTimeoutError,
    StructuralInconsistencyError,
    WorkflowError,
)
from .events import EventListener, WorkflowEvent, WorkflowEventType
from .execute import StepExecutor, StepOutcome
from .graph import branch_targets, find_join
from .persistence.models import (
    InstanceStatus,
    InstanceStep,
    JoinBarrier,
    StepStatus,
    WorkflowInstance,
)
from .persistence.repository import WorkflowRepository
from .scheduling import BaseScheduler, ScheduledJob

logger = logging.getLogger(__name__)

Followup = Callable[[], Awaitable[Any]]
T = TypeVar("T")

ACTIVE_STATUSES = (InstanceStatus.PENDING, InstanceStatus.RUNNING)
CANCELLABLE_STATUSES = (
    InstanceStatus.PENDING,
    InstanceStatus.RUNNING,
    InstanceStatus.SUSPENDED,
)


class WorkflowEngine:
    """Drives workflow instances from step to step.

    Work on one instance is serialized by a per-instance lock. Effects on
    other instances (running fork branches, reporting to a parent,
    cancelling siblings) are queued as follow-ups that run once the lock
    is released.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        scheduler: BaseScheduler,
        notifications: Optional[NotificationGateway] = None,
        audit: Optional[AuditRecorder] = None,
        actions: Optional[ActionRunner] = None,
        config: Optional[EngineConfig] = None,
        executor: Optional[StepExecutor] = None,
    ) -> None:
        self._repository = repository
        self._scheduler = scheduler
        self._notifications = notifications or LoggingNotificationGateway()
        self._audit = audit or InMemoryAuditRecorder()
        self._config = config or EngineConfig()
        self._executor = executor or StepExecutor(
            self._notifications, actions or build_action_registry(), scheduler
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._listeners: List[EventListener] = []
        self._tasks: Set[asyncio.Task] = set()
        scheduler.on_due(DELAY_JOB, self._on_delay_due)
        scheduler.on_due(TIMEOUT_JOB, self._on_timeout_due)

    @property
    def system_actor(self) -> str:
        return self._config.system_actor

    def add_listener(self, listener: EventListener) -> None:
        """Register a coroutine called with every :class:`WorkflowEvent`."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # background execution
    def start(self, instance_id: str) -> asyncio.Task:
        """Execute ``instance_id`` in a background task."""
        task = asyncio.create_task(self.execute(instance_id))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background workflow execution failed: {error}", exc_info=error)

    async def wait_idle(self) -> None:
        """Wait until every background execution has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # public operations
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new instance without running it."""
        await self._repository.create_instance(instance)
        await self._emit(
            WorkflowEventType.INSTANCE_CREATED, instance, actor_id=instance.created_by
        )
        return instance

    async def execute(self, instance_id: str) -> WorkflowInstance:
        """Advance ``instance_id`` until it suspends or terminates.

        Safe to call repeatedly: terminal and suspended instances are left
        untouched and a step that is already waiting is not re-entered.
        """

        async def work(followups: List[Followup]) -> WorkflowInstance:
            instance = await self._load(instance_id)
            if instance.is_terminal or instance.status == InstanceStatus.SUSPENDED:
                logger.debug(f"Instance {instance_id} is {instance.status.value}; nothing to execute")
                return instance
            try:
                definition = await self._definition_for(instance)
            except StructuralInconsistencyError as e:
                await self._fail(instance, e, instance.current_step_id, followups)
                return instance
            if instance.status == InstanceStatus.PENDING:
                instance.status = InstanceStatus.RUNNING
                await self._save(instance)
                logger.info(f"Instance {instance.id} of workflow {instance.workflow_id} started")
                await self._emit(WorkflowEventType.INSTANCE_STARTED, instance)
            await self._run(instance, definition, followups)
            return instance

        return await self._locked(instance_id, work)

    async def complete_step(
        self,
        instance_id: str,
        step_id: str,
        actor_id: str,
        result: Any = None,
        notes: Optional[str] = None,
        next_step_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Complete the current step and continue execution."""

        async def work(followups: List[Followup]) -> WorkflowInstance:
            instance = await self._load(instance_id)
            self._check_actionable(instance, step_id)
            try:
                definition = await self._definition_for(instance)
            except StructuralInconsistencyError as e:
                await self._fail(instance, e, step_id, followups)
                raise
            step = definition.get_step(step_id)
            if step is None:
                error = StructuralInconsistencyError(
                    f"Step {step_id} is not part of workflow {instance.workflow_id} "
                    f"version {instance.workflow_version}"
                )
                await self._fail(instance, error, step_id, followups)
                raise error
            if isinstance(step, (ForkStep, JoinStep)):
                raise InvalidStateError(
                    f"Step {step_id} of instance {instance_id} completes when its branches arrive"
                )
            target = self._next_step(step, next_step_id)

            if instance.status == InstanceStatus.PENDING:
                instance.status = InstanceStatus.RUNNING
            visit = instance.ensure_visit(step_id)
            if visit.started_at is None:
                visit.started_at = utcnow()
            await self._advance(
                instance, step, visit, result, target, actor_id, followups, notes=notes
            )
            await self._run(instance, definition, followups)
            return instance

        return await self._locked(instance_id, work)

    async def reject_step(
        self, instance_id: str, step_id: str, actor_id: str, reason: Optional[str] = None
    ) -> WorkflowInstance:
        """Reject the current step; the instance ends as failed."""

        async def work(followups: List[Followup]) -> WorkflowInstance:
            instance = await self._load(instance_id)
            self._check_actionable(instance, step_id)
            now = utcnow()
            visit = instance.ensure_visit(step_id)
            visit.status = StepStatus.REJECTED
            visit.started_at = visit.started_at or now
            visit.completed_at = now
            visit.notes = reason
            visit.result = {"reason": reason}
            await self._cancel_jobs(visit)

            instance.status = InstanceStatus.FAILED
            instance.completed_at = now
            instance.current_step_id = None
            instance.result = {"status": "rejected", "step_id": step_id, "reason": reason}
            await self._save(instance)

            logger.info(f"Step {step_id} of instance {instance.id} rejected by {actor_id}")
            await self._audit.record(
                "workflow_step_rejected",
                "workflow_instance",
                instance.id,
                actor_id,
                {"workflowId": instance.workflow_id, "stepId": step_id, "reason": reason},
            )
            await self._emit(
                WorkflowEventType.STEP_REJECTED,
                instance,
                step_id=step_id,
                actor_id=actor_id,
                reason=reason,
            )
            await self._emit(WorkflowEventType.INSTANCE_FAILED, instance, step_id=step_id)
            self._after_terminal(instance, followups)
            return instance

        return await self._locked(instance_id, work)

    async def assign_step(
        self, instance_id: str, step_id: str, assignee_id: str, assigner_id: str
    ) -> WorkflowInstance:
        """Set the assignee of a step's latest visit and notify them."""

        async def work(followups: List[Followup]) -> WorkflowInstance:
            instance = await self._load(instance_id)
            if instance.is_terminal:
                raise InvalidStateError(
                    f"Cannot assign step in workflow instance with status {instance.status.value}"
                )
            visit = instance.current_visit(step_id)
            if visit is None:
                raise InvalidStateError(f"Step {step_id} has not been reached by instance {instance_id}")
            visit.assignee = assignee_id
            await self._save(instance)

            await self._notifications.send(
                assignee_id,
                "workflow_assignment",
                "Workflow Step Assigned",
                "You have been assigned to a workflow step",
                {"instanceId": instance.id, "stepId": step_id, "workflowId": instance.workflow_id},
            )
            await self._audit.record(
                "workflow_step_assigned",
                "workflow_instance",
                instance.id,
                assigner_id,
                {"workflowId": instance.workflow_id, "stepId": step_id, "assigneeId": assignee_id},
            )
            await self._emit(
                WorkflowEventType.STEP_ASSIGNED,
                instance,
                step_id=step_id,
                actor_id=assigner_id,
                assignee_id=assignee_id,
            )
            return instance

        return await self._locked(instance_id, work)

    async def cancel(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        """Cancel a live instance together with its branch instances."""

        async def work(followups: List[Followup]) -> WorkflowInstance:
            instance = await self._load(instance_id)
            if instance.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(
                    f"Cannot cancel workflow instance with status {instance.status.value}"
                )
            await self._cancel_instance(instance, actor_id, followups)
            return instance

        return await self._locked(instance_id, work)

    async def suspend(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        """Pause a pending or running instance."""

        async def work(followups: List[Followup]) -> WorkflowInstance:
            instance = await self._load(instance_id)
            if instance.status not in ACTIVE_STATUSES:
                raise InvalidStateError(
                    f"Cannot suspend workflow instance with status {instance.status.value}"
                )
            instance.status = InstanceStatus.SUSPENDED
            await self._save(instance)
            logger.info(f"Instance {instance.id} suspended by {actor_id}")
            await self._audit.record(
                "workflow_instance_suspended",
                "workflow_instance",
                instance.id,
                actor_id,
                {"workflowId": instance.workflow_id, "stepId": instance.current_step_id},
            )
            await self._emit(WorkflowEventType.INSTANCE_SUSPENDED, instance, actor_id=actor_id)
            return instance

        return await self._locked(instance_id, work)

    async def resume(self, instance_id: str, actor_id: str) -> WorkflowInstance:
        """Continue a suspended instance from where it stopped."""

        async def work(followups: List[Followup]) -> WorkflowInstance:
            instance = await self._load(instance_id)
            if instance.status != InstanceStatus.SUSPENDED:
                raise InvalidStateError(
                    f"Cannot resume workflow instance with status {instance.status.value}"
                )
            instance.status = InstanceStatus.RUNNING
            try:
                definition = await self._definition_for(instance)
            except StructuralInconsistencyError as e:
                await self._fail(instance, e, instance.current_step_id, followups)
                return instance
            await self._rearm(instance, definition)
            await self._save(instance)
            logger.info(f"Instance {instance.id} resumed by {actor_id}")
            await self._audit.record(
                "workflow_instance_resumed",
                "workflow_instance",
                instance.id,
                actor_id,
                {"workflowId": instance.workflow_id, "stepId": instance.current_step_id},
            )
            await self._emit(WorkflowEventType.INSTANCE_RESUMED, instance, actor_id=actor_id)
            for barrier in list(instance.join_barriers.values()):
                if barrier.join_step_id is None and barrier.is_complete:
                    await self._close_fork(instance, definition, barrier, followups)
            await self._run(instance, definition, followups)
            return instance

        return await self._locked(instance_id, work)

    # ------------------------------------------------------------------
    # execution loop
    async def _run(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        followups: List[Followup],
    ) -> None:
        while instance.status == InstanceStatus.RUNNING and instance.current_step_id:
            step = definition.get_step(instance.current_step_id)
            if step is None:
                error = StructuralInconsistencyError(
                    f"Step {instance.current_step_id} is not part of workflow "
                    f"{instance.workflow_id} version {instance.workflow_version}"
                )
                await self._fail(instance, error, instance.current_step_id, followups)
                return

            if instance.parent_instance_id and step.id == instance.join_step_id:
                if self._branches_pending(instance, step.id):
                    # nested fork: wait for this branch's own branches first
                    await self._save(instance)
                    return
                self._clear_barriers(instance, step.id)
                await self._finish_branch(instance, followups)
                return

            visit = instance.ensure_visit(step.id)
            entering = visit.status == StepStatus.PENDING
            if not entering and not isinstance(step, JoinStep):
                # already waiting on an external completion or a scheduler job
                return
            if entering:
                visit.status = StepStatus.IN_PROGRESS
                if visit.started_at is None:
                    visit.started_at = utcnow()
                await self._save(instance)
                await self._emit(WorkflowEventType.STEP_STARTED, instance, step_id=step.id)

            try:
                outcome = await self._invoke(instance, step, visit)
            except StepTimeoutError as e:
                await self._fail(instance, e, step.id, followups, status="timeout")
                return
            except Exception as e:
                await self._fail(instance, e, step.id, followups)
                return

            if not outcome.completed:
                await self._suspend_at(instance, step, visit, outcome, entering)
                return

            try:
                if outcome.fork_branches:
                    await self._fork(instance, definition, step, visit, outcome, followups)
                    continue
                if isinstance(step, JoinStep):
                    self._clear_barriers(instance, step.id)
                target = self._next_step(step, outcome.next_step_id)
            except WorkflowError as e:
                await self._fail(instance, e, step.id, followups)
                return
            await self._advance(
                instance, step, visit, outcome.result, target, self.system_actor, followups
            )

    async def _invoke(
        self, instance: WorkflowInstance, step: Step, visit: InstanceStep
    ) -> StepOutcome:
        timeout = self._timeout_for(step)
        if timeout is None:
            return await self._executor.run(instance, step, visit)
        try:
            return await asyncio.wait_for(self._executor.run(instance, step, visit), timeout)
        except asyncio.TimeoutError as e:
            raise StepTimeoutError(f"Step {step.id} did not finish within {timeout}s") from e

    async def _suspend_at(
        self,
        instance: WorkflowInstance,
        step: Step,
        visit: InstanceStep,
        outcome: StepOutcome,
        entering: bool,
    ) -> None:
        if outcome.assignee and visit.assignee is None:
            visit.assignee = outcome.assignee
        visit.job_ids.extend(outcome.job_ids)
        timeout = self._timeout_for(step)
        if entering and timeout is not None:
            run_at = (visit.started_at or utcnow()) + timedelta(seconds=timeout)
            job_id = await self._scheduler.schedule(
                TIMEOUT_JOB, run_at, {"instance_id": instance.id, "step_id": step.id}
            )
            visit.job_ids.append(job_id)
        await self._save(instance)
        logger.debug(f"Instance {instance.id} waiting at step {step.id}")

    async def _advance(
        self,
        instance: WorkflowInstance,
        step: Step,
        visit: InstanceStep,
        result: Any,
        target: Optional[str],
        actor_id: str,
        followups: List[Followup],
        notes: Optional[str] = None,
    ) -> None:
        """Record ``visit`` as completed and move to ``target``."""
        now = utcnow()
        visit.status = StepStatus.COMPLETED
        visit.completed_at = now
        visit.result = result
        if notes is not None:
            visit.notes = notes
        await self._cancel_jobs(visit)

        if target is None:
            instance.status = InstanceStatus.COMPLETED
            instance.completed_at = now
            instance.current_step_id = None
            instance.result = {"status": "completed", "step_id": step.id, "result": result}
        else:
            instance.current_step_id = target
            instance.ensure_visit(target)
        await self._save(instance)

        logger.info(f"Step {step.id} of instance {instance.id} completed by {actor_id}")
        await self._audit.record(
            "workflow_step_completed",
            "workflow_instance",
            instance.id,
            actor_id,
            {
                "workflowId": instance.workflow_id,
                "stepId": step.id,
                "result": result,
                "notes": notes,
                "nextStepId": target,
            },
        )
        await self._emit(
            WorkflowEventType.STEP_COMPLETED,
            instance,
            step_id=step.id,
            actor_id=actor_id,
            next_step_id=target,
        )
        if instance.status == InstanceStatus.COMPLETED:
            logger.info(f"Instance {instance.id} completed")
            await self._emit(WorkflowEventType.INSTANCE_COMPLETED, instance)
            self._after_terminal(instance, followups)

    def _next_step(self, step: Step, next_step_id: Optional[str]) -> Optional[str]:
        if next_step_id is not None:
            if next_step_id not in branch_targets(step):
                raise InvalidTransitionError(f"Invalid next step {next_step_id} for step {step.id}")
            return next_step_id
        if len(step.next_steps) == 1:
            return step.next_steps[0]
        if not step.next_steps:
            return None
        raise InvalidTransitionError(
            f"Step {step.id} has {len(step.next_steps)} next steps and none was chosen"
        )

    def _check_actionable(self, instance: WorkflowInstance, step_id: str) -> None:
        visit = instance.current_visit(step_id)
        if visit is not None and visit.status in (StepStatus.COMPLETED, StepStatus.REJECTED):
            raise ConcurrentModificationError(
                f"Step {step_id} of instance {instance.id} was already {visit.status.value}"
            )
        if instance.status not in ACTIVE_STATUSES:
            raise InvalidStateError(
                f"Cannot change step in workflow instance with status {instance.status.value}"
            )
        if instance.current_step_id != step_id:
            raise InvalidStateError(
                f"Step {step_id} is not the current step of workflow instance {instance.id}"
            )

    def _timeout_for(self, step: Step) -> Optional[float]:
        return step.timeout_seconds or self._config.default_step_timeout

    # ------------------------------------------------------------------
    # fork / join
    async def _fork(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        step: ForkStep,
        visit: InstanceStep,
        outcome: StepOutcome,
        followups: List[Followup],
    ) -> None:
        join_step_id = find_join(definition, step)
        barrier = JoinBarrier(
            fork_step_id=step.id, join_step_id=join_step_id, expected=list(outcome.fork_branches)
        )
        for branch in outcome.fork_branches:
            child = WorkflowInstance(
                workflow_id=instance.workflow_id,
                workflow_version=instance.workflow_version,
                content_id=instance.content_id,
                subject_type=instance.subject_type,
                user_id=instance.user_id,
                media_id=instance.media_id,
                current_step_id=branch,
                data=copy.deepcopy(instance.data),
                created_by=instance.created_by,
                tenant_id=instance.tenant_id,
                parent_instance_id=instance.id,
                fork_step_id=step.id,
                join_step_id=join_step_id,
            )
            await self.create_instance(child)
            barrier.children[branch] = child.id
        instance.join_barriers[step.id] = barrier
        result = {"branches": list(barrier.expected), "children": dict(barrier.children)}
        logger.info(
            f"Instance {instance.id} forked at {step.id} into {len(barrier.children)} branches"
        )

        child_ids = list(barrier.children.values())
        followups.append(lambda: asyncio.gather(*(self.execute(cid) for cid in child_ids)))

        if join_step_id is None:
            # no common join; the fork stays open until every branch finishes
            visit.result = result
            await self._save(instance)
            return
        await self._advance(instance, step, visit, result, join_step_id, self.system_actor, followups)

    def _branches_pending(self, instance: WorkflowInstance, join_step_id: str) -> bool:
        return any(
            barrier.join_step_id == join_step_id and not barrier.is_complete
            for barrier in instance.join_barriers.values()
        )

    def _clear_barriers(self, instance: WorkflowInstance, join_step_id: str) -> None:
        for fork_step_id in [
            key for key, barrier in instance.join_barriers.items()
            if barrier.join_step_id == join_step_id
        ]:
            del instance.join_barriers[fork_step_id]

    async def _finish_branch(self, child: WorkflowInstance, followups: List[Followup]) -> None:
        """A branch instance reached its join: it is done."""
        now = utcnow()
        child.status = InstanceStatus.COMPLETED
        child.completed_at = now
        child.result = {"status": "completed", "step_id": child.join_step_id, "joined": True}
        child.current_step_id = None
        await self._save(child)
        logger.info(f"Branch instance {child.id} arrived at join {child.join_step_id}")
        await self._emit(WorkflowEventType.INSTANCE_COMPLETED, child)
        self._after_terminal(child, followups)

    async def _branch_settled(self, parent_id: str, child_id: str) -> None:
        """Record that branch instance ``child_id`` reached a terminal state."""

        async def work(followups: List[Followup]) -> None:
            parent = await self._repository.get_instance(parent_id)
            child = await self._repository.get_instance(child_id)
            if parent is None or child is None or parent.is_terminal:
                logger.debug(f"Ignoring branch {child_id} result for parent {parent_id}")
                return
            barrier = parent.join_barriers.get(child.fork_step_id or "")
            branch = barrier.branch_of(child.id) if barrier else None
            if barrier is None or branch is None:
                logger.debug(f"Parent {parent_id} no longer waits for branch {child_id}")
                return

            if child.status != InstanceStatus.COMPLETED:
                error = WorkflowError(
                    f"Branch {branch} (instance {child.id}) ended as {child.status.value}"
                )
                await self._fail(parent, error, parent.current_step_id, followups)
                return

            if branch not in barrier.arrived:
                barrier.arrived.append(branch)
            if not barrier.is_complete:
                await self._save(parent)
                return

            for expected in barrier.expected:
                finished = await self._repository.get_instance(barrier.children[expected])
                if finished is not None:
                    parent.data.update(finished.data)

            if parent.status != InstanceStatus.RUNNING:
                # a suspended parent moves on when it is resumed
                await self._save(parent)
                return
            definition = await self._definition_for(parent)
            if barrier.join_step_id is None:
                await self._close_fork(parent, definition, barrier, followups)
                return
            await self._save(parent)
            await self._run(parent, definition, followups)

        await self._locked(parent_id, work)

    async def _close_fork(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        barrier: JoinBarrier,
        followups: List[Followup],
    ) -> None:
        """Complete a fork without a join once all of its branches finished."""
        fork = definition.get_step(barrier.fork_step_id)
        visit = instance.current_visit(barrier.fork_step_id)
        del instance.join_barriers[barrier.fork_step_id]
        if fork is not None and visit is not None and not visit.is_finished:
            await self._advance(
                instance, fork, visit, visit.result, None, self.system_actor, followups
            )
        else:
            await self._save(instance)

    async def _cancel_branches(self, instance: WorkflowInstance) -> None:
        for barrier in instance.join_barriers.values():
            for child_id in barrier.children.values():
                await self._cancel_if_live(child_id)

    async def _cancel_if_live(self, instance_id: str) -> None:
        async def work(followups: List[Followup]) -> None:
            instance = await self._repository.get_instance(instance_id)
            if instance is None or instance.status not in CANCELLABLE_STATUSES:
                return
            await self._cancel_instance(instance, self.system_actor, followups)

        await self._locked(instance_id, work)

    def _after_terminal(self, instance: WorkflowInstance, followups: List[Followup]) -> None:
        if instance.parent_instance_id:
            parent_id, child_id = instance.parent_instance_id, instance.id
            followups.append(lambda: self._branch_settled(parent_id, child_id))
        if instance.join_barriers and instance.status != InstanceStatus.COMPLETED:
            snapshot = instance.model_copy(deep=True)
            followups.append(lambda: self._cancel_branches(snapshot))

    # ------------------------------------------------------------------
    # terminal transitions
    async def _cancel_instance(
        self, instance: WorkflowInstance, actor_id: str, followups: List[Followup]
    ) -> None:
        now = utcnow()
        visit = instance.current_visit()
        if visit is not None and not visit.is_finished:
            visit.status = StepStatus.SKIPPED
            visit.completed_at = now
            await self._cancel_jobs(visit)
        instance.status = InstanceStatus.CANCELLED
        instance.cancelled_at = now
        instance.cancelled_by = actor_id
        instance.current_step_id = None
        await self._save(instance)

        logger.info(f"Instance {instance.id} cancelled by {actor_id}")
        await self._audit.record(
            "workflow_instance_cancelled",
            "workflow_instance",
            instance.id,
            actor_id,
            {"workflowId": instance.workflow_id},
        )
        await self._emit(WorkflowEventType.INSTANCE_CANCELLED, instance, actor_id=actor_id)
        self._after_terminal(instance, followups)

    async def _fail(
        self,
        instance: WorkflowInstance,
        error: BaseException,
        step_id: Optional[str],
        followups: List[Followup],
        status: str = "failed",
    ) -> None:
        now = utcnow()
        visit = instance.current_visit(step_id) if step_id else None
        if visit is not None and not visit.is_finished:
            visit.status = StepStatus.FAILED
            visit.completed_at = now
            visit.result = {"status": status, "error": str(error)}
            await self._cancel_jobs(visit)
        instance.status = InstanceStatus.FAILED
        instance.completed_at = now
        instance.current_step_id = None
        instance.result = {
            "status": status,
            "step_id": step_id,
            "error": str(error),
            "error_type": type(error).__name__,
        }
        await self._save(instance)

        logger.error(f"Instance {instance.id} failed at step {step_id}: {error}")
        await self._audit.record(
            "workflow_instance_failed",
            "workflow_instance",
            instance.id,
            self.system_actor,
            {"workflowId": instance.workflow_id, "stepId": step_id, "error": str(error)},
        )
        await self._emit(
            WorkflowEventType.INSTANCE_FAILED, instance, step_id=step_id, error=str(error)
        )
        self._after_terminal(instance, followups)

    # ------------------------------------------------------------------
    # scheduler callbacks
    async def _on_delay_due(self, job: ScheduledJob) -> None:
        instance_id = job.payload.get("instance_id")
        step_id = job.payload.get("step_id")
        instance = await self._repository.get_instance(instance_id) if instance_id else None
        visit = instance.current_visit(step_id) if instance and step_id else None
        if visit is None or job.id not in visit.job_ids:
            logger.warning(f"Dropping stale delay job {job.id} for instance {instance_id}")
            return
        try:
            await self.complete_step(
                instance_id, step_id, self.system_actor, result={"delayed": True}
            )
        except (InvalidStateError, ConcurrentModificationError) as e:
            logger.warning(f"Dropping stale delay job {job.id} for instance {instance_id}: {e}")

    async def _on_timeout_due(self, job: ScheduledJob) -> None:
        instance_id = job.payload.get("instance_id")
        step_id = job.payload.get("step_id")
        if not instance_id or not step_id:
            logger.warning(f"Timeout job {job.id} has an incomplete payload")
            return

        async def work(followups: List[Followup]) -> None:
            instance = await self._repository.get_instance(instance_id)
            visit = instance.current_visit(step_id) if instance else None
            if (
                instance is None
                or instance.status not in ACTIVE_STATUSES
                or instance.current_step_id != step_id
                or visit is None
                or visit.is_finished
                or job.id not in visit.job_ids
            ):
                logger.debug(f"Dropping stale timeout job {job.id} for instance {instance_id}")
                return
            error = StepTimeoutError(f"Step {step_id} timed out")
            await self._fail(instance, error, step_id, followups, status="timeout")

        await self._locked(instance_id, work)

    async def _rearm(self, instance: WorkflowInstance, definition: WorkflowDefinition) -> None:
        """Reschedule the jobs of the step an instance was suspended at."""
        step = definition.get_step(instance.current_step_id)
        visit = instance.current_visit()
        if step is None or visit is None or visit.status != StepStatus.IN_PROGRESS:
            return
        await self._cancel_jobs(visit)
        started = visit.started_at or utcnow()
        payload = {"instance_id": instance.id, "step_id": step.id}
        if isinstance(step, DelayStep):
            run_at = started + timedelta(milliseconds=step.delay_ms)
            visit.job_ids.append(await self._scheduler.schedule(DELAY_JOB, run_at, payload))
        timeout = self._timeout_for(step)
        if timeout is not None:
            run_at = started + timedelta(seconds=timeout)
            visit.job_ids.append(await self._scheduler.schedule(TIMEOUT_JOB, run_at, payload))

    async def _cancel_jobs(self, visit: InstanceStep) -> None:
        for job_id in visit.job_ids:
            await self._scheduler.cancel(job_id)
        visit.job_ids = []

    # ------------------------------------------------------------------
    # plumbing
    async def _locked(
        self, instance_id: str, work: Callable[[List[Followup]], Awaitable[T]]
    ) -> T:
        followups: List[Followup] = []
        lock = self._locks.setdefault(instance_id, asyncio.Lock())
        self._lock_users[instance_id] = self._lock_users.get(instance_id, 0) + 1
        try:
            try:
                async with lock:
                    result = await work(followups)
            finally:
                self._release_lock(instance_id)
        except Exception:
            await self._run_followups(followups, reraise=False)
            raise
        await self._run_followups(followups)
        return result

    def _release_lock(self, instance_id: str) -> None:
        """Forget the lock of ``instance_id`` once nobody holds or awaits it."""
        users = self._lock_users[instance_id] - 1
        if users:
            self._lock_users[instance_id] = users
        else:
            del self._lock_users[instance_id]
            del self._locks[instance_id]

    async def _run_followups(self, followups: List[Followup], reraise: bool = True) -> None:
        first_error: Optional[Exception] = None
        for followup in followups:
            try:
                await followup()
            except Exception as e:
                logger.error(f"Follow-up work failed: {e}", exc_info=e)
                if first_error is None:
                    first_error = e
        if reraise and first_error is not None:
            raise first_error

    async def _load(self, instance_id: str) -> WorkflowInstance:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found")
        return instance

    async def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        definition = await self._repository.get_definition(
            instance.workflow_id, version=instance.workflow_version
        )
        if definition is None:
            raise StructuralInconsistencyError(
                f"Workflow {instance.workflow_id} version {instance.workflow_version} "
                f"not found for instance {instance.id}"
            )
        return definition

    async def _save(self, instance: WorkflowInstance) -> None:
        await self._repository.save_instance(instance)

    async def _emit(
        self,
        event_type: WorkflowEventType,
        instance: WorkflowInstance,
        step_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        if not self._listeners:
            return
        event = WorkflowEvent(
            type=event_type,
            instance_id=instance.id,
            workflow_id=instance.workflow_id,
            step_id=step_id,
            actor_id=actor_id,
            data=data,
        )
        for listener in self._listeners:
            await listener(event)
