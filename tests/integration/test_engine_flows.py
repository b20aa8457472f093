"""End-to-end engine scenarios against in-memory collaborators."""

import asyncio
import time

import pytest

from contentflow.errors import (
    ConcurrentModificationError,
    InvalidStateError,
    InvalidTransitionError,
)
from contentflow.events import WorkflowEventType
from contentflow.persistence import InstanceStatus, StepStatus


def approval(step_id, next_steps=(), **config):
    return {
        "id": step_id,
        "type": "approval",
        "approvers": config.pop("approvers", ["editor-1"]),
        "nextSteps": list(next_steps),
        **config,
    }


@pytest.mark.asyncio
async def test_single_step_workflow_completes(service, audit, make_definition):
    definition = await service.create_definition(make_definition([approval("review")]))
    instance = await service.create_instance(definition.id, created_by="author-1")
    assert instance.status == InstanceStatus.RUNNING
    assert instance.current_step_id == "review"

    done = await service.complete_step(instance.id, "review", "editor-1", result={"ok": True}, notes="lgtm")
    assert done.status == InstanceStatus.COMPLETED
    assert done.current_step_id is None
    assert done.completed_at is not None

    stored = await service.get_instance(instance.id)
    assert stored.status == InstanceStatus.COMPLETED
    [visit] = stored.steps
    assert visit.status == StepStatus.COMPLETED
    assert visit.result == {"ok": True}
    assert visit.notes == "lgtm"
    assert "workflow_step_completed" in audit.actions(instance.id)


@pytest.mark.asyncio
async def test_condition_routes_to_true_branch(service, make_definition):
    definition = await service.create_definition(
        make_definition(
            [
                {
                    "id": "age-check",
                    "type": "condition",
                    "condition": {"field": "age", "operator": "gte", "value": 18},
                    "trueStepId": "adult",
                    "falseStepId": "minor",
                },
                approval("adult"),
                approval("minor"),
            ]
        )
    )
    instance = await service.create_instance(definition.id, data={"age": 20})
    assert instance.current_step_id == "adult"
    check = instance.current_visit("age-check")
    assert check.status == StepStatus.COMPLETED
    assert check.result["result"] is True

    minor = await service.create_instance(definition.id, data={"age": 12})
    assert minor.current_step_id == "minor"


@pytest.mark.asyncio
async def test_auto_steps_chain_until_completion(service, notifications, content, make_definition):
    definition = await service.create_definition(
        make_definition(
            [
                {"id": "notify", "type": "notification", "recipients": ["a", "b"], "message": "Heads up", "nextSteps": ["publish"]},
                {"id": "publish", "type": "action", "action": "publishContent"},
            ]
        )
    )
    instance = await service.create_instance(definition.id, content_id="c-1")
    assert instance.status == InstanceStatus.COMPLETED
    assert instance.current_visit("notify").result == {"recipients": ["a", "b"], "sent": True}
    assert instance.current_visit("publish").result["success"] is True
    assert [n.user_id for n in notifications.sent] == ["a", "b"]
    assert content.calls == [("publish", "c-1", None)]


@pytest.mark.asyncio
async def test_delay_step_waits_for_scheduler(service, make_definition):
    definition = await service.create_definition(
        make_definition(
            [
                {"id": "wait", "type": "delay", "duration": 2, "unit": "seconds", "nextSteps": ["review"]},
                approval("review"),
            ]
        )
    )
    started = time.monotonic()
    instance = await service.create_instance(definition.id)
    assert instance.current_step_id == "wait"
    assert instance.current_visit("wait").status == StepStatus.IN_PROGRESS

    while (await service.get_instance(instance.id)).current_step_id == "wait":
        assert time.monotonic() - started < 5, "delay never fired"
        await asyncio.sleep(0.05)
    elapsed = time.monotonic() - started

    stored = await service.get_instance(instance.id)
    wait = stored.current_visit("wait")
    assert wait.status == StepStatus.COMPLETED
    assert wait.result == {"delayed": True}
    assert (wait.completed_at - wait.started_at).total_seconds() >= 2
    assert elapsed >= 2
    assert stored.current_step_id == "review"


@pytest.mark.asyncio
async def test_concurrent_completion_has_one_winner(service, make_definition):
    definition = await service.create_definition(make_definition([approval("review")]))
    instance = await service.create_instance(definition.id)

    results = await asyncio.gather(
        service.complete_step(instance.id, "review", "editor-1"),
        service.complete_step(instance.id, "review", "editor-2"),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ConcurrentModificationError)

    stored = await service.get_instance(instance.id)
    completions = [s for s in stored.steps if s.step_id == "review" and s.status == StepStatus.COMPLETED]
    assert len(completions) == 1


@pytest.mark.asyncio
async def test_cancel_completed_instance_is_rejected(service, make_definition):
    definition = await service.create_definition(make_definition([approval("review")]))
    instance = await service.create_instance(definition.id)
    await service.complete_step(instance.id, "review", "editor-1")
    before = await service.get_instance(instance.id)

    with pytest.raises(InvalidStateError):
        await service.cancel_instance(instance.id, "admin")

    after = await service.get_instance(instance.id)
    assert after == before


@pytest.mark.asyncio
async def test_cancel_skips_step_and_rejects_late_completion(service, audit, make_definition):
    definition = await service.create_definition(make_definition([approval("review")]))
    instance = await service.create_instance(definition.id)

    cancelled = await service.cancel_instance(instance.id, "admin")
    assert cancelled.status == InstanceStatus.CANCELLED
    assert cancelled.current_step_id is None
    assert cancelled.cancelled_by == "admin"
    assert cancelled.current_visit("review").status == StepStatus.SKIPPED
    assert "workflow_instance_cancelled" in audit.actions(instance.id)

    with pytest.raises(InvalidStateError):
        await service.complete_step(instance.id, "review", "editor-1")


@pytest.mark.asyncio
async def test_cancel_drops_pending_delay(service, scheduler, make_definition):
    definition = await service.create_definition(
        make_definition([{"id": "wait", "type": "delay", "duration": 1, "unit": "hours"}])
    )
    instance = await service.create_instance(definition.id)
    assert scheduler.pending == 1
    await service.cancel_instance(instance.id, "admin")
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_rejecting_approval_fails_instance(service, audit, make_definition):
    definition = await service.create_definition(make_definition([approval("review", ["publish"]), approval("publish")]))
    instance = await service.create_instance(definition.id)

    rejected = await service.reject_step(instance.id, "review", "editor-1", "needs sources")
    assert rejected.status == InstanceStatus.FAILED
    assert rejected.current_step_id is None
    assert rejected.result == {"status": "rejected", "step_id": "review", "reason": "needs sources"}
    assert rejected.current_visit("review").status == StepStatus.REJECTED
    assert "workflow_step_rejected" in audit.actions(instance.id)

    with pytest.raises(ConcurrentModificationError):
        await service.reject_step(instance.id, "review", "editor-2", "late")


@pytest.mark.asyncio
async def test_explicit_next_step_must_be_a_successor(service, make_definition):
    definition = await service.create_definition(
        make_definition([approval("review", ["publish", "archive"]), approval("publish"), approval("archive")])
    )
    instance = await service.create_instance(definition.id)

    with pytest.raises(InvalidTransitionError):
        await service.complete_step(instance.id, "review", "editor-1", next_step_id="nowhere")
    with pytest.raises(InvalidTransitionError):
        await service.complete_step(instance.id, "review", "editor-1")
    unchanged = await service.get_instance(instance.id)
    assert unchanged.current_visit("review").status == StepStatus.IN_PROGRESS

    moved = await service.complete_step(instance.id, "review", "editor-1", next_step_id="archive")
    assert moved.current_step_id == "archive"


@pytest.mark.asyncio
async def test_completing_a_step_that_is_not_current(service, make_definition):
    definition = await service.create_definition(make_definition([approval("review", ["publish"]), approval("publish")]))
    instance = await service.create_instance(definition.id)
    with pytest.raises(InvalidStateError):
        await service.complete_step(instance.id, "publish", "editor-1")


@pytest.mark.asyncio
async def test_failed_action_fails_step_and_instance(service, make_definition):
    definition = await service.create_definition(
        make_definition([{"id": "hook", "type": "action", "action": "launchRocket"}])
    )
    instance = await service.create_instance(definition.id)
    assert instance.status == InstanceStatus.FAILED
    assert instance.current_step_id is None
    assert instance.result["status"] == "failed"
    assert instance.result["step_id"] == "hook"
    assert instance.result["error_type"] == "ActionExecutionError"
    assert instance.current_visit("hook").status == StepStatus.FAILED


@pytest.mark.asyncio
async def test_action_retry_policy(service, engine, make_definition, monkeypatch):
    attempts = []

    async def flaky(params, context):
        attempts.append(context.step_id)
        if len(attempts) < 3:
            raise RuntimeError("temporarily unavailable")
        return {"ok": True}

    engine._executor._actions.register("flaky", flaky)

    async def no_sleep(attempt, base, jitter):
        return None

    monkeypatch.setattr("contentflow.execute.schedule_retry", no_sleep)
    definition = await service.create_definition(
        make_definition([{"id": "call", "type": "action", "action": "flaky", "retry": {"maxRetries": 2}}])
    )
    instance = await service.create_instance(definition.id)
    assert instance.status == InstanceStatus.COMPLETED
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_approval_notifies_and_auto_assigns(service, notifications, audit, make_definition):
    definition = await service.create_definition(
        make_definition([approval("review", approvers=["editor-1", "editor-2"], autoAssign=True)])
    )
    instance = await service.create_instance(definition.id)
    assert instance.current_visit("review").assignee == "editor-1"
    kinds = [(n.user_id, n.kind) for n in notifications.sent]
    assert kinds == [
        ("editor-1", "workflow_assignment"),
        ("editor-1", "workflow_approval"),
        ("editor-2", "workflow_approval"),
    ]

    reassigned = await service.assign_step(instance.id, "review", "editor-3", "admin")
    assert reassigned.current_visit("review").assignee == "editor-3"
    assert reassigned.current_visit("review").status == StepStatus.IN_PROGRESS
    assert notifications.for_user("editor-3")[0].title == "Workflow Step Assigned"
    assert "workflow_step_assigned" in audit.actions(instance.id)


@pytest.mark.asyncio
async def test_suspend_and_resume(service, make_definition):
    definition = await service.create_definition(make_definition([approval("review")]))
    instance = await service.create_instance(definition.id)

    suspended = await service.suspend_instance(instance.id, "admin")
    assert suspended.status == InstanceStatus.SUSPENDED
    with pytest.raises(InvalidStateError):
        await service.complete_step(instance.id, "review", "editor-1")

    resumed = await service.resume_instance(instance.id, "admin")
    assert resumed.status == InstanceStatus.RUNNING
    done = await service.complete_step(instance.id, "review", "editor-1")
    assert done.status == InstanceStatus.COMPLETED

    with pytest.raises(InvalidStateError):
        await service.resume_instance(instance.id, "admin")


@pytest.mark.asyncio
async def test_execute_is_idempotent(service, engine, notifications, make_definition):
    definition = await service.create_definition(make_definition([approval("review")]))
    instance = await service.create_instance(definition.id)
    again = await engine.execute(instance.id)
    assert again.status == InstanceStatus.RUNNING
    assert len(again.steps) == 1
    assert len(notifications.sent) == 1


@pytest.mark.asyncio
async def test_events_are_published(service, engine, make_definition):
    seen = []

    async def listener(event):
        seen.append(event.type)

    engine.add_listener(listener)
    definition = await service.create_definition(make_definition([approval("review")]))
    instance = await service.create_instance(definition.id)
    await service.complete_step(instance.id, "review", "editor-1")

    assert seen == [
        WorkflowEventType.INSTANCE_CREATED,
        WorkflowEventType.INSTANCE_STARTED,
        WorkflowEventType.STEP_STARTED,
        WorkflowEventType.STEP_COMPLETED,
        WorkflowEventType.INSTANCE_COMPLETED,
    ]


@pytest.mark.asyncio
async def test_instance_locks_are_released(service, engine, make_definition):
    definition = await service.create_definition(
        make_definition([{"id": "notify", "type": "notification", "recipients": ["a"], "message": "Hi"}])
    )
    for _ in range(20):
        await service.create_instance(definition.id)

    assert engine._locks == {}
    assert engine._lock_users == {}


@pytest.mark.asyncio
async def test_followup_failure_keeps_the_original_error(engine):
    ran = []

    async def broken_followup():
        ran.append("followup")
        raise RuntimeError("parent unavailable")

    async def work(followups):
        followups.append(broken_followup)
        raise InvalidStateError("instance is cancelled")

    with pytest.raises(InvalidStateError, match="instance is cancelled"):
        await engine._locked("i-1", work)
    assert ran == ["followup"]
    assert engine._locks == {}
