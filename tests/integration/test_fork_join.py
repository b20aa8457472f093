"""Parallel branches run as child instances and meet at a join."""

import pytest

from contentflow.errors import InvalidStateError
from contentflow.persistence import InstanceStatus, StepStatus


def _parallel_review(make_definition, join=True):
    steps = [
        {"id": "split", "type": "fork", "nextSteps": ["legal", "seo"]},
        {"id": "legal", "type": "approval", "approvers": ["lawyer"], "nextSteps": ["merge"] if join else []},
        {"id": "seo", "type": "approval", "approvers": ["seo-lead"], "nextSteps": ["merge"] if join else []},
    ]
    if join:
        steps += [
            {"id": "merge", "type": "join", "nextSteps": ["publish"]},
            {"id": "publish", "type": "approval", "approvers": ["editor-1"]},
        ]
    return make_definition(steps)


async def _children(service, parent):
    stored = await service.get_instance(parent.id)
    return stored.join_barriers["split"].children


@pytest.mark.asyncio
async def test_join_waits_for_every_branch(service, notifications, make_definition):
    definition = await service.create_definition(_parallel_review(make_definition))
    parent = await service.create_instance(definition.id, data={"title": "Draft"})

    assert parent.current_step_id == "merge"
    assert parent.current_visit("split").status == StepStatus.COMPLETED
    assert parent.current_visit("merge").status == StepStatus.IN_PROGRESS

    children = await _children(service, parent)
    assert set(children) == {"legal", "seo"}
    for branch, child_id in children.items():
        child = await service.get_instance(child_id)
        assert child.parent_instance_id == parent.id
        assert child.current_step_id == branch
        assert child.data == {"title": "Draft"}
    assert {n.user_id for n in notifications.sent} == {"lawyer", "seo-lead"}

    legal = await service.complete_step(children["legal"], "legal", "lawyer")
    assert legal.status == InstanceStatus.COMPLETED
    waiting = await service.get_instance(parent.id)
    assert waiting.current_step_id == "merge"
    assert waiting.join_barriers["split"].arrived == ["legal"]

    await service.complete_step(children["seo"], "seo", "seo-lead")
    joined = await service.get_instance(parent.id)
    assert joined.current_step_id == "publish"
    assert joined.join_barriers == {}
    merge = joined.current_visit("merge")
    assert merge.status == StepStatus.COMPLETED
    assert merge.result == {"joined": True, "branches": ["legal", "seo"]}

    done = await service.complete_step(parent.id, "publish", "editor-1")
    assert done.status == InstanceStatus.COMPLETED


@pytest.mark.asyncio
async def test_rejected_branch_fails_parent_and_cancels_siblings(service, make_definition):
    definition = await service.create_definition(_parallel_review(make_definition))
    parent = await service.create_instance(definition.id)
    children = await _children(service, parent)

    await service.reject_step(children["legal"], "legal", "lawyer", "libel risk")

    failed = await service.get_instance(parent.id)
    assert failed.status == InstanceStatus.FAILED
    assert failed.current_step_id is None
    sibling = await service.get_instance(children["seo"])
    assert sibling.status == InstanceStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancelling_parent_cancels_branches(service, make_definition):
    definition = await service.create_definition(_parallel_review(make_definition))
    parent = await service.create_instance(definition.id)
    children = await _children(service, parent)

    await service.cancel_instance(parent.id, "admin")

    for child_id in children.values():
        child = await service.get_instance(child_id)
        assert child.status == InstanceStatus.CANCELLED


@pytest.mark.asyncio
async def test_fork_without_join_completes_after_all_branches(service, make_definition):
    definition = await service.create_definition(_parallel_review(make_definition, join=False))
    parent = await service.create_instance(definition.id)
    assert parent.current_step_id == "split"
    assert parent.current_visit("split").status == StepStatus.IN_PROGRESS
    children = await _children(service, parent)

    await service.complete_step(children["legal"], "legal", "lawyer")
    assert (await service.get_instance(parent.id)).status == InstanceStatus.RUNNING

    await service.complete_step(children["seo"], "seo", "seo-lead")
    done = await service.get_instance(parent.id)
    assert done.status == InstanceStatus.COMPLETED
    assert done.current_visit("split").status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_join_and_fork_cannot_be_completed_by_hand(service, make_definition):
    definition = await service.create_definition(_parallel_review(make_definition))
    parent = await service.create_instance(definition.id)
    children = await _children(service, parent)

    with pytest.raises(InvalidStateError):
        await service.complete_step(parent.id, "merge", "editor-1")
    no_join = await service.create_definition(_parallel_review(make_definition, join=False))
    open_fork = await service.create_instance(no_join.id)
    with pytest.raises(InvalidStateError):
        await service.complete_step(open_fork.id, "split", "editor-1", next_step_id="legal")
    still_open = await service.get_instance(open_fork.id)
    assert still_open.current_visit("split").status == StepStatus.IN_PROGRESS

    waiting = await service.get_instance(parent.id)
    assert waiting.current_step_id == "merge"
    assert waiting.current_visit("merge").status == StepStatus.IN_PROGRESS
    for child_id in children.values():
        assert (await service.get_instance(child_id)).status == InstanceStatus.RUNNING


@pytest.mark.asyncio
async def test_nested_fork_waits_for_inner_branches(service, make_definition):
    definition = await service.create_definition(
        make_definition(
            [
                {"id": "outer", "type": "fork", "nextSteps": ["a", "inner"]},
                {"id": "a", "type": "approval", "approvers": ["u-a"], "nextSteps": ["merge"]},
                {"id": "inner", "type": "fork", "nextSteps": ["b", "c"]},
                {"id": "b", "type": "approval", "approvers": ["u-b"], "nextSteps": ["merge"]},
                {"id": "c", "type": "approval", "approvers": ["u-c"], "nextSteps": ["merge"]},
                {"id": "merge", "type": "join", "nextSteps": ["publish"]},
                {"id": "publish", "type": "approval", "approvers": ["editor-1"]},
            ]
        )
    )
    parent = await service.create_instance(definition.id)
    outer = (await service.get_instance(parent.id)).join_barriers["outer"].children
    middle = await service.get_instance(outer["inner"])
    assert middle.status == InstanceStatus.RUNNING
    assert middle.current_step_id == "merge"
    inner = middle.join_barriers["inner"].children

    await service.complete_step(outer["a"], "a", "u-a")
    await service.complete_step(inner["b"], "b", "u-b")
    waiting = await service.get_instance(parent.id)
    assert waiting.current_step_id == "merge"
    assert waiting.join_barriers["outer"].arrived == ["a"]
    assert (await service.get_instance(outer["inner"])).status == InstanceStatus.RUNNING

    await service.complete_step(inner["c"], "c", "u-c")
    assert (await service.get_instance(outer["inner"])).status == InstanceStatus.COMPLETED
    joined = await service.get_instance(parent.id)
    assert joined.current_step_id == "publish"
    assert joined.join_barriers == {}


@pytest.mark.asyncio
async def test_suspended_parent_completes_only_after_resume(service, make_definition):
    definition = await service.create_definition(_parallel_review(make_definition, join=False))
    parent = await service.create_instance(definition.id)
    children = await _children(service, parent)

    await service.suspend_instance(parent.id, "admin")
    await service.complete_step(children["legal"], "legal", "lawyer")
    await service.complete_step(children["seo"], "seo", "seo-lead")

    held = await service.get_instance(parent.id)
    assert held.status == InstanceStatus.SUSPENDED
    assert held.join_barriers["split"].arrived == ["legal", "seo"]

    resumed = await service.resume_instance(parent.id, "admin")
    assert resumed.status == InstanceStatus.COMPLETED
    assert resumed.join_barriers == {}
    assert resumed.current_visit("split").status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_suspended_parent_passes_join_after_resume(service, make_definition):
    definition = await service.create_definition(_parallel_review(make_definition))
    parent = await service.create_instance(definition.id)
    children = await _children(service, parent)

    await service.suspend_instance(parent.id, "admin")
    await service.complete_step(children["legal"], "legal", "lawyer")
    await service.complete_step(children["seo"], "seo", "seo-lead")
    assert (await service.get_instance(parent.id)).current_step_id == "merge"

    resumed = await service.resume_instance(parent.id, "admin")
    assert resumed.status == InstanceStatus.RUNNING
    assert resumed.current_step_id == "publish"
