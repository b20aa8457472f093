"""Command line interface for managing contentflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer
import yaml

from .config import ContentflowConfig, load_config
from .contracts import DefinitionStatus, TriggerType
from .dispatch import TriggerContext
from .errors import GraphError, WorkflowError
from .graph import parse_definition, validate_definition
from .persistence.models import InstanceStatus
from .scheduling import get_scheduler
from .service import WorkflowService, build_service

T = TypeVar("T")

app = typer.Typer(help="CLI for contentflow workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for inspecting and driving workflow instances")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, help="Path to a contentflow.yaml file"),
    log_level: Optional[str] = typer.Option(None, help="Override the configured log level"),
) -> None:
    """contentflow CLI entry point."""
    settings = load_config(str(config) if config else None)
    logging.basicConfig(level=(log_level or settings.log_level).upper())
    ctx.obj = settings


def _settings(ctx: typer.Context) -> ContentflowConfig:
    return ctx.obj if isinstance(ctx.obj, ContentflowConfig) else load_config()


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _parse_json(raw: Optional[str], option: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        _fail(f"{option} is not valid JSON: {exc}")


def _read_definition_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        _fail("Specified path does not exist")
    # YAML is a superset of JSON, so both formats load here
    with open(path) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        _fail(f"{path} does not contain a workflow definition mapping")
    return data


def _run(ctx: typer.Context, action: Callable[[WorkflowService], Awaitable[T]]) -> T:
    """Run ``action`` against a freshly wired service, reporting workflow errors."""
    settings = _settings(ctx)

    async def runner() -> T:
        scheduler = get_scheduler(config=settings)
        service = build_service(settings, scheduler=scheduler)
        try:
            value = await action(service)
            await service.engine.wait_idle()
            return value
        finally:
            await scheduler.stop()

    try:
        return asyncio.run(runner())
    except GraphError as exc:
        for issue in exc.issues:
            typer.secho(f"- {issue}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except WorkflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Check a YAML or JSON workflow definition without storing it.

    Example:
        contentflow definition validate ./workflows/review.yaml
        # Output: Definition 'Editorial review' is valid (4 steps)
    """
    data = _read_definition_file(path)
    try:
        definition = validate_definition(parse_definition(data))
    except GraphError as exc:
        typer.secho("Definition is invalid:", fg=typer.colors.RED)
        for issue in exc.issues:
            typer.secho(f"- {issue}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Definition '{definition.name}' is valid ({len(definition.steps)} steps)")


@definition_app.command("create")
def definition_create(
    ctx: typer.Context,
    path: Path,
    actor: Optional[str] = typer.Option(None, help="User recorded as the author"),
) -> None:
    """
    Validate and store a workflow definition from a YAML or JSON file.

    Example:
        contentflow definition create ./workflows/review.yaml --actor editor-1
    """
    data = _read_definition_file(path)
    definition = _run(ctx, lambda service: service.create_definition(data, actor_id=actor))
    typer.echo(f"Created workflow {definition.id} (version {definition.version})")


@definition_app.command("list")
def definition_list(
    ctx: typer.Context,
    tenant: Optional[str] = typer.Option(None, help="Only definitions of this tenant"),
    subject_type: Optional[str] = typer.Option(None, help="Only definitions for this subject type"),
    status: Optional[List[DefinitionStatus]] = typer.Option(None, help="Filter by status"),
    page: int = 1,
    limit: int = 20,
) -> None:
    """List workflow definitions, newest first."""
    result = _run(
        ctx,
        lambda service: service.list_definitions(
            tenant_id=tenant,
            subject_type=subject_type,
            status=status or None,
            page=page,
            limit=limit,
        ),
    )
    if not result.items:
        typer.echo("No workflows found")
        return
    for definition in result.items:
        marker = " (default)" if definition.is_default else ""
        typer.echo(
            f"{definition.id}\t{definition.name}\t{definition.status.value}"
            f"\tv{definition.version}{marker}"
        )


@definition_app.command("show")
def definition_show(
    ctx: typer.Context,
    definition_id: str,
    version: Optional[int] = typer.Option(None, help="Show a stored older version"),
) -> None:
    """Print a workflow definition as JSON."""
    definition = _run(ctx, lambda service: service.get_definition(definition_id, version=version))
    typer.echo(definition.model_dump_json(indent=2, by_alias=True))


@instance_app.command("list")
def instance_list(
    ctx: typer.Context,
    workflow: Optional[str] = typer.Option(None, help="Only instances of this workflow"),
    status: Optional[List[InstanceStatus]] = typer.Option(None, help="Filter by status"),
    page: int = 1,
    limit: int = 20,
) -> None:
    """
    List workflow instances with their current status.

    Example:
        contentflow instance list --status running
        # Output: 5d1c...    3f9a...    running    review
    """
    result = _run(
        ctx,
        lambda service: service.list_instances(
            workflow_id=workflow, status=status or None, page=page, limit=limit
        ),
    )
    if not result.items:
        typer.echo("No instances found")
        return
    for instance in result.items:
        typer.echo(
            f"{instance.id}\t{instance.workflow_id}\t{instance.status.value}"
            f"\t{instance.current_step_id or '-'}"
        )


@instance_app.command("show")
def instance_show(ctx: typer.Context, instance_id: str) -> None:
    """
    Show an instance with its step-by-step history.

    Example:
        contentflow instance show 5d1c...
        # Output: Instance 5d1c... (workflow 3f9a... v2): running
        #         - review: in_progress [editor-1] (2024-01-01 10:00 -> )
    """
    instance = _run(ctx, lambda service: service.get_instance(instance_id))
    typer.echo(
        f"Instance {instance.id} (workflow {instance.workflow_id} "
        f"v{instance.workflow_version}): {instance.status.value}"
    )
    if instance.current_step_id:
        typer.echo(f"Current step: {instance.current_step_id}")
    if instance.data:
        typer.echo(f"Data: {json.dumps(instance.data, default=str)}")
    if instance.result is not None:
        typer.echo(f"Result: {json.dumps(instance.result, default=str)}")
    for step in instance.steps:
        assignee = f" [{step.assignee}]" if step.assignee else ""
        typer.echo(
            f"- {step.step_id}: {step.status.value}{assignee}"
            + (
                f" ({step.started_at} -> {step.completed_at or ''})"
                if step.started_at or step.completed_at
                else ""
            )
        )


@instance_app.command("cancel")
def instance_cancel(
    ctx: typer.Context,
    instance_id: str,
    actor: str = typer.Option(..., help="User cancelling the instance"),
) -> None:
    """Cancel a pending, running or suspended instance."""
    instance = _run(ctx, lambda service: service.cancel_instance(instance_id, actor))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("complete")
def instance_complete(
    ctx: typer.Context,
    instance_id: str,
    step_id: str,
    actor: str = typer.Option(..., help="User completing the step"),
    notes: Optional[str] = typer.Option(None, help="Free-text notes stored on the step"),
    next_step: Optional[str] = typer.Option(None, help="Explicit branch to continue with"),
    result: Optional[str] = typer.Option(None, help="JSON result stored on the step"),
) -> None:
    """
    Complete the current step of an instance.

    Example:
        contentflow instance complete 5d1c... review --actor editor-1 --result '{"ok": true}'
    """
    payload = _parse_json(result, "--result")
    instance = _run(
        ctx,
        lambda service: service.complete_step(
            instance_id, step_id, actor, result=payload, notes=notes, next_step_id=next_step
        ),
    )
    typer.echo(
        f"Instance {instance.id}: {instance.status.value}"
        + (f" at {instance.current_step_id}" if instance.current_step_id else "")
    )


@instance_app.command("reject")
def instance_reject(
    ctx: typer.Context,
    instance_id: str,
    step_id: str,
    actor: str = typer.Option(..., help="User rejecting the step"),
    reason: Optional[str] = typer.Option(None, help="Why the step was rejected"),
) -> None:
    """Reject the current step; the instance fails."""
    instance = _run(
        ctx, lambda service: service.reject_step(instance_id, step_id, actor, reason)
    )
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@app.command("trigger")
def trigger(
    ctx: typer.Context,
    event: TriggerType,
    subject_type: Optional[str] = typer.Option(None, help="Subject type of the event"),
    tenant: Optional[str] = typer.Option(None, help="Tenant the event belongs to"),
    content_id: Optional[str] = typer.Option(None, help="Content the event refers to"),
    actor: Optional[str] = typer.Option(None, help="User that caused the event"),
    data: Optional[str] = typer.Option(None, help="JSON event data"),
) -> None:
    """
    Fire a domain event and start the matching workflow.

    Example:
        contentflow trigger content_created --subject-type article --data '{"wordCount": 900}'
        # Output: Started instance 5d1c... of workflow 3f9a...
    """
    context = TriggerContext(
        subject_type=subject_type,
        tenant_id=tenant,
        content_id=content_id,
        actor_id=actor,
        data=_parse_json(data, "--data") or {},
    )
    instance = _run(ctx, lambda service: service.trigger_workflow(event, context))
    if instance is None:
        typer.echo("No workflow matched")
        return
    typer.echo(f"Started instance {instance.id} of workflow {instance.workflow_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
