import re

import pytest
from typer.testing import CliRunner

from contentflow.cli import app

DEFINITION = """
name: Article review
status: active
subjectType: article
startStepId: review
triggers:
  - type: content_created
steps:
  - id: review
    type: approval
    approvers: [editor-1]
    nextSteps: [notify]
  - id: notify
    type: notification
    recipients: [author-1]
    message: Your article was approved
"""

INVALID = """
name: Broken
startStepId: missing
steps:
  - id: review
    type: approval
    approvers: []
"""


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.setenv("CONTENTFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'cli.db'}")
    monkeypatch.setenv("CONTENTFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("CONTENTFLOW_SCHEDULER", raising=False)
    return CliRunner()


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


def test_definition_validate(runner, tmp_path):
    ok = runner.invoke(app, ["definition", "validate", _write(tmp_path, "ok.yaml", DEFINITION)])
    assert ok.exit_code == 0, ok.stdout
    assert "Definition 'Article review' is valid (2 steps)" in ok.stdout

    bad = runner.invoke(app, ["definition", "validate", _write(tmp_path, "bad.yaml", INVALID)])
    assert bad.exit_code == 1
    assert "start_step_id" in bad.stdout
    assert "steps.review.approvers" in bad.stdout

    missing = runner.invoke(app, ["definition", "validate", str(tmp_path / "nope.yaml")])
    assert missing.exit_code == 1
    assert "Specified path does not exist" in missing.stdout


def test_definition_and_instance_lifecycle(runner, tmp_path):
    created = runner.invoke(
        app, ["definition", "create", _write(tmp_path, "wf.yaml", DEFINITION), "--actor", "admin"]
    )
    assert created.exit_code == 0, created.stdout
    workflow_id = re.search(r"Created workflow (\S+)", created.stdout).group(1)

    listed = runner.invoke(app, ["definition", "list"])
    assert workflow_id in listed.stdout
    assert "Article review" in listed.stdout

    shown = runner.invoke(app, ["definition", "show", workflow_id])
    assert shown.exit_code == 0
    assert '"startStepId": "review"' in shown.stdout

    triggered = runner.invoke(
        app, ["trigger", "content_created", "--subject-type", "article", "--content-id", "c-1"]
    )
    assert triggered.exit_code == 0, triggered.stdout
    instance_id = re.search(r"Started instance (\S+)", triggered.stdout).group(1)

    running = runner.invoke(app, ["instance", "show", instance_id])
    assert "running" in running.stdout
    assert "- review: in_progress" in running.stdout

    completed = runner.invoke(
        app, ["instance", "complete", instance_id, "review", "--actor", "editor-1", "--result", '{"ok": true}']
    )
    assert completed.exit_code == 0, completed.stdout
    assert f"Instance {instance_id}: completed" in completed.stdout

    listed_instances = runner.invoke(app, ["instance", "list", "--status", "completed"])
    assert instance_id in listed_instances.stdout

    cancelled = runner.invoke(app, ["instance", "cancel", instance_id, "--actor", "admin"])
    assert cancelled.exit_code == 1
    assert "Cannot cancel" in cancelled.stdout


def test_trigger_without_match(runner):
    result = runner.invoke(app, ["trigger", "media_uploaded"])
    assert result.exit_code == 0
    assert "No workflow matched" in result.stdout


def test_reject_and_missing_instance(runner, tmp_path):
    runner.invoke(app, ["definition", "create", _write(tmp_path, "wf.yaml", DEFINITION)])
    triggered = runner.invoke(app, ["trigger", "content_created", "--subject-type", "article"])
    instance_id = re.search(r"Started instance (\S+)", triggered.stdout).group(1)

    rejected = runner.invoke(
        app, ["instance", "reject", instance_id, "review", "--actor", "editor-1", "--reason", "off-topic"]
    )
    assert rejected.exit_code == 0, rejected.stdout
    assert f"Instance {instance_id}: failed" in rejected.stdout

    missing = runner.invoke(app, ["instance", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "not found" in missing.stdout
