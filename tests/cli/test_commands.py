"""Tests for CLI commands."""

import json

import pytest
from pathlib import Path
from typer.testing import CliRunner

from agentcron.cli.main import app


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A workspace whose agent is `echo`, with home redirected away from the real one."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr(Path, "home", lambda: home)

    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "agentcron.toml").write_text('[agent]\ncommand = ["echo", "{prompt}"]\n')
    return ws


def _write_schedules(ws: Path, *schedules: dict) -> None:
    state = ws / ".agentcron"
    state.mkdir(exist_ok=True)
    (state / "schedules.json").write_text(json.dumps({"schedules": list(schedules), "version": "1.0"}))


NIGHTLY = {"id": "n1", "name": "Nightly", "cron": "0 2 * * *", "promptTemplate": "say hello"}


def invoke(runner, ws, *args, **kwargs):
    return runner.invoke(app, ["--workspace", str(ws), *args], **kwargs)


def test_version(runner):
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.stdout


def test_validate_valid(runner):
    result = runner.invoke(app, ["validate", "0 9 * * 1-5"])
    assert result.exit_code == 0
    assert "Weekdays at 9:00 AM" in result.stdout


def test_validate_invalid(runner):
    result = runner.invoke(app, ["validate", "0 9 * *"])
    assert result.exit_code == 1
    assert "Invalid" in result.stdout


def test_validate_bad_timezone(runner):
    result = runner.invoke(app, ["validate", "0 9 * * *", "--timezone", "Nowhere/Land"])
    assert result.exit_code == 1


def test_list_empty(runner, workspace):
    result = invoke(runner, workspace, "list")
    assert result.exit_code == 0
    assert "No schedules yet" in result.stdout


def test_add_and_list(runner, workspace):
    result = invoke(runner, workspace, "add", "Digest", "--cron", "0 8 * * *", "--prompt", "Summarize")
    assert result.exit_code == 0, result.stdout
    assert "Added schedule" in result.stdout

    data = json.loads((workspace / ".agentcron" / "schedules.json").read_text())
    assert data["schedules"][0]["name"] == "Digest"
    assert data["schedules"][0]["promptTemplate"] == "Summarize"

    listed = invoke(runner, workspace, "list")
    assert listed.exit_code == 0
    assert "Digest" in listed.stdout


def test_add_requires_target(runner, workspace):
    result = invoke(runner, workspace, "add", "Nothing", "--cron", "0 8 * * *")
    assert result.exit_code == 1


def test_add_invalid_cron(runner, workspace):
    result = invoke(runner, workspace, "add", "Bad", "--cron", "whenever", "--prompt", "x")
    assert result.exit_code == 1
    assert "Invalid cron expression" in result.stdout
    assert not (workspace / ".agentcron" / "schedules.json").exists()


def test_update(runner, workspace):
    _write_schedules(workspace, NIGHTLY)
    result = invoke(runner, workspace, "update", "n1", "--cron", "0 3 * * *", "--name", "Later")
    assert result.exit_code == 0, result.stdout

    data = json.loads((workspace / ".agentcron" / "schedules.json").read_text())
    assert data["schedules"][0]["cron"] == "0 3 * * *"
    assert data["schedules"][0]["name"] == "Later"
    assert "updatedAt" in data["schedules"][0]["metadata"]


def test_remove_unknown(runner, workspace):
    result = invoke(runner, workspace, "remove", "ghost")
    assert result.exit_code == 1
    assert "Schedule not found: ghost" in result.stdout


def test_disable_and_enable(runner, workspace):
    _write_schedules(workspace, NIGHTLY)

    assert invoke(runner, workspace, "disable", "n1").exit_code == 0
    assert "disabled" in invoke(runner, workspace, "next", "n1").stdout

    # The shared document keeps its value; the override lives in state.db
    data = json.loads((workspace / ".agentcron" / "schedules.json").read_text())
    assert "enabled" not in data["schedules"][0] or data["schedules"][0]["enabled"] is True

    assert invoke(runner, workspace, "enable", "n1").exit_code == 0
    assert "Nightly:" in invoke(runner, workspace, "next", "n1").stdout


def test_run_now_records_history(runner, workspace):
    _write_schedules(workspace, NIGHTLY)

    result = invoke(runner, workspace, "run", "n1")
    assert result.exit_code == 0, result.stdout
    assert "success" in result.stdout
    assert "say hello" in result.stdout

    history = invoke(runner, workspace, "history", "--schedule", "n1")
    assert history.exit_code == 0
    assert "Nightly" in history.stdout
    assert "success" in history.stdout


def test_run_unknown(runner, workspace):
    result = invoke(runner, workspace, "run", "ghost")
    assert result.exit_code == 1


def test_test_run_is_not_saved(runner, workspace):
    result = invoke(runner, workspace, "test", "--prompt", "dry run please")
    assert result.exit_code == 0, result.stdout
    assert "dry run please" in result.stdout
    assert not (workspace / ".agentcron" / "schedules.json").exists()


def test_clear_history(runner, workspace):
    _write_schedules(workspace, NIGHTLY)
    invoke(runner, workspace, "run", "n1")

    result = invoke(runner, workspace, "clear-history", "--yes")
    assert result.exit_code == 0
    assert "No runs recorded" in invoke(runner, workspace, "history").stdout


def test_commands_listing(runner, workspace):
    cmd_dir = workspace / ".agentcron" / "commands"
    cmd_dir.mkdir(parents=True)
    (cmd_dir / "lint.json").write_text(json.dumps({"id": "lint", "instructions": "Run lint", "description": "Linting"}))

    result = invoke(runner, workspace, "commands")
    assert result.exit_code == 0
    assert "lint" in result.stdout
    assert "Linting" in result.stdout


def test_commands_none(runner, workspace):
    result = invoke(runner, workspace, "commands")
    assert result.exit_code == 0
    assert "No commands found" in result.stdout
