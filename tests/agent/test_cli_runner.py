"""Tests for agentcron/agent/cli_runner.py"""

import pytest

from agentcron.agent.cli_runner import CLIAgentRunner, count_changed, snapshot_files
from agentcron.agent.runner import AgentRequest
from agentcron.scheduler.models import ExecutionMode, Schedule


def _request(prompt: str, **kwargs) -> AgentRequest:
    schedule = Schedule(id="s1", name="job", cron="* * * * *", prompt_template=prompt, **kwargs)
    return AgentRequest(schedule=schedule, prompt=prompt)


def test_build_argv_replaces_placeholder():
    runner = CLIAgentRunner(["agent", "-p", "{prompt}", "--quiet"])
    assert runner.build_argv("do it") == ["agent", "-p", "do it", "--quiet"]


def test_build_argv_appends_without_placeholder():
    runner = CLIAgentRunner(["agent", "run"])
    assert runner.build_argv("do it") == ["agent", "run", "do it"]


def test_empty_command_rejected():
    with pytest.raises(ValueError):
        CLIAgentRunner([])


def test_count_changed():
    before = {"a.py": (1.0, 10), "b.py": (1.0, 20), "gone.py": (1.0, 5)}
    after = {"a.py": (1.0, 10), "b.py": (2.0, 21), "new.py": (3.0, 1)}
    assert count_changed(before, after) == 3


def test_snapshot_skips_state_dirs(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("x")
    (tmp_path / ".agentcron").mkdir()
    (tmp_path / ".agentcron" / "state.db").write_text("x")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("x")

    assert set(snapshot_files(tmp_path)) == {"src/app.py"}


@pytest.mark.asyncio
class TestExecute:
    async def test_success_with_output(self, tmp_path):
        runner = CLIAgentRunner(["echo", "{prompt}"], workspace=tmp_path)
        result = await runner.execute(_request("hello agent"))
        assert result.success is True
        assert result.output == "hello agent"
        assert result.files_changed == 0

    async def test_counts_changed_files(self, tmp_path):
        runner = CLIAgentRunner(["sh", "-c", "{prompt}"], workspace=tmp_path)
        result = await runner.execute(_request("echo hi > notes.md"))
        assert result.success is True
        assert result.files_changed == 1
        assert (tmp_path / "notes.md").exists()

    async def test_nonzero_exit_is_failure(self, tmp_path):
        runner = CLIAgentRunner(["sh", "-c", "{prompt}"], workspace=tmp_path)
        result = await runner.execute(_request("echo oops >&2; exit 3"))
        assert result.success is False
        assert "code 3" in result.error
        assert "oops" in result.error

    async def test_missing_binary(self, tmp_path):
        runner = CLIAgentRunner(["definitely-not-an-agent-binary"], workspace=tmp_path)
        result = await runner.execute(_request("x"))
        assert result.success is False
        assert "Could not start agent" in result.error

    async def test_timeout(self, tmp_path):
        runner = CLIAgentRunner(["sleep", "{prompt}"], workspace=tmp_path, timeout=0.2)
        result = await runner.execute(_request("5"))
        assert result.success is False
        assert "timed out" in result.error

    async def test_cloud_mode_not_supported(self, tmp_path):
        runner = CLIAgentRunner(["echo"], workspace=tmp_path)
        result = await runner.execute(_request("x", execution_mode=ExecutionMode.CLOUD))
        assert result.success is False
        assert result.error == "Cloud execution is not yet supported. Please use local IDE mode."

    async def test_schedule_workspace_folder_used(self, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        runner = CLIAgentRunner(["sh", "-c", "{prompt}"], workspace=tmp_path)
        await runner.execute(_request("touch here.txt", workspace_folder=str(other)))
        assert (other / "here.txt").exists()
