"""
CLIAgentRunner — runs prompts through an external agent CLI.

The command line comes from config (`agent.command`), with `{prompt}`
replaced by the resolved prompt, e.g.:

    ["cursor-agent", "-p", "{prompt}"]
    ["claude", "-p", "{prompt}", "--output-format", "text"]

The process runs in the workspace. Files changed are counted by
comparing (path, mtime, size) snapshots of the workspace taken before
and after the run. Cloud execution mode has no backend yet and is
reported as a failed run.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from agentcron.agent.runner import AgentRequest, AgentResult, AgentRunner
from agentcron.scheduler.models import ExecutionMode

logger = logging.getLogger(__name__)

SKIP_DIRS = {".git", "node_modules", ".agentcron", "__pycache__", ".venv", "venv"}
MAX_OUTPUT_CHARS = 4000

Snapshot = dict[str, tuple[float, int]]


class CLIAgentRunner(AgentRunner):
    """
    Usage:
        runner = CLIAgentRunner(["cursor-agent", "-p", "{prompt}"], workspace=Path.cwd())
        result = await runner.execute(AgentRequest(schedule=s, prompt="..."))
    """

    def __init__(
        self,
        command: list[str],
        workspace: Path | None = None,
        timeout: float | None = 900,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty")
        self._command = list(command)
        self._workspace = (workspace or Path.cwd()).resolve()
        self._timeout = timeout

    def build_argv(self, prompt: str) -> list[str]:
        argv = [part.replace("{prompt}", prompt) for part in self._command]
        if not any("{prompt}" in part for part in self._command):
            argv.append(prompt)
        return argv

    async def execute(self, request: AgentRequest) -> AgentResult:
        schedule = request.schedule
        if schedule.execution_mode is ExecutionMode.CLOUD:
            return AgentResult.failed(
                "Cloud execution is not yet supported. Please use local IDE mode."
            )

        cwd = Path(schedule.workspace_folder).expanduser() if schedule.workspace_folder else self._workspace
        argv = self.build_argv(request.prompt)
        logger.info(f"Launching agent for {schedule.name!r}: {argv[0]}")

        before = await asyncio.to_thread(snapshot_files, cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ.copy(),
            )
        except (FileNotFoundError, PermissionError) as e:
            return AgentResult.failed(f"Could not start agent '{argv[0]}': {e}")

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return AgentResult.failed(f"Agent timed out after {self._timeout}s")
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        after = await asyncio.to_thread(snapshot_files, cwd)
        changed = count_changed(before, after)

        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()

        if process.returncode != 0:
            detail = stderr or stdout or "no output"
            return AgentResult(
                success=False,
                output=_truncate(stdout),
                files_changed=changed,
                error=f"Agent exited with code {process.returncode}: {_truncate(detail, 500)}",
            )

        output = _truncate(stdout) or (
            f"Agent finished, {changed} file(s) changed" if changed else "Agent finished"
        )
        return AgentResult(success=True, output=output, files_changed=changed)


def snapshot_files(root: Path) -> Snapshot:
    """Map relative path -> (mtime, size) for every file under root."""
    result: Snapshot = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
        for name in filenames:
            full = os.path.join(dirpath, name)
            try:
                st = os.stat(full)
            except OSError:
                continue
            result[os.path.relpath(full, root)] = (st.st_mtime, st.st_size)
    return result


def count_changed(before: Snapshot, after: Snapshot) -> int:
    """Files created, modified or deleted between two snapshots."""
    changed = sum(1 for path, meta in after.items() if before.get(path) != meta)
    deleted = sum(1 for path in before if path not in after)
    return changed + deleted


def _truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "…"
