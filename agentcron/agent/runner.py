"""
Agent Runner capability — the only thing the execution tracker knows
about how work actually gets done.

The tracker builds an AgentRequest (schedule + fully resolved prompt,
plus the Command for command targets) and awaits `execute()`. Whatever
the runner does in between (drive an editor, call a CLI, hit a cloud
API) is opaque. Runners report failure in the result; raising is also
tolerated and recorded as a failed run.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone

from agentcron.scheduler.models import Command, Schedule

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass(slots=True)
class AgentRequest:
    """What to run."""

    schedule: Schedule
    prompt: str
    command: Command | None = None


@dataclass(slots=True)
class AgentResult:
    """What the runner reports back."""

    success: bool
    output: str = ""
    files_changed: int | None = None
    error: str | None = None

    @staticmethod
    def failed(error: str) -> AgentResult:
        return AgentResult(success=False, error=error)


class AgentRunner(ABC):
    """Performs the actual AI-agent work for one run."""

    @abstractmethod
    async def execute(self, request: AgentRequest) -> AgentResult:
        """Run the request to completion. May take seconds to minutes."""
        ...

    async def close(self) -> None:
        """Release runner resources. Default: nothing to do."""
        return None


def default_variables(now: datetime | None = None) -> dict[str, str]:
    """
    Values for the built-in prompt placeholders at instant `now`.

        {datetime}   2026-01-18-10-00-00   (UTC, filename-safe)
        {date}       2026-01-18            (UTC)
        {time}       11:00:00              (local)
        {timestamp}  1768730400000         (epoch milliseconds)
    """
    moment = now or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.astimezone()
    utc = moment.astimezone(timezone.utc)
    return {
        "datetime": utc.strftime("%Y-%m-%d-%H-%M-%S"),
        "date": utc.strftime("%Y-%m-%d"),
        "time": moment.astimezone().strftime("%H:%M:%S"),
        "timestamp": str(int(utc.timestamp() * 1000)),
    }


def substitute_variables(
    template: str,
    variables: dict[str, str] | None = None,
    now: datetime | None = None,
) -> str:
    """
    Replace {datetime}, {date}, {time}, {timestamp} (and any extra
    `variables`) in a prompt template. Unknown placeholders are left
    as-is. Pure: no I/O, values derive only from `now`.
    """
    values = default_variables(now)
    if variables:
        values.update(variables)

    def replace(match: re.Match) -> str:
        return values.get(match.group(1), match.group(0))

    return _PLACEHOLDER.sub(replace, template)


def build_command_prompt(command: Command) -> str:
    """Assemble the prompt for a command: role, context, instructions, rules, tasks."""
    sections = command.sections or {}
    parts: list[str] = []
    if sections.get("role"):
        parts.append(f"Role: {sections['role']}")
    if sections.get("context"):
        parts.append(f"Context: {sections['context']}")
    parts.append(command.instructions)
    if sections.get("rules"):
        parts.append(f"Rules:\n{sections['rules']}")
    if sections.get("tasks"):
        parts.append(f"Tasks:\n{sections['tasks']}")
    return "\n\n".join(parts)
