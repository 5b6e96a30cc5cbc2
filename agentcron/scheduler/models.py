"""
Scheduler data model.

Persisted types (Schedule, RunRecord, Command) serialise to camelCase
dicts so the schedule document stays readable and hand-editable:

    {
      "id": "a1b2c3d4",
      "name": "Nightly audit",
      "enabled": true,
      "cron": "0 2 * * *",
      "timezone": "Europe/Berlin",
      "targetType": "prompt",
      "promptTemplate": "Audit dependencies, report in reports/{date}.md",
      "executionMode": "ide",
      "outputConfig": {"type": "markdown", "location": "reports/"},
      "constraints": {"maxRuntimeSeconds": 600},
      "metadata": {"createdAt": "2026-01-18T10:00:00+00:00"}
    }

ScheduledJob and RunningExecution are runtime-only and never persisted.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from agentcron.core.errors import ValidationError
from agentcron.scheduler.cron import is_valid_timezone, validate_cron


class TargetType(str, Enum):
    PROMPT = "prompt"
    COMMAND = "command"


class ExecutionMode(str, Enum):
    IDE = "ide"
    CLOUD = "cloud"


class OutputType(str, Enum):
    NONE = "none"
    MARKDOWN = "markdown"
    DIFF = "diff"
    PR = "pr"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utc_now().isoformat()


def new_schedule_id() -> str:
    return uuid.uuid4().hex[:8]


def new_run_id() -> str:
    """Unique per process: wall-clock millis plus a random suffix."""
    return f"run_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def hash_prompt(prompt: str) -> str:
    """Short content fingerprint so history can trace a prompt without storing it."""
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]


def _drop_none(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


# ━━━ Schedule parts ━━━


@dataclass
class CommandRef:
    """Points at one command inside a command file."""

    file_path: str
    command_id: str

    def to_dict(self) -> dict:
        return {"filePath": self.file_path, "commandId": self.command_id}

    @classmethod
    def from_dict(cls, d: Any) -> "CommandRef":
        if not isinstance(d, dict):
            raise TypeError(f"commandRef must be an object, got {type(d).__name__}")
        return cls(file_path=str(d["filePath"]), command_id=str(d["commandId"]))


@dataclass
class OutputConfig:
    type: OutputType = OutputType.NONE
    location: str | None = None

    def to_dict(self) -> dict:
        return _drop_none({"type": self.type.value, "location": self.location})

    @classmethod
    def from_dict(cls, d: Any) -> "OutputConfig":
        if not d:
            return cls()
        if not isinstance(d, dict):
            raise TypeError(f"outputConfig must be an object, got {type(d).__name__}")
        return cls(type=OutputType(d.get("type", "none")), location=d.get("location"))


@dataclass
class Constraints:
    """Safety limits checked after a run returns (there is no preemptive timeout)."""

    max_runtime_seconds: float | None = None
    max_files_changed: int | None = None
    allowed_paths: list[str] | None = None

    def is_empty(self) -> bool:
        return (
            self.max_runtime_seconds is None
            and self.max_files_changed is None
            and self.allowed_paths is None
        )

    def merged_over(self, fallback: "Constraints | None") -> "Constraints":
        """Fill fields left unset here from fallback (e.g. a command's defaults)."""
        if fallback is None:
            return self
        return Constraints(
            max_runtime_seconds=(
                self.max_runtime_seconds
                if self.max_runtime_seconds is not None
                else fallback.max_runtime_seconds
            ),
            max_files_changed=(
                self.max_files_changed
                if self.max_files_changed is not None
                else fallback.max_files_changed
            ),
            allowed_paths=(
                self.allowed_paths if self.allowed_paths is not None else fallback.allowed_paths
            ),
        )

    def to_dict(self) -> dict:
        return _drop_none({
            "maxRuntimeSeconds": self.max_runtime_seconds,
            "maxFilesChanged": self.max_files_changed,
            "allowedPaths": self.allowed_paths,
        })

    @classmethod
    def from_dict(cls, d: Any) -> "Constraints | None":
        """Parse a constraints mapping; returns None when nothing usable is set."""
        if not isinstance(d, dict):
            return None
        runtime = d.get("maxRuntimeSeconds", d.get("maxRuntime"))
        files = d.get("maxFilesChanged")
        paths = d.get("allowedPaths")
        result = cls(
            max_runtime_seconds=(
                runtime
                if isinstance(runtime, (int, float)) and not isinstance(runtime, bool)
                else None
            ),
            max_files_changed=(
                files if isinstance(files, int) and not isinstance(files, bool) else None
            ),
            allowed_paths=(
                [p for p in paths if isinstance(p, str)] if isinstance(paths, list) else None
            ),
        )
        return None if result.is_empty() else result


# ━━━ Schedule ━━━


@dataclass
class Schedule:
    """A persisted definition of what to run and when."""

    id: str
    name: str
    cron: str                       # 5-field cron expression
    target_type: TargetType = TargetType.PROMPT
    enabled: bool = True
    timezone: str | None = None     # IANA name; None = process-local time
    prompt_template: str | None = None
    command_ref: CommandRef | None = None
    execution_mode: ExecutionMode = ExecutionMode.IDE
    output_config: OutputConfig = field(default_factory=OutputConfig)
    constraints: Constraints | None = None
    workspace_folder: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, name: str, cron: str, **kwargs: Any) -> "Schedule":
        """Create a schedule with a fresh id and creation timestamp."""
        metadata = dict(kwargs.pop("metadata", None) or {})
        metadata.setdefault("createdAt", iso_now())
        return cls(id=new_schedule_id(), name=name, cron=cron, metadata=metadata, **kwargs)

    @property
    def target_label(self) -> str:
        if self.target_type is TargetType.COMMAND and self.command_ref:
            return f"command:{self.command_ref.command_id}"
        text = (self.prompt_template or "").strip().replace("\n", " ")
        return f"prompt:{text[:40]}{'...' if len(text) > 40 else ''}"

    @property
    def effective_prompt_hash(self) -> str | None:
        """Hash recorded on runs of prompt targets; None for commands."""
        if self.target_type is TargetType.PROMPT and self.prompt_template:
            return hash_prompt(self.prompt_template)
        return None

    def validate(self) -> None:
        """Raise ValidationError if this schedule must not be saved or scheduled."""
        if not self.id:
            raise ValidationError("Schedule id is required", field="id")
        if not self.name or not self.name.strip():
            raise ValidationError("Schedule name is required", field="name")

        check = validate_cron(self.cron)
        if not check.valid:
            raise ValidationError(f"Invalid cron expression '{self.cron}': {check.error}", field="cron")

        if self.timezone and not is_valid_timezone(self.timezone):
            raise ValidationError(f"Unknown timezone: {self.timezone}", field="timezone")

        if self.target_type is TargetType.PROMPT:
            if not self.prompt_template or not self.prompt_template.strip():
                raise ValidationError(
                    "promptTemplate is required for prompt schedules", field="promptTemplate"
                )
        elif self.command_ref is None or not self.command_ref.command_id:
            raise ValidationError(
                "commandRef is required for command schedules", field="commandRef"
            )

        limits = self.constraints
        if limits is not None:
            if limits.max_runtime_seconds is not None and limits.max_runtime_seconds <= 0:
                raise ValidationError("maxRuntimeSeconds must be positive", field="constraints")
            if limits.max_files_changed is not None and limits.max_files_changed < 0:
                raise ValidationError("maxFilesChanged cannot be negative", field="constraints")

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "cron": self.cron,
            "timezone": self.timezone,
            "targetType": self.target_type.value,
            "executionMode": self.execution_mode.value,
            "outputConfig": self.output_config.to_dict(),
            "workspaceFolder": self.workspace_folder,
            "metadata": dict(self.metadata),
        }
        # Only the field matching targetType is meaningful
        if self.target_type is TargetType.PROMPT:
            d["promptTemplate"] = self.prompt_template
        elif self.command_ref is not None:
            d["commandRef"] = self.command_ref.to_dict()
        if self.constraints is not None and not self.constraints.is_empty():
            d["constraints"] = self.constraints.to_dict()
        return _drop_none(d)

    @classmethod
    def from_dict(cls, d: dict) -> "Schedule":
        command_ref = d.get("commandRef")
        enabled = d.get("enabled", True)
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            cron=str(d["cron"]),
            target_type=TargetType(d.get("targetType", "prompt")),
            enabled=enabled if isinstance(enabled, bool) else True,
            timezone=d.get("timezone") or None,
            prompt_template=d.get("promptTemplate"),
            command_ref=CommandRef.from_dict(command_ref) if command_ref else None,
            execution_mode=ExecutionMode(d.get("executionMode", "ide")),
            output_config=OutputConfig.from_dict(d.get("outputConfig")),
            constraints=Constraints.from_dict(d.get("constraints")),
            workspace_folder=d.get("workspaceFolder"),
            metadata=dict(d.get("metadata") or {}),
        )


# ━━━ Command ━━━


@dataclass
class Command:
    """A reusable instruction template loaded from a command file."""

    id: str
    file_path: str
    instructions: str
    description: str | None = None
    sections: dict[str, str] = field(default_factory=dict)  # role / tasks / rules / context
    constraints: Constraints | None = None

    def to_dict(self) -> dict:
        return _drop_none({
            "id": self.id,
            "filePath": self.file_path,
            "description": self.description,
            "instructions": self.instructions,
            "sections": self.sections or None,
            "constraints": self.constraints.to_dict() if self.constraints else None,
        })


# ━━━ RunRecord ━━━


@dataclass
class RunRecord:
    """The persisted outcome of one execution."""

    schedule_id: str
    schedule_name: str
    target_type: TargetType
    started_at: str                 # ISO timestamp
    status: RunStatus = RunStatus.RUNNING
    command_id: str | None = None
    prompt_hash: str | None = None
    finished_at: str | None = None
    summary: str | None = None
    output_location: str | None = None
    error: str | None = None
    files_changed: int | None = None
    execution_time: float | None = None  # seconds

    @property
    def is_terminal(self) -> bool:
        return self.status is not RunStatus.RUNNING

    def to_dict(self) -> dict:
        return _drop_none({
            "scheduleId": self.schedule_id,
            "scheduleName": self.schedule_name,
            "targetType": self.target_type.value,
            "commandId": self.command_id,
            "promptHash": self.prompt_hash,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "status": self.status.value,
            "summary": self.summary,
            "outputLocation": self.output_location,
            "error": self.error,
            "filesChanged": self.files_changed,
            "executionTime": self.execution_time,
        })

    @classmethod
    def from_dict(cls, d: dict) -> "RunRecord":
        return cls(
            schedule_id=str(d["scheduleId"]),
            schedule_name=str(d.get("scheduleName", "")),
            target_type=TargetType(d.get("targetType", "prompt")),
            started_at=str(d["startedAt"]),
            status=RunStatus(d.get("status", "failure")),
            command_id=d.get("commandId"),
            prompt_hash=d.get("promptHash"),
            finished_at=d.get("finishedAt"),
            summary=d.get("summary"),
            output_location=d.get("outputLocation"),
            error=d.get("error"),
            files_changed=d.get("filesChanged"),
            execution_time=d.get("executionTime"),
        )


# ━━━ Runtime-only ━━━


@dataclass
class ScheduledJob:
    """Timer binding for an enabled schedule. Owned by SchedulerEngine."""

    schedule: Schedule
    next_run_at: datetime | None = None
    timer: asyncio.TimerHandle | None = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


@dataclass
class RunningExecution:
    """One in-flight run. Owned by ExecutionTracker."""

    run_id: str
    schedule: Schedule
    record: RunRecord
    command: Command | None = None
    started_at: datetime = field(default_factory=utc_now)
    started_monotonic: float = field(default_factory=time.monotonic)
    cancelled: bool = False
    finalized: bool = False
    task: asyncio.Task | None = None

    def elapsed(self) -> float:
        return max(0.0, time.monotonic() - self.started_monotonic)
