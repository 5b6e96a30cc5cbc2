"""
agentcron configuration.

Sources, lowest to highest precedence:

    defaults                     (the models below)
    ~/.agentcron/config.toml     user-wide agent command, log dir
    <workspace>/agentcron.toml   project settings, checked in
    AGENTCRON_* env vars         see ENV_VARS
    explicit overrides           e.g. --workspace on the CLI

String values may reference the environment as ${NAME}; unset names
expand to "".
"""

from __future__ import annotations

import logging
import os
import re
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from agentcron.core.errors import ConfigError

ENV_VARS: dict[str, tuple[str, ...]] = {
    "AGENTCRON_WORKSPACE": ("workspace",),
    "AGENTCRON_SWEEP_INTERVAL": ("scheduler", "sweep_interval"),
    "AGENTCRON_HISTORY_LIMIT": ("scheduler", "history_limit"),
    "AGENTCRON_SCHEDULES_FILE": ("storage", "schedules_file"),
    "AGENTCRON_STATE_DB": ("storage", "state_db"),
    "AGENTCRON_COMMANDS_DIR": ("commands", "directory"),
    "AGENTCRON_AGENT_TIMEOUT": ("agent", "timeout"),
    "AGENTCRON_LOG_LEVEL": ("logging", "level"),
}

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


# ── Sections ─────────────────────────────────────────────────────────────────


class SchedulerConfig(BaseModel):
    sweep_interval: int = Field(default=60, gt=0)  # seconds between due-job sweeps
    history_limit: int = Field(default=1000, gt=0)


class StorageConfig(BaseModel):
    """Paths are relative to the workspace unless absolute."""

    schedules_file: str = ".agentcron/schedules.json"
    state_db: str = ".agentcron/state.db"


class CommandsConfig(BaseModel):
    directory: str = ".agentcron/commands"


class AgentConfig(BaseModel):
    """
    The external agent CLI. Each argument may use {prompt}, {workspace}
    and {schedule}; with no {prompt} the prompt is piped to stdin.
    """

    command: list[str] = Field(
        default_factory=lambda: ["cursor-agent", "-p", "{prompt}"],
        min_length=1,
    )
    timeout: int = Field(default=900, gt=0)  # hard kill; max_runtime is checked afterwards


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "~/.agentcron/logs"
    log_events: bool = True

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {value!r}")
        return level


class AgentCronConfig(BaseModel):
    workspace: str = "."
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @staticmethod
    def load(
        overrides: dict[str, Any] | None = None,
        project_path: Path | None = None,
        user_path: Path | None = None,
    ) -> AgentCronConfig:
        """Merge every source (see module docstring) into one validated config."""
        layers = [
            _read_toml(user_path or Path.home() / ".agentcron" / "config.toml"),
            _read_toml(project_path or Path.cwd() / "agentcron.toml"),
            _from_environment(),
            overrides or {},
        ]
        merged: dict[str, Any] = {}
        for layer in layers:
            _merge_into(merged, layer)
        _expand_env_refs(merged)

        try:
            return AgentCronConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigError(
                f"Invalid configuration: {e}",
                details={"errors": e.errors(include_url=False)},
            ) from e

    def get_workspace(self) -> Path:
        return Path(self.workspace).expanduser().resolve()

    def resolve(self, configured: str) -> Path:
        """Anchor a configured path at the workspace; absolute paths pass through."""
        path = Path(configured).expanduser()
        return path if path.is_absolute() else self.get_workspace() / path

    def get_log_dir(self) -> Path:
        return Path(self.logging.log_dir).expanduser()


# ── Sources ──────────────────────────────────────────────────────────────────


def _read_toml(path: Path) -> dict[str, Any]:
    """Parsed file, or {} when it does not exist."""
    if not path.is_file():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to load config from {path}: {e}", details={"path": str(path)}) from e


def _from_environment() -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for name, (*sections, key) in ENV_VARS.items():
        raw = os.environ.get(name)
        if raw is None:
            continue
        target = layer
        for section in sections:
            target = target.setdefault(section, {})
        target[key] = _coerce(raw) if sections else raw
    return layer


def _coerce(raw: str) -> Any:
    """Env values arrive as text: map booleans and numbers, keep the rest."""
    lowered = raw.strip().lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    for number in (int, float):
        try:
            return number(raw)
        except ValueError:
            continue
    return raw


def _merge_into(target: dict[str, Any], layer: dict[str, Any]) -> None:
    """Recursive update: nested tables merge, everything else replaces."""
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge_into(current, value)
        else:
            target[key] = value


def _expand_env_refs(node: Any) -> Any:
    """Replace ${NAME} in every string inside `node`, in place for containers."""
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), node)
    if isinstance(node, dict):
        for key, value in node.items():
            node[key] = _expand_env_refs(value)
    elif isinstance(node, list):
        node[:] = [_expand_env_refs(item) for item in node]
    return node
