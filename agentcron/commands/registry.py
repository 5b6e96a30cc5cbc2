"""
CommandRegistry — discovers command templates in the workspace.

Scans the commands directory (default .agentcron/commands) recursively
for *.json, *.yaml/*.yml and *.md/*.markdown. Commands are keyed by
(resolved file path, command id), which is exactly what a schedule's
commandRef carries.

A broken command file is logged and skipped; it never stops the others
from loading.
"""

from __future__ import annotations

import logging
from pathlib import Path

from agentcron.commands.parser import COMMAND_SUFFIXES, parse_command_file
from agentcron.scheduler.models import Command

logger = logging.getLogger(__name__)


class CommandRegistry:
    """
    Usage:
        registry = CommandRegistry(Path(".agentcron/commands"), workspace=Path.cwd())
        registry.reload()
        cmd = registry.get(".agentcron/commands/audit.md", "dependency-audit")
    """

    def __init__(self, commands_dir: Path, workspace: Path | None = None) -> None:
        self._workspace = (workspace or Path.cwd()).resolve()
        self._commands_dir = self._resolve(commands_dir)
        self._commands: dict[tuple[str, str], Command] = {}

    @property
    def commands_dir(self) -> Path:
        return self._commands_dir

    def _resolve(self, path: Path | str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = self._workspace / p
        return p.resolve()

    def reload(self) -> int:
        """Rescan the commands directory. Returns the number of commands loaded."""
        self._commands.clear()
        if not self._commands_dir.is_dir():
            logger.debug(f"Commands directory does not exist: {self._commands_dir}")
            return 0

        for path in sorted(self._commands_dir.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in COMMAND_SUFFIXES:
                continue
            command = parse_command_file(path)
            if command is None:
                continue
            key = (str(path.resolve()), command.id)
            if key in self._commands:
                logger.warning(f"Duplicate command id {command.id!r} in {path}, keeping first")
                continue
            self._commands[key] = command

        logger.info(f"Loaded {len(self._commands)} commands from {self._commands_dir}")
        return len(self._commands)

    def get(self, file_path: str, command_id: str) -> Command | None:
        """Look up a command; relative paths resolve against the workspace."""
        return self._commands.get((str(self._resolve(file_path)), command_id))

    def all(self) -> list[Command]:
        return list(self._commands.values())

    def by_file(self) -> dict[str, list[Command]]:
        grouped: dict[str, list[Command]] = {}
        for (file_path, _), command in self._commands.items():
            grouped.setdefault(file_path, []).append(command)
        return grouped

    def __len__(self) -> int:
        return len(self._commands)
