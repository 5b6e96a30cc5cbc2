"""
Command file parsing — JSON, YAML and Markdown-with-front-matter.

Every format must yield an `id` and either `instructions` or `prompt`
(Markdown may use its body instead). A file that fails to parse is
logged and skipped; it never raises to the caller.

Markdown example:

    ---
    id: dependency-audit
    description: Weekly dependency review
    constraints:
      maxRuntime: 600
    ---
    # Role
    You are a careful release engineer.

    # Tasks
    - List outdated dependencies
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

import yaml

from agentcron.scheduler.models import Command, Constraints

logger = logging.getLogger(__name__)

SECTION_NAMES = ("role", "tasks", "rules", "context")

JSON_SUFFIXES = (".json",)
YAML_SUFFIXES = (".yaml", ".yml")
MARKDOWN_SUFFIXES = (".md", ".markdown")
COMMAND_SUFFIXES = JSON_SUFFIXES + YAML_SUFFIXES + MARKDOWN_SUFFIXES

_SECTION_HEADER = re.compile(r"^#+\s+(role|tasks|rules|context)\b", re.IGNORECASE)


def _sections_from_mapping(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {k: value[k] for k in SECTION_NAMES if isinstance(value.get(k), str)}


def _from_mapping(file_path: str, data: Any, kind: str) -> Command | None:
    """Shared validation for JSON and YAML objects."""
    if not isinstance(data, dict):
        logger.warning(f"Command file {file_path} is not a valid {kind} object")
        return None

    command_id = data.get("id")
    if not command_id or not isinstance(command_id, (str, int)):
        logger.warning(f"Command file {file_path} missing required 'id' field")
        return None

    instructions = data.get("instructions") or data.get("prompt")
    if not instructions:
        logger.warning(f"Command file {file_path} missing required 'instructions' or 'prompt' field")
        return None

    description = data.get("description")
    return Command(
        id=str(command_id),
        file_path=file_path,
        instructions=instructions if isinstance(instructions, str) else str(instructions),
        description=description if isinstance(description, str) else None,
        sections=_sections_from_mapping(data.get("sections")),
        constraints=Constraints.from_dict(data.get("constraints")),
    )


def parse_json_command(file_path: str, content: str) -> Command | None:
    try:
        data = json.loads(content)
    except ValueError as e:
        logger.warning(f"Failed to parse JSON command file {file_path}: {e}")
        return None
    return _from_mapping(file_path, data, "JSON")


def parse_yaml_command(file_path: str, content: str) -> Command | None:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse YAML command file {file_path}: {e}")
        return None
    return _from_mapping(file_path, data, "YAML")


def split_front_matter(content: str) -> tuple[dict[str, Any], str]:
    """
    Split YAML front matter from a Markdown body.

    Returns ({}, content) when there is no front matter block.
    Raises yaml.YAMLError for a block that is not valid YAML.
    """
    if not content.startswith("---"):
        return {}, content
    parts = content.split("---", 2)
    if len(parts) < 3:
        return {}, content
    meta = yaml.safe_load(parts[1]) or {}
    if not isinstance(meta, dict):
        return {}, content
    return meta, parts[2].lstrip("\n")


def extract_sections(body: str) -> dict[str, str]:
    """Collect '# Role' / '# Tasks' / '# Rules' / '# Context' blocks from Markdown."""
    sections: dict[str, str] = {}
    current: str | None = None
    lines: list[str] = []

    for line in body.splitlines():
        match = _SECTION_HEADER.match(line)
        if match:
            if current:
                sections[current] = "\n".join(lines).strip()
            current = match.group(1).lower()
            lines = []
        elif current:
            lines.append(line)

    if current:
        sections[current] = "\n".join(lines).strip()
    return sections


def parse_markdown_command(file_path: str, content: str) -> Command | None:
    try:
        meta, body = split_front_matter(content)
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse front matter in {file_path}: {e}")
        return None

    command_id = meta.get("id")
    if not command_id or not isinstance(command_id, (str, int)):
        logger.warning(f"Command file {file_path} missing required 'id' in front matter")
        return None

    instructions = body.strip()
    if not instructions:
        for key in ("instructions", "prompt"):
            if isinstance(meta.get(key), str):
                instructions = meta[key]
                break
    if not instructions:
        logger.warning(f"Command file {file_path} has no instructions")
        return None

    sections = _sections_from_mapping(meta.get("sections")) or extract_sections(body)
    description = meta.get("description")
    return Command(
        id=str(command_id),
        file_path=file_path,
        instructions=instructions,
        description=description if isinstance(description, str) else None,
        sections=sections,
        constraints=Constraints.from_dict(meta.get("constraints")),
    )


def parse_command_file(path: Path | str) -> Command | None:
    """Parse one command file, choosing the format by extension."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning(f"Failed to read command file {path}: {e}")
        return None

    file_path = str(path)
    suffix = path.suffix.lower()
    if suffix in JSON_SUFFIXES:
        return parse_json_command(file_path, content)
    if suffix in YAML_SUFFIXES:
        return parse_yaml_command(file_path, content)
    if suffix in MARKDOWN_SUFFIXES:
        return parse_markdown_command(file_path, content)

    logger.warning(f"Unknown file type for command file: {path}")
    return None
