"""
ScheduleStore — persistence for schedule definitions, per-workspace
overrides and run history.

Two backing areas:

    schedules file (JSON, checked into the repo, hand-editable)
        {"schedules": [Schedule, ...], "version": "1.0"}

    key-value area (StorageProvider, local to this workspace)
        agentcron/overrides    {schedule_id: {"enabled": bool,
                                              "lastRun": {"status", "finishedAt"}}}
        agentcron/run_history  [RunRecord, ...]   newest first, capped

Overrides are merged on read: an override's `enabled` wins over the
document, so enabling/disabling never rewrites the shared file.

Reads degrade to empty/default values with a warning; writes raise
StorageError to the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles

from agentcron.core.errors import StorageError
from agentcron.scheduler.models import RunRecord, Schedule
from agentcron.store.base import StorageProvider

logger = logging.getLogger(__name__)

SCHEDULES_VERSION = "1.0"
DEFAULT_HISTORY_LIMIT = 1000

OVERRIDES_KEY = "agentcron/overrides"
RUN_HISTORY_KEY = "agentcron/run_history"


class ScheduleStore:
    """
    Usage:
        store = ScheduleStore(Path(".agentcron/schedules.json"), SQLiteStorage(...))

        schedules = await store.load_schedules()
        await store.save_schedules(schedules + [new_schedule])
        await store.update_schedule_enabled(new_schedule.id, False)
        await store.save_run_record(record)
    """

    def __init__(
        self,
        schedules_file: Path,
        kv: StorageProvider,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._schedules_file = Path(schedules_file)
        self._kv = kv
        self._history_limit = history_limit
        # Serializes read-modify-write cycles on the key-value area
        self._kv_lock = asyncio.Lock()

    @property
    def schedules_file(self) -> Path:
        return self._schedules_file

    # ── Schedule document ────────────────────────────────────────────────────

    async def load_schedules(self) -> list[Schedule]:
        """Load schedules from the document and merge user overrides."""
        schedules = await self._load_document()
        overrides = await self.get_overrides()
        for schedule in schedules:
            override = overrides.get(schedule.id) or {}
            if isinstance(override.get("enabled"), bool):
                schedule.enabled = override["enabled"]
        return schedules

    async def _load_document(self) -> list[Schedule]:
        if not self._schedules_file.is_file():
            return []
        try:
            async with aiofiles.open(self._schedules_file, mode="r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read schedules file {self._schedules_file}: {e}")
            return []

        raw = data.get("schedules") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            logger.warning(f"Schedules file {self._schedules_file} has no 'schedules' list")
            return []

        schedules: list[Schedule] = []
        for entry in raw:
            if not isinstance(entry, dict):
                logger.warning(f"Skipping schedule entry that is not an object: {entry!r}")
                continue
            try:
                schedules.append(Schedule.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed schedule entry {entry!r}: {e}")
        return schedules

    async def save_schedules(self, schedules: list[Schedule]) -> None:
        """Write the full schedule document atomically (temp file + rename)."""
        document = {
            "schedules": [s.to_dict() for s in schedules],
            "version": SCHEDULES_VERSION,
        }
        text = json.dumps(document, indent=2, ensure_ascii=False) + "\n"
        tmp_path = self._schedules_file.with_name(self._schedules_file.name + ".tmp")
        try:
            self._schedules_file.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, mode="w", encoding="utf-8") as f:
                await f.write(text)
            os.replace(tmp_path, self._schedules_file)
        except OSError as e:
            raise StorageError(
                f"Failed to write schedules file: {self._schedules_file}: {e}"
            ) from e
        logger.debug(f"Saved {len(schedules)} schedules to {self._schedules_file}")

    # ── Overrides ────────────────────────────────────────────────────────────

    async def get_overrides(self) -> dict[str, dict[str, Any]]:
        value = await self._read_json(OVERRIDES_KEY, {})
        return value if isinstance(value, dict) else {}

    async def update_override(self, schedule_id: str, **fields: Any) -> None:
        """Shallow-merge fields into one schedule's override entry."""
        async with self._kv_lock:
            overrides = await self.get_overrides()
            entry = dict(overrides.get(schedule_id) or {})
            entry.update(fields)
            overrides[schedule_id] = entry
            await self._write_json(OVERRIDES_KEY, overrides)

    async def update_schedule_enabled(self, schedule_id: str, enabled: bool) -> None:
        await self.update_override(schedule_id, enabled=enabled)

    async def update_last_run(
        self, schedule_id: str, status: str, finished_at: str | None = None
    ) -> None:
        await self.update_override(
            schedule_id, lastRun={"status": status, "finishedAt": finished_at}
        )

    async def remove_override(self, schedule_id: str) -> None:
        async with self._kv_lock:
            overrides = await self.get_overrides()
            if overrides.pop(schedule_id, None) is not None:
                await self._write_json(OVERRIDES_KEY, overrides)

    # ── Run history ──────────────────────────────────────────────────────────

    async def get_run_history(
        self, schedule_id: str | None = None, limit: int | None = None
    ) -> list[RunRecord]:
        """Run records, newest first, optionally filtered to one schedule."""
        raw = await self._read_json(RUN_HISTORY_KEY, [])
        if not isinstance(raw, list):
            return []
        records: list[RunRecord] = []
        for entry in raw:
            if schedule_id is not None and (
                not isinstance(entry, dict) or entry.get("scheduleId") != schedule_id
            ):
                continue
            try:
                records.append(RunRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed run record: {e}")
            if limit is not None and len(records) >= limit:
                break
        return records

    async def save_run_record(self, record: RunRecord) -> None:
        """Prepend a record and trim the log to the history limit."""
        async with self._kv_lock:
            raw = await self._read_json(RUN_HISTORY_KEY, [])
            history = raw if isinstance(raw, list) else []
            history.insert(0, record.to_dict())
            await self._write_json(RUN_HISTORY_KEY, history[: self._history_limit])

    async def clear_run_history(self) -> None:
        async with self._kv_lock:
            await self._kv.delete(RUN_HISTORY_KEY)

    async def close(self) -> None:
        await self._kv.close()

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _read_json(self, key: str, default: Any) -> Any:
        try:
            raw = await self._kv.get(key)
        except StorageError as e:
            logger.warning(f"Could not read {key}: {e}")
            return default
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning(f"Corrupt value under {key}, using default: {e}")
            return default

    async def _write_json(self, key: str, value: Any) -> None:
        await self._kv.set(key, json.dumps(value, ensure_ascii=False).encode("utf-8"))
