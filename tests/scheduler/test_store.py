"""Tests for agentcron/scheduler/store.py"""
from __future__ import annotations

import json

import pytest

from agentcron.core.errors import StorageError
from agentcron.scheduler.models import RunRecord, RunStatus, Schedule, TargetType
from agentcron.scheduler.store import RUN_HISTORY_KEY, ScheduleStore
from agentcron.store.memory import InMemoryStorage


def _schedule(sid: str, name: str = "job", enabled: bool = True) -> Schedule:
    return Schedule(id=sid, name=name, cron="0 9 * * *", enabled=enabled, prompt_template="hi")


def _record(sid: str, n: int) -> RunRecord:
    return RunRecord(
        schedule_id=sid,
        schedule_name=f"job-{sid}",
        target_type=TargetType.PROMPT,
        started_at=f"2026-01-18T10:00:{n % 60:02d}+00:00",
        status=RunStatus.SUCCESS,
        finished_at=f"2026-01-18T10:00:{n % 60:02d}+00:00",
        summary=f"run {n}",
        execution_time=0.0,
    )


@pytest.mark.asyncio
class TestScheduleDocument:
    async def test_missing_file_is_empty(self, store):
        assert await store.load_schedules() == []

    async def test_save_and_load(self, store):
        await store.save_schedules([_schedule("a", "first"), _schedule("b", "second")])
        loaded = await store.load_schedules()
        assert [s.id for s in loaded] == ["a", "b"]
        assert loaded[0].name == "first"

    async def test_document_format(self, store):
        await store.save_schedules([_schedule("a")])
        text = store.schedules_file.read_text(encoding="utf-8")
        data = json.loads(text)
        assert data["version"] == "1.0"
        assert data["schedules"][0]["promptTemplate"] == "hi"
        assert text.startswith('{\n  "schedules"')

    @pytest.mark.parametrize(
        "content",
        ["not json at all", '{"schedules": "nope"}', "[]", '{"version": "1.0"}'],
    )
    async def test_malformed_document_is_empty(self, store, content):
        store.schedules_file.parent.mkdir(parents=True, exist_ok=True)
        store.schedules_file.write_text(content, encoding="utf-8")
        assert await store.load_schedules() == []

    async def test_bad_entry_skipped(self, store):
        store.schedules_file.parent.mkdir(parents=True, exist_ok=True)
        store.schedules_file.write_text(json.dumps({
            "schedules": [
                {"id": "ok", "name": "fine", "cron": "0 9 * * *", "promptTemplate": "x"},
                {"name": "no id"},
                {"id": "bad", "name": "b", "cron": "* * * * *", "targetType": "teleport"},
                {"id": "out", "name": "o", "cron": "* * * * *", "promptTemplate": "x",
                 "outputConfig": "markdown"},
                {"id": "ref", "name": "r", "cron": "* * * * *", "targetType": "command",
                 "commandRef": ".agentcron/commands/audit.md"},
                "not an entry",
            ],
            "version": "1.0",
        }))
        loaded = await store.load_schedules()
        assert [s.id for s in loaded] == ["ok"]

    async def test_write_failure_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = ScheduleStore(blocker / "schedules.json", InMemoryStorage())
        with pytest.raises(StorageError):
            await store.save_schedules([_schedule("a")])


@pytest.mark.asyncio
class TestOverrides:
    async def test_enabled_override_wins(self, store):
        await store.save_schedules([_schedule("a", enabled=True)])
        await store.update_schedule_enabled("a", False)

        loaded = await store.load_schedules()
        assert loaded[0].enabled is False
        # The shared document is untouched
        raw = json.loads(store.schedules_file.read_text())
        assert raw["schedules"][0]["enabled"] is True

    async def test_last_run_kept_alongside_enabled(self, store):
        await store.update_schedule_enabled("a", False)
        await store.update_last_run("a", "success", "2026-01-18T10:00:00+00:00")

        overrides = await store.get_overrides()
        assert overrides["a"]["enabled"] is False
        assert overrides["a"]["lastRun"] == {
            "status": "success",
            "finishedAt": "2026-01-18T10:00:00+00:00",
        }

    async def test_remove_override(self, store):
        await store.update_schedule_enabled("a", False)
        await store.remove_override("a")
        await store.remove_override("unknown")
        assert await store.get_overrides() == {}

    async def test_corrupt_overrides_degrade(self, store, kv):
        await kv.set("agentcron/overrides", b"{not json")
        assert await store.get_overrides() == {}


@pytest.mark.asyncio
class TestRunHistory:
    async def test_newest_first(self, store):
        await store.save_run_record(_record("a", 1))
        await store.save_run_record(_record("a", 2))
        history = await store.get_run_history()
        assert [r.summary for r in history] == ["run 2", "run 1"]

    async def test_filter_and_limit(self, store):
        for n in range(5):
            await store.save_run_record(_record("a" if n % 2 else "b", n))

        only_a = await store.get_run_history("a")
        assert [r.summary for r in only_a] == ["run 3", "run 1"]

        limited = await store.get_run_history(limit=2)
        assert [r.summary for r in limited] == ["run 4", "run 3"]

    async def test_capped_at_1000(self, store, kv):
        for n in range(1001):
            await store.save_run_record(_record("a", n))

        history = await store.get_run_history()
        assert len(history) == 1000
        assert history[0].summary == "run 1000"
        assert history[-1].summary == "run 1"
        assert len(json.loads(await kv.get(RUN_HISTORY_KEY))) == 1000

    async def test_custom_limit(self, tmp_path):
        store = ScheduleStore(tmp_path / "schedules.json", InMemoryStorage(), history_limit=3)
        for n in range(5):
            await store.save_run_record(_record("a", n))
        assert [r.summary for r in await store.get_run_history()] == ["run 4", "run 3", "run 2"]

    async def test_clear(self, store):
        await store.save_run_record(_record("a", 1))
        await store.clear_run_history()
        assert await store.get_run_history() == []
