"""Tests for agentcron/scheduler/engine.py"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

import agentcron.scheduler.engine as engine_module
from agentcron.core.errors import (
    ScheduleBusyError,
    ScheduleNotFoundError,
    StorageError,
    ValidationError,
)
from agentcron.core.events import EventType
from agentcron.scheduler.engine import SchedulerEngine
from agentcron.scheduler.models import RunStatus, Schedule, utc_now


@pytest.fixture
def engine(store, tracker, bus):
    return SchedulerEngine(store, tracker, bus=bus, sweep_interval=3600)


def _schedule(sid: str = "s1", cron: str = "0 0 * * *", **kwargs) -> Schedule:
    return Schedule(id=sid, name=f"job-{sid}", cron=cron, prompt_template="do it", **kwargs)


async def _drain(engine: SchedulerEngine) -> None:
    """Wait for pending fire attempts and the runs they started."""
    while engine._fire_tasks:
        await asyncio.gather(*list(engine._fire_tasks))
    tasks = [e.task for e in engine.tracker.running if e.task is not None]
    if tasks:
        await asyncio.wait(tasks)


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_arms_enabled_only(self, engine, store, bus):
        started = []

        async def on_start(event):
            started.append(event)

        bus.on(EventType.SYSTEM_START, on_start)
        await store.save_schedules([_schedule("on"), _schedule("off", enabled=False)])

        await engine.start()
        try:
            assert engine.is_running
            assert set(engine.jobs) == {"on"}
            assert engine.jobs["on"].timer is not None
            assert started[0].data == {"schedules": 2, "armed": 1}
        finally:
            await engine.stop()

        assert engine.jobs == {}
        assert not engine.is_running

    async def test_stop_cancels_in_flight_runs(self, engine, mock_runner, store):
        await engine.add_schedule(_schedule("s1"))
        await engine.start()
        mock_runner.hold()
        await engine.run_schedule("s1")
        await asyncio.wait_for(mock_runner.started.wait(), timeout=1)

        await engine.stop()

        history = await store.get_run_history()
        assert history[0].status is RunStatus.FAILURE
        assert engine.tracker.running == []


@pytest.mark.asyncio
class TestTimers:
    async def test_schedule_job_arms_timer(self, engine):
        nxt = engine.schedule_job(_schedule(timezone="UTC"))
        assert nxt is not None
        assert nxt > utc_now()
        assert (nxt.hour, nxt.minute) == (0, 0)
        assert engine.jobs["s1"].next_run_at == nxt
        engine.unschedule_job("s1")

    async def test_bad_timezone_left_unscheduled(self, engine):
        assert engine.schedule_job(_schedule(timezone="Mars/Olympus_Mons")) is None
        assert "s1" not in engine.jobs

    async def test_disabled_not_armed(self, engine):
        assert engine.schedule_job(_schedule(enabled=False)) is None
        assert engine.jobs == {}

    async def test_unschedule_is_idempotent(self, engine):
        engine.unschedule_job("never-scheduled")
        engine.schedule_job(_schedule())
        engine.unschedule_job("s1")
        engine.unschedule_job("s1")
        assert engine.jobs == {}

    async def test_past_instant_is_recomputed(self, engine, monkeypatch):
        past = utc_now() - timedelta(hours=1)
        future = utc_now() + timedelta(hours=1)
        answers = iter([past, future])
        monkeypatch.setattr(engine_module, "next_run_time", lambda *a, **kw: next(answers))

        assert engine.schedule_job(_schedule()) == future
        engine.unschedule_job("s1")

    async def test_always_past_gives_up(self, engine, monkeypatch):
        monkeypatch.setattr(
            engine_module, "next_run_time", lambda *a, **kw: utc_now() - timedelta(minutes=1)
        )
        assert engine.schedule_job(_schedule()) is None
        assert engine.jobs == {}

    async def test_reschedule_never_repeats_a_slot(self, engine):
        first = engine.schedule_job(_schedule(timezone="UTC"))
        second = engine.reschedule_job("s1")
        assert second == first + timedelta(days=1)
        engine.unschedule_job("s1")

    async def test_reschedule_unknown_is_noop(self, engine):
        assert engine.reschedule_job("ghost") is None

    async def test_timer_fires_run(self, engine, bus, monkeypatch):
        done = asyncio.Event()

        async def on_success(event):
            done.set()

        bus.on(EventType.RUN_SUCCESS, on_success)
        answers = iter([utc_now() + timedelta(milliseconds=50)])
        far = utc_now() + timedelta(days=1)
        monkeypatch.setattr(engine_module, "next_run_time", lambda *a, **kw: next(answers, far))

        engine.schedule_job(_schedule())
        await asyncio.wait_for(done.wait(), timeout=2)
        await _drain(engine)

        # Re-armed for the next slot after the attempt
        assert engine.jobs["s1"].next_run_at == far
        engine.unschedule_job("s1")


@pytest.mark.asyncio
class TestTriggers:
    async def test_execute_runs_and_reschedules(self, engine, store, mock_runner):
        engine.schedule_job(_schedule(timezone="UTC"))
        before = engine.jobs["s1"].next_run_at

        await engine._execute_schedule("s1")
        await _drain(engine)

        assert mock_runner.call_count == 1
        assert engine.jobs["s1"].next_run_at == before + timedelta(days=1)
        assert len(await store.get_run_history()) == 1
        engine.unschedule_job("s1")

    async def test_job_rearmed_during_fire_keeps_its_first_slot(self, engine, monkeypatch):
        engine.schedule_job(_schedule(timezone="UTC"))
        armed = {}

        async def start_while_updated(schedule, manual=False):
            armed["at"] = engine.schedule_job(_schedule(cron="30 6 * * *", timezone="UTC"))
            return None

        monkeypatch.setattr(engine.tracker, "start", start_while_updated)
        await engine._execute_schedule("s1")

        assert engine.jobs["s1"].next_run_at == armed["at"]
        assert engine.jobs["s1"].schedule.cron == "30 6 * * *"
        engine.unschedule_job("s1")

    async def test_execute_unknown_job_is_noop(self, engine, mock_runner):
        await engine._execute_schedule("ghost")
        assert mock_runner.call_count == 0

    async def test_sweep_fires_overdue_job(self, engine, mock_runner):
        engine.schedule_job(_schedule())
        engine.jobs["s1"].next_run_at = utc_now() - timedelta(minutes=1)

        assert engine._sweep() == ["s1"]
        await _drain(engine)

        assert mock_runner.call_count == 1
        assert engine.jobs["s1"].next_run_at > utc_now()
        engine.unschedule_job("s1")

    async def test_sweep_ignores_future_jobs(self, engine):
        engine.schedule_job(_schedule())
        assert engine._sweep() == []
        engine.unschedule_job("s1")

    async def test_timer_and_sweep_for_same_slot_start_one_run(self, engine, mock_runner, store):
        engine.schedule_job(_schedule())
        mock_runner.hold()

        assert engine._fire("s1") is True
        assert engine._sweep(now=utc_now() + timedelta(days=3)) == []
        await _drain_fires(engine)

        # A later trigger while the run is still going is recorded as skipped
        assert engine._sweep(now=utc_now() + timedelta(days=3)) == ["s1"]
        await _drain_fires(engine)
        assert len(engine.tracker.running) == 1

        mock_runner.release()
        await _drain(engine)
        statuses = [r.status for r in await store.get_run_history()]
        assert statuses == [RunStatus.SUCCESS, RunStatus.SKIPPED]
        assert mock_runner.call_count == 1
        engine.unschedule_job("s1")


async def _drain_fires(engine: SchedulerEngine) -> None:
    while engine._fire_tasks:
        await asyncio.gather(*list(engine._fire_tasks))


@pytest.mark.asyncio
class TestScheduleManagement:
    async def test_add_then_list(self, engine, bus):
        changes = []

        async def on_change(event):
            changes.append(event.data)

        bus.on(EventType.SCHEDULES_CHANGED, on_change)
        schedule = await engine.add_schedule(_schedule())

        assert [s.id for s in await engine.get_schedules()] == ["s1"]
        assert "createdAt" in schedule.metadata
        assert "s1" in engine.jobs
        assert changes == [{"action": "added", "schedule_id": "s1"}]
        engine.unschedule_job("s1")

    async def test_add_duplicate_rejected(self, engine):
        await engine.add_schedule(_schedule())
        with pytest.raises(ValidationError):
            await engine.add_schedule(_schedule())
        assert len(await engine.get_schedules()) == 1
        engine.unschedule_job("s1")

    async def test_add_invalid_cron_rejected(self, engine, store):
        with pytest.raises(ValidationError):
            await engine.add_schedule(_schedule(cron="every day"))
        assert await store.load_schedules() == []
        assert engine.jobs == {}

    async def test_add_write_failure_propagates(self, engine, store, monkeypatch):
        async def broken(schedules):
            raise StorageError("disk full")

        monkeypatch.setattr(store, "save_schedules", broken)
        with pytest.raises(StorageError):
            await engine.add_schedule(_schedule())
        assert engine.jobs == {}

    async def test_update_unknown_leaves_storage_unchanged(self, engine, store):
        await engine.add_schedule(_schedule("s1"))
        before = store.schedules_file.read_text()

        with pytest.raises(ScheduleNotFoundError):
            await engine.update_schedule(_schedule("ghost"))

        assert store.schedules_file.read_text() == before
        engine.unschedule_job("s1")

    async def test_update_rearms_and_stamps(self, engine):
        added = await engine.add_schedule(_schedule(timezone="UTC"))
        created = added.metadata["createdAt"]

        changed = _schedule(cron="30 6 * * *", timezone="UTC")
        await engine.update_schedule(changed)

        stored = await engine.get_schedule("s1")
        assert stored.cron == "30 6 * * *"
        assert stored.metadata["createdAt"] == created
        assert "updatedAt" in stored.metadata
        nxt = engine.jobs["s1"].next_run_at
        assert (nxt.hour, nxt.minute) == (6, 30)
        engine.unschedule_job("s1")

    async def test_update_enabled_wins_over_override(self, engine):
        await engine.add_schedule(_schedule())
        await engine.disable_schedule("s1")

        await engine.update_schedule(_schedule(enabled=True))

        assert (await engine.get_schedule("s1")).enabled is True
        assert "s1" in engine.jobs
        engine.unschedule_job("s1")

    async def test_remove(self, engine, store):
        await engine.add_schedule(_schedule())
        await engine.disable_schedule("s1")

        await engine.remove_schedule("s1")

        assert await engine.get_schedules() == []
        assert engine.jobs == {}
        assert "s1" not in await store.get_overrides()

    async def test_remove_unknown(self, engine):
        with pytest.raises(ScheduleNotFoundError):
            await engine.remove_schedule("ghost")

    async def test_disable_then_enable(self, engine, store):
        await engine.add_schedule(_schedule("s1", cron="* * * * *"))

        await engine.disable_schedule("s1")
        assert "s1" not in engine.jobs
        assert (await engine.get_schedule("s1")).enabled is False
        assert engine._sweep(now=utc_now() + timedelta(days=1)) == []
        assert await engine.get_next_run_time("s1") is None

        enabled_at = utc_now()
        nxt = await engine.enable_schedule("s1")
        assert nxt is not None
        assert enabled_at < nxt <= enabled_at + timedelta(minutes=2)
        assert engine.jobs["s1"].next_run_at == nxt
        assert (await store.get_overrides())["s1"]["enabled"] is True
        engine.unschedule_job("s1")

    async def test_enable_unknown(self, engine):
        with pytest.raises(ScheduleNotFoundError):
            await engine.enable_schedule("ghost")
        with pytest.raises(ScheduleNotFoundError):
            await engine.disable_schedule("ghost")

    async def test_reload(self, engine, store):
        await store.save_schedules([_schedule("a"), _schedule("b"), _schedule("c", enabled=False)])
        assert await engine.reload_schedules() == 2
        assert set(engine.jobs) == {"a", "b"}
        for sid in list(engine.jobs):
            engine.unschedule_job(sid)

    async def test_get_next_run_time(self, engine):
        await engine.add_schedule(_schedule(timezone="UTC"))
        armed = engine.jobs["s1"].next_run_at
        assert await engine.get_next_run_time("s1") == armed
        engine.unschedule_job("s1")
        # Not armed (e.g. CLI process): computed on demand
        assert await engine.get_next_run_time("s1") == armed

        with pytest.raises(ScheduleNotFoundError):
            await engine.get_next_run_time("ghost")


@pytest.mark.asyncio
class TestManualRuns:
    async def test_run_now(self, engine, store):
        await engine.add_schedule(_schedule())
        run_id = await engine.run_schedule("s1")
        record = await engine.tracker.wait(run_id)
        assert record.status is RunStatus.SUCCESS
        assert len(await engine.get_run_history("s1")) == 1
        engine.unschedule_job("s1")

    async def test_run_now_busy(self, engine, mock_runner):
        await engine.add_schedule(_schedule())
        mock_runner.hold()
        await engine.run_schedule("s1")

        with pytest.raises(ScheduleBusyError):
            await engine.run_schedule("s1")

        mock_runner.release()
        await _drain(engine)
        engine.unschedule_job("s1")

    async def test_run_unknown(self, engine):
        with pytest.raises(ScheduleNotFoundError):
            await engine.run_schedule("ghost")

    async def test_run_direct_unsaved(self, engine, store):
        unsaved = Schedule.new("Try it", "* * * * *", prompt_template="hello")
        record = await engine.tracker.wait(await engine.run_schedule_direct(unsaved))

        assert record.status is RunStatus.SUCCESS
        assert await store.load_schedules() == []
        assert (await engine.get_run_history())[0].schedule_id == unsaved.id

    async def test_run_direct_validates(self, engine):
        with pytest.raises(ValidationError):
            await engine.run_schedule_direct(Schedule.new("Bad", "nope", prompt_template="x"))

    async def test_cancel_execution(self, engine, mock_runner):
        await engine.add_schedule(_schedule())
        mock_runner.hold()
        run_id = await engine.run_schedule("s1")

        assert await engine.cancel_execution(run_id) is True
        assert await engine.cancel_execution(run_id) is False
        history = await engine.get_run_history()
        assert history[0].error == "Execution cancelled by user"

        mock_runner.release()
        engine.unschedule_job("s1")

    async def test_clear_history(self, engine):
        await engine.add_schedule(_schedule())
        await engine.tracker.wait(await engine.run_schedule("s1"))
        await engine.clear_run_history()
        assert await engine.get_run_history() == []
        engine.unschedule_job("s1")
