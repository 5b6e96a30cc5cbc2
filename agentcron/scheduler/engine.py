"""
SchedulerEngine — arms one timer per enabled schedule and fires runs.

Design:
- Each enabled schedule gets a ScheduledJob holding its next trigger
  instant and a `loop.call_later` handle. The timer is the primary
  trigger path.
- A low-frequency sweep (every `sweep_interval` seconds) fires any job
  whose next_run_at has passed without its timer firing. It is a safety
  net against timer drift (e.g. the machine slept), not a second clock.
- Both producers feed `_execute_schedule()`. The `_firing` set keeps
  them from launching the same slot twice, and the tracker's
  single-flight check keeps a schedule from overlapping itself.
- Every attempt (started, skipped or failed) ends with
  reschedule_job(), so one bad run never stops future runs.
- No missed-run replay: slots that passed while the process was not
  running are skipped and the next occurrence is armed.

Mutations go through the ScheduleStore first; the in-memory timer map
changes only after the write succeeded, followed by a single
`schedule:changed` event.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from agentcron.core.errors import AgentCronError, ScheduleNotFoundError, ValidationError
from agentcron.core.events import Event, EventType
from agentcron.scheduler.cron import next_run_time
from agentcron.scheduler.models import RunRecord, Schedule, ScheduledJob, iso_now, utc_now
from agentcron.scheduler.store import ScheduleStore
from agentcron.scheduler.tracker import ExecutionTracker

if TYPE_CHECKING:
    from agentcron.core.bus import EventBus

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 60       # seconds between due-job sweeps
MAX_RECOMPUTE = 5         # attempts to move a past-due instant into the future


class SchedulerEngine:
    """
    Usage:
        engine = SchedulerEngine(store, tracker, bus=bus)
        await engine.start()

        await engine.add_schedule(Schedule.new("Nightly audit", "0 2 * * *",
                                               prompt_template="Audit deps"))
        run_id = await engine.run_schedule(schedule_id)

        await engine.stop()
    """

    def __init__(
        self,
        store: ScheduleStore,
        tracker: ExecutionTracker,
        bus: "EventBus | None" = None,
        sweep_interval: float = SWEEP_INTERVAL,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._bus = bus
        self._sweep_interval = sweep_interval
        self._jobs: dict[str, ScheduledJob] = {}
        self._firing: set[str] = set()          # schedule ids with an attempt in progress
        self._fire_tasks: set[asyncio.Task] = set()
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> dict[str, ScheduledJob]:
        """Snapshot of the armed jobs, keyed by schedule id."""
        return dict(self._jobs)

    @property
    def tracker(self) -> ExecutionTracker:
        return self._tracker

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Arm every enabled schedule and start the sweep loop."""
        if self._running:
            return
        schedules = await self._store.load_schedules()
        armed = sum(1 for s in schedules if s.enabled and self.schedule_job(s) is not None)
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="agentcron-sweep")
        logger.info(f"SchedulerEngine started ({armed}/{len(schedules)} schedules armed)")
        await self._emit(EventType.SYSTEM_START, {"schedules": len(schedules), "armed": armed})

    async def stop(self) -> None:
        """Stop the sweep, drop all timers and cancel in-flight runs."""
        if not self._running:
            return
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

        for job in self._jobs.values():
            job.cancel_timer()
        self._jobs.clear()

        if self._fire_tasks:
            await asyncio.gather(*self._fire_tasks, return_exceptions=True)
        await self._tracker.shutdown()
        logger.info("SchedulerEngine stopped")
        await self._emit(EventType.SYSTEM_STOP, {})

    # ── Timers ───────────────────────────────────────────────────────────────

    def schedule_job(self, schedule: Schedule) -> datetime | None:
        """
        Arm a timer for the next occurrence of `schedule`.

        Returns the armed instant, or None when the schedule is disabled
        or its cron/timezone cannot be evaluated (logged, never raised).
        """
        self.unschedule_job(schedule.id)
        if not schedule.enabled:
            return None
        return self._arm(ScheduledJob(schedule=schedule), base=None)

    def unschedule_job(self, schedule_id: str) -> None:
        job = self._jobs.pop(schedule_id, None)
        if job is not None:
            job.cancel_timer()
            logger.debug(f"Unscheduled {job.schedule.name!r}")

    def reschedule_job(self, schedule_id: str) -> datetime | None:
        """
        Re-arm after an execution attempt. The next occurrence is computed
        from the later of now and the slot just handled, so a timer firing
        a little early cannot hit the same slot twice.
        """
        job = self._jobs.get(schedule_id)
        if job is None:
            return None
        job.cancel_timer()
        now = utc_now()
        base = max(now, job.next_run_at) if job.next_run_at is not None else now
        return self._arm(job, base=base)

    def _arm(self, job: ScheduledJob, base: datetime | None) -> datetime | None:
        schedule = job.schedule
        now = utc_now()
        nxt = next_run_time(schedule.cron, schedule.timezone, now=base or now)

        attempts = 0
        while nxt is not None and nxt <= now and attempts < MAX_RECOMPUTE:
            logger.debug(f"Computed instant {nxt} for {schedule.name!r} is past due, recomputing")
            nxt = next_run_time(schedule.cron, schedule.timezone, now=nxt)
            attempts += 1

        if nxt is None or nxt <= now:
            self._jobs.pop(schedule.id, None)
            logger.warning(
                f"Could not compute next run for {schedule.name!r} "
                f"(cron={schedule.cron!r}, timezone={schedule.timezone!r}), not scheduled"
            )
            return None

        delay = (nxt - now).total_seconds()
        job.next_run_at = nxt
        job.timer = asyncio.get_running_loop().call_later(delay, self._on_timer, schedule.id)
        self._jobs[schedule.id] = job
        logger.debug(f"Scheduled {schedule.name!r} for {nxt.isoformat()} (in {delay:.0f}s)")
        return nxt

    def _on_timer(self, schedule_id: str) -> None:
        job = self._jobs.get(schedule_id)
        if job is not None:
            job.timer = None
        self._fire(schedule_id)

    def _fire(self, schedule_id: str) -> bool:
        """Launch an execution attempt unless one is already in progress."""
        if schedule_id in self._firing or schedule_id not in self._jobs:
            return False
        self._firing.add(schedule_id)
        task = asyncio.create_task(
            self._execute_schedule(schedule_id), name=f"agentcron-fire:{schedule_id}"
        )
        self._fire_tasks.add(task)
        task.add_done_callback(self._fire_tasks.discard)
        return True

    async def _execute_schedule(self, schedule_id: str) -> None:
        """Single entry point for timer and sweep triggers."""
        job = self._jobs.get(schedule_id)
        try:
            if job is None:
                return
            logger.info(f"Firing scheduled run: {job.schedule.name!r} (id={schedule_id})")
            await self._tracker.start(job.schedule)
        except AgentCronError as e:
            logger.warning(f"Scheduled run of {schedule_id} not started: {e.message}")
        except Exception as e:
            logger.error(f"Unexpected error firing {schedule_id}: {e}", exc_info=True)
        finally:
            self._firing.discard(schedule_id)
            # A job re-armed while this attempt awaited already has its own slot.
            if job is not None and self._jobs.get(schedule_id) is job:
                self.reschedule_job(schedule_id)

    # ── Sweep ────────────────────────────────────────────────────────────────

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._sweep_interval)
            try:
                self._sweep()
            except Exception as e:
                logger.warning(f"Scheduler sweep error (non-fatal): {e}")

    def _sweep(self, now: datetime | None = None) -> list[str]:
        """Fire every job whose instant has passed. Returns the fired ids."""
        now = now or utc_now()
        fired: list[str] = []
        for schedule_id, job in list(self._jobs.items()):
            if job.next_run_at is None or job.next_run_at > now:
                continue
            if schedule_id in self._firing:
                continue
            logger.debug(f"Sweep: {job.schedule.name!r} was due at {job.next_run_at}, firing")
            job.cancel_timer()
            if self._fire(schedule_id):
                fired.append(schedule_id)
        return fired

    # ── Schedule management ──────────────────────────────────────────────────

    async def get_schedules(self) -> list[Schedule]:
        return await self._store.load_schedules()

    async def get_schedule(self, schedule_id: str) -> Schedule:
        for schedule in await self._store.load_schedules():
            if schedule.id == schedule_id:
                return schedule
        raise ScheduleNotFoundError(schedule_id)

    async def add_schedule(self, schedule: Schedule) -> Schedule:
        schedule.validate()
        schedules = await self._store.load_schedules()
        if any(s.id == schedule.id for s in schedules):
            raise ValidationError(f"Schedule id already exists: {schedule.id}", field="id")

        schedule.metadata.setdefault("createdAt", iso_now())
        await self._store.save_schedules(schedules + [schedule])

        self.schedule_job(schedule)
        logger.info(f"Added schedule {schedule.name!r} ({schedule.id})")
        await self._emit_changed("added", schedule.id)
        return schedule

    async def update_schedule(self, schedule: Schedule) -> Schedule:
        schedule.validate()
        schedules = await self._store.load_schedules()
        for index, existing in enumerate(schedules):
            if existing.id == schedule.id:
                break
        else:
            raise ScheduleNotFoundError(schedule.id)

        if "createdAt" in existing.metadata:
            schedule.metadata.setdefault("createdAt", existing.metadata["createdAt"])
        schedule.metadata["updatedAt"] = iso_now()
        schedules[index] = schedule
        await self._store.save_schedules(schedules)

        # An existing enabled override would otherwise mask the new value
        overrides = await self._store.get_overrides()
        if "enabled" in (overrides.get(schedule.id) or {}):
            await self._store.update_schedule_enabled(schedule.id, schedule.enabled)

        self.unschedule_job(schedule.id)
        self.schedule_job(schedule)
        logger.info(f"Updated schedule {schedule.name!r} ({schedule.id})")
        await self._emit_changed("updated", schedule.id)
        return schedule

    async def remove_schedule(self, schedule_id: str) -> None:
        schedules = await self._store.load_schedules()
        remaining = [s for s in schedules if s.id != schedule_id]
        if len(remaining) == len(schedules):
            raise ScheduleNotFoundError(schedule_id)

        await self._store.save_schedules(remaining)
        await self._store.remove_override(schedule_id)

        self.unschedule_job(schedule_id)
        logger.info(f"Removed schedule {schedule_id}")
        await self._emit_changed("removed", schedule_id)

    async def enable_schedule(self, schedule_id: str) -> datetime | None:
        """Enable via the override and arm a fresh timer from now."""
        schedule = await self.get_schedule(schedule_id)
        await self._store.update_schedule_enabled(schedule_id, True)
        schedule.enabled = True
        nxt = self.schedule_job(schedule)
        logger.info(f"Enabled schedule {schedule.name!r}")
        await self._emit_changed("enabled", schedule_id)
        return nxt

    async def disable_schedule(self, schedule_id: str) -> None:
        schedule = await self.get_schedule(schedule_id)
        await self._store.update_schedule_enabled(schedule_id, False)
        self.unschedule_job(schedule_id)
        logger.info(f"Disabled schedule {schedule.name!r}")
        await self._emit_changed("disabled", schedule_id)

    async def reload_schedules(self) -> int:
        """Drop every timer and re-arm from storage. Returns the number armed."""
        for schedule_id in list(self._jobs):
            self.unschedule_job(schedule_id)
        schedules = await self._store.load_schedules()
        armed = sum(1 for s in schedules if s.enabled and self.schedule_job(s) is not None)
        logger.info(f"Reloaded schedules ({armed}/{len(schedules)} armed)")
        await self._emit_changed("reloaded", None)
        return armed

    # ── Runs ─────────────────────────────────────────────────────────────────

    async def run_schedule(self, schedule_id: str) -> str:
        """Run a saved schedule now. Raises ScheduleBusyError if it is running."""
        schedule = await self.get_schedule(schedule_id)
        return await self._tracker.start(schedule, manual=True)

    async def run_schedule_direct(self, schedule: Schedule) -> str:
        """Run a schedule definition that need not be saved (test run)."""
        schedule.validate()
        return await self._tracker.start(schedule, manual=True)

    async def cancel_execution(self, run_id: str) -> bool:
        return await self._tracker.cancel(run_id)

    async def get_next_run_time(self, schedule_id: str) -> datetime | None:
        job = self._jobs.get(schedule_id)
        if job is not None:
            return job.next_run_at
        schedule = await self.get_schedule(schedule_id)
        if not schedule.enabled:
            return None
        return next_run_time(schedule.cron, schedule.timezone)

    async def get_run_history(
        self, schedule_id: str | None = None, limit: int | None = None
    ) -> list[RunRecord]:
        return await self._store.get_run_history(schedule_id, limit)

    async def clear_run_history(self) -> None:
        await self._store.clear_run_history()
        logger.info("Cleared run history")

    # ── Events ───────────────────────────────────────────────────────────────

    async def _emit_changed(self, action: str, schedule_id: str | None) -> None:
        await self._emit(EventType.SCHEDULES_CHANGED, {"action": action, "schedule_id": schedule_id})

    async def _emit(self, event_type: str, data: dict[str, Any]) -> None:
        if self._bus is None:
            return
        await self._bus.emit(Event(type=event_type, source="scheduler", data=data))
