"""
ExecutionTracker — owns in-flight runs and writes their outcomes.

Per run:

    start() ──busy?──► skipped record (timer/sweep) or ScheduleBusyError (manual)
       │
       ▼ register RunningExecution, launch task, return run_id
    _run():  run:started ─► AgentRunner.execute() ─► constraint checks
       │
       ▼ _finalize(): one terminal RunRecord, last-run override,
                      release the single-flight slot, run:success / run:failure

Single-flight: at most one non-cancelled RunningExecution per schedule
id. The busy check and the registration in start() happen with no
await in between, so two triggers racing for the same due instant can
never both get through.

Each run is written to history exactly once, at terminal time. The
in-flight state lives only in memory (`running`).

There is no preemptive timeout: maxRuntimeSeconds is checked after
the runner returns. A runner that never returns keeps its schedule
busy until cancel() is called.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from agentcron.agent.runner import (
    AgentRequest,
    AgentResult,
    AgentRunner,
    build_command_prompt,
    substitute_variables,
)
from agentcron.core.errors import CommandNotFoundError, ScheduleBusyError
from agentcron.core.events import Event, EventType
from agentcron.scheduler.models import (
    Command,
    Constraints,
    OutputType,
    RunningExecution,
    RunRecord,
    RunStatus,
    Schedule,
    TargetType,
    iso_now,
    new_run_id,
)
from agentcron.scheduler.store import ScheduleStore

if TYPE_CHECKING:
    from agentcron.commands.registry import CommandRegistry
    from agentcron.core.bus import EventBus

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Execution cancelled by user"
CANCELLED = "Execution cancelled"


class ExecutionTracker:
    """
    Usage:
        tracker = ExecutionTracker(store, runner, commands=registry, bus=bus)

        run_id = await tracker.start(schedule, manual=True)
        record = await tracker.wait(run_id)
        assert record.is_terminal
    """

    def __init__(
        self,
        store: ScheduleStore,
        runner: AgentRunner,
        commands: "CommandRegistry | None" = None,
        bus: "EventBus | None" = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._commands = commands
        self._bus = bus
        self._running: dict[str, RunningExecution] = {}  # run_id -> execution
        self._started: dict[str, Event] = {}  # run_id -> run:started, parent of the terminal event

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def running(self) -> list[RunningExecution]:
        """Snapshot of in-flight executions."""
        return list(self._running.values())

    def _active_for(self, schedule_id: str) -> RunningExecution | None:
        for execution in self._running.values():
            if execution.schedule.id == schedule_id and not execution.cancelled:
                return execution
        return None

    def is_running(self, schedule_id: str) -> bool:
        return self._active_for(schedule_id) is not None

    def get_status(self, run_id: str) -> dict[str, Any]:
        execution = self._running.get(run_id)
        if execution is None:
            return {"running": False}
        return {"running": not execution.cancelled, "scheduleId": execution.schedule.id}

    # ── Start ────────────────────────────────────────────────────────────────

    async def start(self, schedule: Schedule, manual: bool = False) -> str | None:
        """
        Begin a run of `schedule` and return its run id.

        Busy schedule: raises ScheduleBusyError when `manual`, otherwise
        records a skipped run and returns None. An unresolvable command
        reference records a failed run and raises CommandNotFoundError.
        """
        active = self._active_for(schedule.id)
        if active is not None:
            if manual:
                raise ScheduleBusyError(schedule.id, schedule.name)
            logger.info(
                f"Schedule {schedule.name!r} is already running ({active.run_id}), skipping"
            )
            await self._record_skip(schedule, active)
            return None

        command: Command | None = None
        if schedule.target_type is TargetType.COMMAND:
            command = self._resolve_command(schedule)
            if command is None:
                ref = schedule.command_ref
                error = CommandNotFoundError(
                    ref.file_path if ref else "", ref.command_id if ref else ""
                )
                await self._record_unstartable(schedule, error.message)
                raise error

        record = self._new_record(schedule, command)
        execution = RunningExecution(
            run_id=new_run_id(),
            schedule=schedule,
            record=record,
            command=command,
        )
        self._running[execution.run_id] = execution
        execution.task = asyncio.create_task(
            self._run(execution), name=f"agentcron:{execution.run_id}"
        )
        logger.info(
            f"Started run {execution.run_id} for {schedule.name!r} "
            f"({schedule.target_type.value}, {schedule.execution_mode.value})"
        )
        return execution.run_id

    def _resolve_command(self, schedule: Schedule) -> Command | None:
        ref = schedule.command_ref
        if ref is None or self._commands is None:
            return None
        return self._commands.get(ref.file_path, ref.command_id)

    def _new_record(self, schedule: Schedule, command: Command | None = None) -> RunRecord:
        command_id = command.id if command else (
            schedule.command_ref.command_id if schedule.command_ref else None
        )
        output = schedule.output_config
        return RunRecord(
            schedule_id=schedule.id,
            schedule_name=schedule.name,
            target_type=schedule.target_type,
            started_at=iso_now(),
            command_id=command_id,
            prompt_hash=schedule.effective_prompt_hash,
            output_location=output.location if output.type is not OutputType.NONE else None,
        )

    # ── Run ──────────────────────────────────────────────────────────────────

    async def _run(self, execution: RunningExecution) -> None:
        schedule = execution.schedule
        try:
            await self._emit(EventType.RUN_STARTED, execution, {
                "message": f'Starting execution: "{schedule.name}" ({schedule.target_label})',
            })
            if execution.cancelled:
                self._started.pop(execution.run_id, None)
                return
            request = self._build_request(execution)
            result = await self._runner.execute(request)
            await self._complete(execution, result)
        except asyncio.CancelledError:
            await self._finalize(execution, RunStatus.FAILURE, error=CANCELLED)
            self._started.pop(execution.run_id, None)
            raise
        except Exception as e:
            logger.error(f"Run {execution.run_id} for {schedule.name!r} failed: {e}", exc_info=True)
            await self._finalize(
                execution, RunStatus.FAILURE, error=str(e) or type(e).__name__
            )

    def _build_request(self, execution: RunningExecution) -> AgentRequest:
        schedule = execution.schedule
        if execution.command is not None:
            prompt = build_command_prompt(execution.command)
        elif schedule.prompt_template:
            prompt = substitute_variables(schedule.prompt_template)
        else:
            raise ValueError("No prompt or command provided")
        return AgentRequest(schedule=schedule, prompt=prompt, command=execution.command)

    def effective_constraints(self, execution: RunningExecution) -> Constraints:
        own = execution.schedule.constraints or Constraints()
        return own.merged_over(execution.command.constraints if execution.command else None)

    async def _complete(self, execution: RunningExecution, result: AgentResult) -> None:
        """Apply constraint checks to the runner's result and finalize."""
        elapsed = execution.elapsed()
        limits = self.effective_constraints(execution)
        files = result.files_changed

        max_runtime = limits.max_runtime_seconds
        max_files = limits.max_files_changed

        if max_runtime is not None and elapsed > max_runtime:
            await self._finalize(
                execution,
                RunStatus.FAILURE,
                summary=result.output or None,
                files_changed=files,
                error=f"Execution exceeded max runtime of {max_runtime:g}s",
                elapsed=elapsed,
            )
        elif max_files is not None and files is not None and files > max_files:
            await self._finalize(
                execution,
                RunStatus.FAILURE,
                summary=result.output or None,
                files_changed=files,
                error=f"Execution changed {files} files, exceeding the limit of {max_files}",
                elapsed=elapsed,
            )
        elif result.success:
            await self._finalize(
                execution,
                RunStatus.SUCCESS,
                summary=result.output or "Execution completed",
                files_changed=files,
                error=result.error,
                elapsed=elapsed,
            )
        else:
            await self._finalize(
                execution,
                RunStatus.FAILURE,
                summary=result.output or result.error,
                files_changed=files,
                error=result.error or "Agent reported failure",
                elapsed=elapsed,
            )

    # ── Terminal handling ────────────────────────────────────────────────────

    async def _finalize(
        self,
        execution: RunningExecution,
        status: RunStatus,
        *,
        summary: str | None = None,
        error: str | None = None,
        files_changed: int | None = None,
        elapsed: float | None = None,
        event_type: str | None = None,
    ) -> None:
        """Write the single terminal record for a run and release its slot."""
        if execution.finalized:
            self._started.pop(execution.run_id, None)
            return
        execution.finalized = True

        record = execution.record
        record.status = status
        record.finished_at = iso_now()
        record.execution_time = round(elapsed if elapsed is not None else execution.elapsed(), 3)
        record.summary = summary
        record.error = error
        record.files_changed = files_changed

        try:
            await self._persist(record)
        finally:
            self._running.pop(execution.run_id, None)

        if status is RunStatus.SUCCESS:
            logger.info(
                f"Run {execution.run_id} for {execution.schedule.name!r} succeeded "
                f"in {record.execution_time}s"
            )
            message = f'Schedule "{execution.schedule.name}" completed successfully'
        else:
            logger.warning(
                f"Run {execution.run_id} for {execution.schedule.name!r} failed: {error}"
            )
            message = f'Schedule "{execution.schedule.name}" failed: {error}'

        default_type = EventType.RUN_SUCCESS if status is RunStatus.SUCCESS else EventType.RUN_FAILURE
        await self._emit(event_type or default_type, execution, {
            "status": status.value,
            "message": message,
            "error": error,
            "execution_time": record.execution_time,
            "files_changed": files_changed,
        })

    async def _persist(self, record: RunRecord) -> None:
        """Append to history and refresh the last-run override. Logged, never raised."""
        try:
            await self._store.save_run_record(record)
            await self._store.update_last_run(
                record.schedule_id, record.status.value, record.finished_at
            )
        except Exception as e:
            logger.error(f"Failed to persist run record for {record.schedule_name!r}: {e}")

    async def _record_skip(self, schedule: Schedule, active: RunningExecution) -> None:
        record = self._new_record(schedule)
        record.status = RunStatus.SKIPPED
        record.finished_at = record.started_at
        record.execution_time = 0.0
        record.summary = f"Skipped: run {active.run_id} still in progress"
        await self._persist(record)
        if self._bus is not None:
            await self._bus.emit(Event(
                type=EventType.RUN_SKIPPED,
                source=f"schedule:{schedule.name}",
                data={
                    "schedule_id": schedule.id,
                    "schedule_name": schedule.name,
                    "active_run_id": active.run_id,
                    "message": record.summary,
                },
            ))

    async def _record_unstartable(self, schedule: Schedule, error: str) -> None:
        record = self._new_record(schedule)
        record.status = RunStatus.FAILURE
        record.finished_at = record.started_at
        record.execution_time = 0.0
        record.error = error
        await self._persist(record)

    # ── Cancellation & shutdown ──────────────────────────────────────────────

    async def cancel(self, run_id: str) -> bool:
        """
        Cancel an in-flight run. The single-flight slot is released at
        once and the run is recorded as a failure; a result arriving
        later is discarded.
        """
        execution = self._running.get(run_id)
        if execution is None or execution.cancelled:
            return False

        execution.cancelled = True
        self._running.pop(run_id, None)
        await self._finalize(
            execution,
            RunStatus.FAILURE,
            error=CANCELLED_BY_USER,
            event_type=EventType.RUN_CANCELLED,
        )
        if execution.task is not None and not execution.task.done():
            execution.task.cancel()
        logger.info(f"Cancelled run {run_id} for {execution.schedule.name!r}")
        return True

    async def wait(self, run_id: str) -> RunRecord | None:
        """Wait for a run to reach its terminal state and return its record."""
        execution = self._running.get(run_id)
        if execution is None or execution.task is None:
            return None
        await asyncio.wait({execution.task})
        await self._settle(execution)
        return execution.record

    async def shutdown(self) -> None:
        """Cancel every in-flight run; each is recorded as a failure."""
        executions = list(self._running.values())
        tasks = [e.task for e in executions if e.task is not None and not e.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for execution in executions:
            await self._settle(execution)

    async def _settle(self, execution: RunningExecution) -> None:
        # A task cancelled before its first step never enters _run.
        if not execution.finalized:
            await self._finalize(execution, RunStatus.FAILURE, error=CANCELLED)

    # ── Events ───────────────────────────────────────────────────────────────

    async def _emit(self, event_type: str, execution: RunningExecution, data: dict[str, Any]) -> None:
        if self._bus is None:
            return
        payload = {
            "run_id": execution.run_id,
            "schedule_id": execution.schedule.id,
            "schedule_name": execution.schedule.name,
            **data,
        }
        started = self._started.pop(execution.run_id, None)
        if started is not None:
            event = started.child(event_type, payload)
        else:
            event = Event(
                type=event_type,
                source=f"schedule:{execution.schedule.name}",
                data=payload,
            )
        if event_type == EventType.RUN_STARTED:
            self._started[execution.run_id] = event
        await self._bus.emit(event)
