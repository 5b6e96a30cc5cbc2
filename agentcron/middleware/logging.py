"""
Daemon logging.

    setup_logging()  rich console + agentcron_YYYYMMDD.log under the log dir
    EventLogger      bus middleware appending each event to
                     events_YYYYMMDD.jsonl beside the log file

The jsonl file is the audit trail for unattended runs: every
run:started/success/failure/skipped/cancelled with its run id and
schedule, one object per line.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path

import aiofiles
from rich.logging import RichHandler

from agentcron.core.bus import MiddlewareNext
from agentcron.core.events import Event

DEFAULT_LOG_DIR = Path("~/.agentcron/logs")
FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s | %(message)s"


def _today() -> str:
    return datetime.now().strftime("%Y%m%d")


def setup_logging(
    log_dir: Path | None = None,
    console_level: int = logging.WARNING,
    file_level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Route the `agentcron` logger tree to the console and a dated file.
    Safe to call again: previous handlers are closed and replaced.
    """
    directory = (log_dir or DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("agentcron")
    root.setLevel(min(console_level, file_level))
    while root.handlers:
        stale = root.handlers[0]
        root.removeHandler(stale)
        stale.close()

    console = RichHandler(level=console_level, show_path=False, markup=False, rich_tracebacks=True)
    root.addHandler(console)

    log_file = directory / f"agentcron_{_today()}.log"
    to_file = logging.FileHandler(log_file, encoding="utf-8")
    to_file.setLevel(file_level)
    to_file.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(to_file)

    root.debug(f"Writing log to {log_file}")
    return root


class EventLogger:
    """
    Appends bus events to a JSON-lines file.

        bus.use(EventLogger(config.get_log_dir()).middleware)

    Payload values that JSON cannot represent are written as their str().
    A failed write is logged and the event still reaches subscribers.
    """

    def __init__(self, log_dir: Path | None = None, log_events: bool = True) -> None:
        self._dir = (log_dir or DEFAULT_LOG_DIR).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._enabled = log_events
        self._write_lock = asyncio.Lock()
        self._log = logging.getLogger("agentcron.events")

    @property
    def events_file(self) -> Path:
        return self._dir / f"events_{_today()}.jsonl"

    async def middleware(self, event: Event, next_handler: MiddlewareNext) -> Event:
        self._log.debug(f"{event.type} from {event.source or '-'} ({', '.join(event.data) or 'no data'})")
        if self._enabled:
            await self._append(event)
        return await next_handler(event)

    async def _append(self, event: Event) -> None:
        line = json.dumps(
            {
                "timestamp": datetime.fromtimestamp(event.timestamp).isoformat(),
                "id": event.id,
                "parent_id": event.parent_id,
                "type": event.type,
                "source": event.source,
                "data": event.data,
            },
            default=str,
            ensure_ascii=False,
        )
        try:
            async with self._write_lock:
                async with aiofiles.open(self.events_file, mode="a", encoding="utf-8") as f:
                    await f.write(line + "\n")
        except OSError as e:
            self._log.warning(f"Event log write failed ({self.events_file}): {e}")
