"""
agentcron events — types and constants.

The scheduler and the execution tracker announce everything observers
care about (UI refresh, notifications, logs) as events on the bus.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
import time
import uuid


class EventType:
    """Topic names, "category:action". Subscribe to "run:*" for every run outcome."""

    # Scheduler lifecycle
    SYSTEM_START = "system:start"
    SYSTEM_STOP = "system:stop"

    # Structural change to the schedule set (add/update/remove/enable/disable/reload)
    SCHEDULES_CHANGED = "schedule:changed"

    # Run lifecycle
    RUN_STARTED = "run:started"
    RUN_SUCCESS = "run:success"
    RUN_FAILURE = "run:failure"
    RUN_SKIPPED = "run:skipped"
    RUN_CANCELLED = "run:cancelled"

    ALL = "*"


@dataclass(slots=True)
class Event:
    """
    One notification on the bus.

    `source` names the emitter ("scheduler" or "schedule:<name>"). Terminal
    run events carry the id of their run:started event in `parent_id`.
    Middleware may annotate `metadata`; `data` is the payload.
    """

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)
    parent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def child(self, event_type: str, data: dict[str, Any] | None = None) -> Event:
        """Follow-up event in the same causal chain, from the same source."""
        return Event(
            type=event_type,
            data=data or {},
            source=self.source,
            parent_id=self.id,
        )
