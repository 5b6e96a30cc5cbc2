"""
Event bus — how the scheduler core talks to its observers.

The engine and the execution tracker publish `schedule:*`, `run:*` and
`system:*` events; the daemon console, the event log and any UI
subscribe. Every emit first walks the middleware list (registration
order), then fans out to matching subscribers concurrently.

Subscriber failures are logged, never re-raised: a broken toast must
not fail a run or stop a reschedule.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from typing import Awaitable, Callable

from agentcron.core.events import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]
MiddlewareNext = Callable[[Event], Awaitable[Event]]
MiddlewareFunc = Callable[[Event, MiddlewareNext], Awaitable[Event]]


def _bind(stage: MiddlewareFunc, forward: MiddlewareNext) -> MiddlewareNext:
    async def bound(event: Event) -> Event:
        return await stage(event, forward)

    return bound


class EventBus:
    """
    Topic-based pub/sub with a middleware pipeline.

    Topics are exact event types ("run:success"), prefix patterns
    ("run:*") or the catch-all "*".

        bus.on("schedule:changed", refresh_tree)
        bus.on("run:*", show_toast)
        bus.use(event_logger.middleware)
        await bus.emit(Event(type="run:started", data={...}))
    """

    def __init__(self) -> None:
        self._topics: dict[str, list[EventHandler]] = {}
        self._pipeline: list[MiddlewareFunc] = []

    # ━━━ Subscription ━━━

    def on(self, topic: str, handler: EventHandler) -> None:
        self._topics.setdefault(topic, []).append(handler)

    def off(self, topic: str, handler: EventHandler) -> None:
        """Drop `handler` from `topic`. Unknown pairs are ignored."""
        handlers = self._topics.get(topic)
        if not handlers:
            return
        kept = [h for h in handlers if h is not handler]
        if kept:
            self._topics[topic] = kept
        else:
            self._topics.pop(topic)

    @property
    def subscriber_count(self) -> int:
        return sum(len(handlers) for handlers in self._topics.values())

    # ━━━ Middleware ━━━

    def use(self, middleware: MiddlewareFunc) -> None:
        """
        Append a middleware stage. A stage receives the event and the rest
        of the pipeline and must return what the rest returns:

            async def stamp(event, forward):
                event.metadata["host"] = HOSTNAME
                return await forward(event)
        """
        self._pipeline.append(middleware)

    # ━━━ Emission ━━━

    async def emit(self, event: Event) -> Event:
        """Run `event` through the pipeline and deliver it. Returns the event."""
        forward: MiddlewareNext = self._deliver
        for stage in reversed(self._pipeline):
            forward = _bind(stage, forward)
        return await forward(event)

    async def _deliver(self, event: Event) -> Event:
        handlers = self._matching(event.type)
        if not handlers:
            return event
        outcomes = await asyncio.gather(
            *(handler(event) for handler in handlers),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                logger.error(
                    f"Subscriber failed on {event.type}: {outcome}",
                    exc_info=outcome,
                )
        return event

    def _matching(self, event_type: str) -> list[EventHandler]:
        matched: list[EventHandler] = []
        for topic, handlers in self._topics.items():
            if topic in ("*", event_type) or (
                "*" in topic and fnmatch.fnmatchcase(event_type, topic)
            ):
                matched.extend(handlers)
        return matched
