"""
Mock Agent Runner — for testing.

Returns configurable results without touching any agent. Tracks every
request for test assertions, and can hold runs open until released so
single-flight and cancellation behaviour can be exercised.
"""

from __future__ import annotations

import asyncio

from agentcron.agent.runner import AgentRequest, AgentResult, AgentRunner


class MockAgentRunner(AgentRunner):
    """
    Usage in tests:
        runner = MockAgentRunner()
        runner.set_result(AgentResult(success=True, output="done", files_changed=2))

        # Keep the next run "in flight" until released
        runner.hold()
        ...
        runner.release()

        assert runner.requests[0].prompt == "..."
    """

    def __init__(self, delay: float = 0.0) -> None:
        self._results: list[AgentResult | Exception] = []
        self._default = AgentResult(success=True, output="Mock run completed", files_changed=0)
        self._delay = delay
        self._gate: asyncio.Event | None = None

        self.requests: list[AgentRequest] = []
        self.started = asyncio.Event()

    @property
    def call_count(self) -> int:
        return len(self.requests)

    @property
    def last_request(self) -> AgentRequest | None:
        return self.requests[-1] if self.requests else None

    def set_result(self, result: AgentResult) -> None:
        """Queue a result for the next execute() call."""
        self._results.append(result)

    def set_error(self, error: Exception) -> None:
        """Queue an exception to be raised by the next execute() call."""
        self._results.append(error)

    def hold(self) -> None:
        """Block execute() calls until release()."""
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    async def execute(self, request: AgentRequest) -> AgentResult:
        self.requests.append(request)
        self.started.set()
        if self._gate is not None:
            await self._gate.wait()
        if self._delay:
            await asyncio.sleep(self._delay)

        outcome = self._results.pop(0) if self._results else self._default
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
