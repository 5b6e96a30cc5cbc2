"""Shared test fixtures for agentcron."""

import pytest

from agentcron.agent.mock import MockAgentRunner
from agentcron.core.bus import EventBus
from agentcron.core.config import AgentCronConfig
from agentcron.scheduler.models import Schedule
from agentcron.scheduler.store import ScheduleStore
from agentcron.scheduler.tracker import ExecutionTracker
from agentcron.store.memory import InMemoryStorage


@pytest.fixture
def config():
    """Create a default config without loading from disk."""
    return AgentCronConfig()


@pytest.fixture
def bus():
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def kv():
    """In-memory key-value area."""
    return InMemoryStorage()


@pytest.fixture
def store(tmp_path, kv):
    """Schedule store backed by a temp schedules file and in-memory overrides/history."""
    return ScheduleStore(tmp_path / ".agentcron" / "schedules.json", kv)


@pytest.fixture
def mock_runner():
    """Create a mock agent runner."""
    return MockAgentRunner()


@pytest.fixture
def tracker(store, mock_runner, bus):
    return ExecutionTracker(store, mock_runner, bus=bus)


@pytest.fixture
def prompt_schedule():
    """An enabled daily prompt schedule."""
    return Schedule(
        id="daily01",
        name="Daily summary",
        cron="0 0 * * *",
        prompt_template="Summarize changes for {date}",
    )
