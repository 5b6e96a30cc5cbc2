"""
agentcron — run AI agent prompts and commands on cron schedules.

Public API:
    from agentcron import SchedulerEngine, ExecutionTracker, ScheduleStore, Schedule
"""

__version__ = "0.1.0"

# Core
from agentcron.core.bus import EventBus
from agentcron.core.config import AgentCronConfig
from agentcron.core.events import Event, EventType

# Scheduler
from agentcron.scheduler.engine import SchedulerEngine
from agentcron.scheduler.models import Command, Constraints, RunRecord, RunStatus, Schedule
from agentcron.scheduler.store import ScheduleStore
from agentcron.scheduler.tracker import ExecutionTracker

# Agent
from agentcron.agent.runner import AgentRequest, AgentResult, AgentRunner

__all__ = [
    # Core
    "EventBus",
    "AgentCronConfig",
    "Event",
    "EventType",
    # Scheduler
    "SchedulerEngine",
    "ExecutionTracker",
    "ScheduleStore",
    "Schedule",
    "Command",
    "Constraints",
    "RunRecord",
    "RunStatus",
    # Agent
    "AgentRunner",
    "AgentRequest",
    "AgentResult",
]
