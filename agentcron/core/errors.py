"""
agentcron exception hierarchy.

Every error in the system inherits from AgentCronError.
Callers of the mutating scheduler operations catch the specific class
they care about and let the rest propagate.

Usage:
    try:
        await engine.run_schedule(schedule_id)
    except ScheduleBusyError:
        # Already running, try later
    except ScheduleNotFoundError as e:
        # Unknown id
    except AgentCronError as e:
        # Anything else
"""


class AgentCronError(Exception):
    """Base exception for all agentcron errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Configuration & Persistence ━━━


class ConfigError(AgentCronError):
    """Configuration is invalid, missing, or malformed."""

    pass


class StorageError(AgentCronError):
    """Storage backend failure — write errors, unusable database, etc."""

    pass


# ━━━ Schedule Errors ━━━


class ValidationError(AgentCronError):
    """A schedule definition is rejected before it is saved or scheduled."""

    def __init__(self, message: str, field: str = "", details: dict | None = None):
        self.field = field
        super().__init__(message, details)


class NotFoundError(AgentCronError):
    """A referenced object does not exist."""

    pass


class ScheduleNotFoundError(NotFoundError):
    """No schedule with the given id exists in storage."""

    def __init__(self, schedule_id: str, details: dict | None = None):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule not found: {schedule_id}", details)


class CommandNotFoundError(NotFoundError):
    """A schedule's command reference does not resolve to a loaded command."""

    def __init__(self, file_path: str, command_id: str, details: dict | None = None):
        self.file_path = file_path
        self.command_id = command_id
        super().__init__(f"Command not found: {command_id} in {file_path}", details)


# ━━━ Execution Errors ━━━


class ScheduleBusyError(AgentCronError):
    """The schedule already has a run in flight."""

    def __init__(self, schedule_id: str, name: str = "", details: dict | None = None):
        self.schedule_id = schedule_id
        self.name = name
        label = name or schedule_id
        super().__init__(f'Schedule "{label}" is already running', details)
