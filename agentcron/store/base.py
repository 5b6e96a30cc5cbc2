"""
Key-value area behind ScheduleStore.

Holds the workspace-local half of scheduler state (enable/disable
overrides, last-run snapshots, run history) as opaque byte blobs under
"agentcron/..." keys. The shared schedules document is a JSON file and
never goes through here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class StorageProvider(ABC):
    """
    Async byte store. Callers own serialization.

        SQLiteStorage    .agentcron/state.db, the default
        InMemoryStorage  tests and `agentcron test`
    """

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Stored bytes for `key`, or None."""
        ...

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove `key`; False when there was nothing to remove."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
