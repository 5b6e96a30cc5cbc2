"""Process-local StorageProvider. Nothing survives the process."""

from __future__ import annotations

from agentcron.store.base import StorageProvider


class InMemoryStorage(StorageProvider):
    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def get(self, key: str) -> bytes | None:
        return self._blobs.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._blobs[key] = bytes(value)

    async def delete(self, key: str) -> bool:
        return self._blobs.pop(key, None) is not None

    async def close(self) -> None:
        self._blobs.clear()
