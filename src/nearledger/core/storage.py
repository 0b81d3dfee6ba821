"""
Async key-value storage for the signed-in account.

Hosts can supply any object with these coroutine methods. ``set_many`` must
apply all values or none, so sign-in can persist account and derivation path
in a single write.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStorage(Protocol):
    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def set_many(self, items: Dict[str, str]) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


class MemoryStorage:
    """Process-local storage, mostly for tests and embedding."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def set_many(self, items: Dict[str, str]) -> None:
        self.data.update(items)

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


def _atomic_write_json(path: Path, payload: Dict[str, str]) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class JsonFileStorage:
    """
    Storage backed by one JSON object on disk.

    Every mutation rewrites the file through a temp file and ``os.replace``.
    File I/O runs in a worker thread.
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            logger.warning(
                "Ignoring unreadable storage file %s: %s",
                self.path,
                exc,
                extra={"event": "storage.corrupt", "path": str(self.path)},
            )
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write_json(self.path, data)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            return data.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.set_many({key: value})

    async def set_many(self, items: Dict[str, str]) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data.update(items)
            await asyncio.to_thread(self._save, data)

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if key in data:
                del data[key]
                await asyncio.to_thread(self._save, data)
