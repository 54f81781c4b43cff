from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from .metrics import dedup_joins_total

log = structlog.get_logger()

T = TypeVar("T")


@dataclass
class _Pending:
    task: asyncio.Task[Any]
    waiters: int = 0


class RequestDeduplicator:
    """
    Concurrent calls sharing a key resolve to one in-flight task.

    The map entry is dropped by the task itself just before it settles, so a
    settled task is never handed out and the next call after settlement runs
    afresh. When every waiter is cancelled the shared task is cancelled too.

    Not thread-safe: relies on single-threaded asyncio scheduling.
    """

    def __init__(self) -> None:
        self._pending: dict[str, _Pending] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def in_flight(self, key: str) -> bool:
        return key in self._pending

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        entry = self._pending.get(key)
        if entry is not None:
            dedup_joins_total.inc()
            log.debug("dedup_join", key=key)
        else:
            entry = _Pending(task=asyncio.get_running_loop().create_task(self._execute(key, fn)))
            self._pending[key] = entry
        return await self._wait(key, entry)

    async def _execute(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            current = self._pending.get(key)
            if current is not None and current.task is asyncio.current_task():
                del self._pending[key]

    async def _wait(self, key: str, entry: _Pending) -> Any:
        entry.waiters += 1
        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if entry.waiters == 1 and not entry.task.done():
                entry.task.cancel()
                # A task cancelled before its first step never reaches its own cleanup.
                if self._pending.get(key) is entry:
                    del self._pending[key]
                log.debug("dedup_abandoned", key=key)
            raise
        finally:
            entry.waiters -= 1

    def reset(self) -> None:
        for entry in self._pending.values():
            if not entry.task.done():
                entry.task.cancel()
        self._pending.clear()
