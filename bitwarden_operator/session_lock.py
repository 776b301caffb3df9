"""
Shared/exclusive lock for the Bitwarden session state.

Item fetches only read the session token and may run in shared mode.
Unlock and sync replace or refresh the session and need exclusive mode.
Exclusive waiters block new shared holders so a sync is never starved by a
steady stream of fetches.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class SessionLock:
    """asyncio reader/writer lock with writer preference."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @property
    def locked(self) -> bool:
        """True while any holder (shared or exclusive) is active."""
        return self._writer or self._readers > 0

    @asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(
                lambda: not self._writer and self._writers_waiting == 0
            )
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(
                    lambda: not self._writer and self._readers == 0
                )
            finally:
                self._writers_waiting -= 1
                # a cancelled writer must release readers queued behind it
                self._cond.notify_all()
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()
