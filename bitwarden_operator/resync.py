"""
Background vault resync.

Runs ``bw sync`` on a fixed cadence, independent of any reconciliation.
When the session has been flagged for relogin it first runs ``bw unlock``
to obtain a new token; this is the only place recovery happens, item
fetches never re-authenticate on their own.
"""
import asyncio
import logging
from typing import Optional

from bitwarden_operator.bitwarden_cli import BitwardenCliClient, BitwardenError

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 60.0


class BackgroundResync:
    """Periodic sync task sharing the operator's Bitwarden session."""

    def __init__(
        self,
        session: BitwardenCliClient,
        interval: float = DEFAULT_SYNC_INTERVAL,
        relogin: bool = True,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.session = session
        self.interval = interval
        self.relogin = relogin
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> bool:
        """
        One resync step. Errors are logged, never raised.

        Returns:
            True if the step completed without a vault error.
        """
        try:
            if self.relogin and self.session.needs_relogin:
                logger.warning("Bitwarden session flagged for relogin, unlocking again")
                await self.session.unlock()
            await self.session.sync()
            return True
        except BitwardenError as e:
            logger.warning("Background resync failed: %s", e)
            return False
        except Exception as e:
            logger.exception("Unexpected background resync error: %s", e)
            return False

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
