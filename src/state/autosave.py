from __future__ import annotations

import asyncio
import atexit
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

if TYPE_CHECKING:
    from .store import StateStore


logger = logging.getLogger(__name__)


class AutoSaver:
    """
    Periodic whole-state persistence plus a synchronous flush at interpreter exit.

    - `start()` must be called from a running event loop; it schedules a task
      that calls `store.persist_state()` every `interval` seconds.
    - The exit hook writes through `store.flush_sync()`, which does not need
      the event loop, so updates made since the last tick are not lost.
    """

    def __init__(
        self,
        store: "StateStore",
        *,
        interval: float = 30.0,
        register_atexit: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._store = store
        self._interval = interval
        self._register_atexit = register_atexit
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._atexit_registered = False
        self.saves = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        if self._register_atexit and not self._atexit_registered:
            atexit.register(self.flush_at_exit)
            self._atexit_registered = True
        logger.debug("Auto-save started (every %.1fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._atexit_registered:
            atexit.unregister(self.flush_at_exit)
            self._atexit_registered = False

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            try:
                await self._store.persist_state()
                self.saves += 1
            except Exception:
                logger.exception("Auto-save failed")

    def flush_at_exit(self) -> None:
        try:
            written = self._store.flush_sync()
        except Exception:
            logger.exception("Failed to save state on exit")
            return
        logger.debug("Saved %d key(s) on exit", written)


__all__ = ["AutoSaver"]
