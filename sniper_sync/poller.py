"""Cancellable fixed-interval refresh loops."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[], Awaitable[None]]


class PollingLoop:
    """Runs one refresh callback on a fixed interval until stopped.

    Failures are logged and counted; the loop keeps its schedule and never
    retries a failed call early. ``key`` identifies what the loop was started
    for (e.g. the set of mints) so owners can tell when to restart it.
    """

    def __init__(
        self,
        name: str,
        refresh: RefreshCallback,
        interval_seconds: float,
        fire_immediately: bool = True,
        key: Optional[Hashable] = None,
    ) -> None:
        self.name = name
        self.refresh = refresh
        self.interval_seconds = interval_seconds
        self.fire_immediately = fire_immediately
        self.key = key

        self._task: Optional[asyncio.Task[None]] = None
        self._running = False
        self._last_error: Optional[str] = None
        self._consecutive_failures = 0
        self._last_success: Optional[datetime] = None
        self._runs = 0

    @property
    def is_running(self) -> bool:
        """Check if the loop is running."""
        return self._running and self._task is not None and not self._task.done()

    def get_status(self) -> Dict[str, Any]:
        """Get loop status for diagnostics."""
        return {
            "name": self.name,
            "running": self.is_running,
            "runs": self._runs,
            "consecutive_failures": self._consecutive_failures,
            "last_error": self._last_error,
            "last_success": (
                self._last_success.isoformat() if self._last_success else None
            ),
            "interval_seconds": self.interval_seconds,
        }

    def start(self) -> None:
        """Start the background task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"poll-{self.name}")

    async def stop(self) -> None:
        """Stop the background task and wait for it to finish."""
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        # Stopped from inside its own refresh: the loop exits after this tick
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_now(self) -> None:
        """Run one refresh immediately, outside the schedule."""
        await self._tick()

    async def _tick(self) -> None:
        self._runs += 1
        try:
            await self.refresh()
            self._consecutive_failures = 0
            self._last_success = datetime.now(timezone.utc)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._consecutive_failures += 1
            self._last_error = str(e)
            logger.warning(
                f"{self.name} refresh failed (attempt {self._consecutive_failures}): {e}"
            )
            if self._consecutive_failures >= 3:
                logger.error(
                    f"{self.name} refresh has failed {self._consecutive_failures} "
                    f"consecutive times. Last error: {e}"
                )

    async def _loop(self) -> None:
        """Main polling loop."""
        if not self.fire_immediately:
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                return

        while self._running:
            try:
                await self._tick()
            except asyncio.CancelledError:
                break
            if not self._running:
                break

            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break


__all__ = ["PollingLoop", "RefreshCallback"]
