"""Poll loop shared by the sync and auto-end workers.

A worker polls once per iteration. When the poll processed something the
loop goes again at once; when there was nothing to do it pauses for
``pause_on_none``; when the poll raised it logs the failure and pauses for
the error's ``retry_after`` (if it carries one) or ``pause_on_error``.
stop() wakes a paused worker so shutdown never waits for a full pause.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import structlog

logger = structlog.get_logger(__name__)


class PollingWorker(ABC):
    """Base class for workers that drain a queue one unit per transaction.

    Args:
        name: Worker name used in log lines.
        pause_on_error: Seconds to wait after a failed poll.
        pause_on_none: Seconds to wait after a poll that found no work.
    """

    def __init__(self, name: str, pause_on_error: float, pause_on_none: float) -> None:
        self.name = name
        self._pause_on_error = pause_on_error
        self._pause_on_none = pause_on_none
        self._stop_event = asyncio.Event()

    @abstractmethod
    async def poll_once(self) -> bool:
        """Process at most one unit; return True if a unit was processed."""

    async def run(self) -> None:
        """Poll until stop() is called. A stopped worker does not run again."""
        logger.info("worker.started", worker=self.name)

        while not self._stop_event.is_set():
            try:
                processed = await self.poll_once()
            except Exception as exc:
                logger.exception("worker.poll_error", worker=self.name, error=str(exc))
                pause = getattr(exc, "retry_after", None) or self._pause_on_error
            else:
                if processed:
                    continue
                pause = self._pause_on_none

            await self._pause(pause)

        logger.info("worker.stopped", worker=self.name)

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        """Signal the poll loop to stop."""
        self._stop_event.set()
