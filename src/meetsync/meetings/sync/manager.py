"""MeetingsManager -- builds the configured providers and runs the workers.

Started from the FastAPI lifespan or from scripts/run_workers.py. Starts
MEETINGS_SYNC_WORKERS sync workers and MEETINGS_AUTO_END_WORKERS auto-end
workers as asyncio tasks. With no provider configured the sync workers
still run, so units for unconfigured providers are recorded as errors
instead of piling up; the auto-end workers are not started.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from src.meetsync.meetings.providers.base import MeetingsProvider
from src.meetsync.meetings.providers.zoom import ZoomProvider
from src.meetsync.meetings.repository import MeetingSyncRepository
from src.meetsync.meetings.schemas import MeetingProvider
from src.meetsync.meetings.sync.auto_end import AutoEndWorker
from src.meetsync.meetings.sync.loop import PollingWorker
from src.meetsync.meetings.sync.worker import MeetingSyncWorker

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.meetsync.config import Settings

logger = structlog.get_logger(__name__)


def build_providers(settings: Settings) -> dict[MeetingProvider, MeetingsProvider]:
    """Instantiate every provider whose credentials are configured."""
    providers: dict[MeetingProvider, MeetingsProvider] = {}
    if settings.zoom_enabled:
        providers[MeetingProvider.ZOOM] = ZoomProvider.from_settings(settings)
    return providers


class MeetingsManager:
    """Owns the sync and auto-end worker tasks.

    Args:
        settings: Application settings (worker counts, pauses, host pool).
        session_factory: Async callable that yields AsyncSession instances.
        providers: Providers to use; built from settings when omitted.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        providers: dict[MeetingProvider, MeetingsProvider] | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._providers = build_providers(settings) if providers is None else providers
        self._repository = MeetingSyncRepository(session_factory=session_factory)
        self._workers: list[PollingWorker] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def repository(self) -> MeetingSyncRepository:
        return self._repository

    @property
    def workers(self) -> list[PollingWorker]:
        return list(self._workers)

    def build_workers(self) -> list[PollingWorker]:
        """Create (but do not start) the configured workers."""
        settings = self._settings
        workers: list[PollingWorker] = []

        for index in range(1, settings.MEETINGS_SYNC_WORKERS + 1):
            workers.append(
                MeetingSyncWorker(
                    repository=self._repository,
                    providers=self._providers,
                    session_factory=self._session_factory,
                    host_pool=settings.get_zoom_host_pool(),
                    max_meetings_per_host=settings.ZOOM_MAX_SIMULTANEOUS_MEETINGS_PER_HOST,
                    name=f"meeting-sync-{index}",
                    pause_on_error=settings.MEETINGS_SYNC_PAUSE_ON_ERROR_SECONDS,
                    pause_on_none=settings.MEETINGS_SYNC_PAUSE_ON_NONE_SECONDS,
                )
            )

        if self._providers:
            for index in range(1, settings.MEETINGS_AUTO_END_WORKERS + 1):
                workers.append(
                    AutoEndWorker(
                        repository=self._repository,
                        providers=self._providers,
                        session_factory=self._session_factory,
                        grace=timedelta(minutes=settings.MEETINGS_AUTO_END_GRACE_MINUTES),
                        name=f"meeting-auto-end-{index}",
                        pause_on_error=settings.MEETINGS_SYNC_PAUSE_ON_ERROR_SECONDS,
                        pause_on_none=settings.MEETINGS_SYNC_PAUSE_ON_NONE_SECONDS,
                    )
                )

        return workers

    def start(self) -> None:
        """Start every worker as a background task."""
        if self._tasks:
            return
        self._workers = self.build_workers()
        self._tasks = [
            asyncio.create_task(worker.run(), name=worker.name) for worker in self._workers
        ]
        logger.info(
            "meetings_manager.started",
            workers=[worker.name for worker in self._workers],
            providers=[provider.value for provider in self._providers],
        )

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop the workers, cancelling any that do not finish in ``timeout``."""
        if not self._tasks:
            return
        for worker in self._workers:
            worker.stop()

        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("meetings_manager.stopped", cancelled=len(pending))
        self._tasks = []
        self._workers = []

    async def wait(self) -> None:
        """Block until every worker task has finished."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
