"""MeetingSyncWorker -- converges provider meetings with the stored desire.

Each poll runs in one transaction:

1. Dequeue one unit (row lock held by the transaction).
2. Dispatch on the unit's action: create (allocating a pool host first when
   a host pool is configured), update, or delete.
3. Record the outcome and commit.

Non-retryable provider errors are recorded on the sync target and committed,
so the unit leaves the queue. Retryable provider errors, host exhaustion and
store failures roll back; the lock is released and the unit is dequeued again
after the worker's pause.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Iterable, Mapping
from typing import TYPE_CHECKING

import structlog

from src.meetsync.core.monitoring import meeting_sync_total, track_provider_call
from src.meetsync.meetings.hosts import HostAllocator, normalize_host_pool, window_is_valid
from src.meetsync.meetings.providers.base import (
    MeetingProviderError,
    MeetingsProvider,
    ProviderMeetingNotFoundError,
    ProviderNotConfiguredError,
)
from src.meetsync.meetings.schemas import MeetingProvider, SyncUnit
from src.meetsync.meetings.state import SyncAction
from src.meetsync.meetings.sync.loop import PollingWorker

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.meetsync.meetings.repository import MeetingSyncRepository

logger = structlog.get_logger(__name__)

DEFAULT_PAUSE_SECONDS = 30.0


class HostUnavailableError(Exception):
    """Every pool host is at its simultaneous meeting cap for the window."""

    retryable = True
    retry_after: float | None = None


class MeetingSyncWorker(PollingWorker):
    """Processes sync units one transaction at a time.

    Args:
        repository: MeetingSyncRepository for dequeue and outcome recording.
        providers: Configured providers keyed by MeetingProvider.
        session_factory: Async callable that yields AsyncSession instances.
        host_pool: Provider user ids new meetings may be assigned to. Empty
            means meetings are created under the provider's default user.
        max_meetings_per_host: Simultaneous meeting cap per pool host.
        name: Worker name used in log lines.
        pause_on_error: Seconds to wait after a failed poll.
        pause_on_none: Seconds to wait when the queue is empty.
    """

    def __init__(
        self,
        repository: MeetingSyncRepository,
        providers: Mapping[MeetingProvider, MeetingsProvider],
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        host_pool: Iterable[str] = (),
        max_meetings_per_host: int = 1,
        name: str = "meeting-sync",
        pause_on_error: float = DEFAULT_PAUSE_SECONDS,
        pause_on_none: float = DEFAULT_PAUSE_SECONDS,
    ) -> None:
        super().__init__(name, pause_on_error, pause_on_none)
        self._repository = repository
        self._providers = dict(providers)
        self._session_factory = session_factory
        self._host_pool = normalize_host_pool(host_pool)
        self._max_meetings_per_host = max_meetings_per_host
        self._host_allocator = HostAllocator(repository)

    async def poll_once(self) -> bool:
        return await self.sync_meeting()

    # ── Transaction ──────────────────────────────────────────────────────

    async def sync_meeting(self) -> bool:
        """Dequeue and process one unit of work.

        Returns:
            True if a unit was processed (successfully or with a recorded
            error), False if the queue was empty.

        Raises:
            MeetingProviderError: Retryable provider failure (rolled back).
            HostUnavailableError: No pool host is free (rolled back).
            SyncTargetNotFoundError: The unit's owner vanished (rolled back).
        """
        async for session in self._session_factory():
            try:
                unit = await self._repository.get_meeting_out_of_sync(session)
                if unit is None:
                    await session.rollback()
                    return False

                outcome = await self._sync_unit(session, unit)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

            meeting_sync_total.labels(action=unit.sync_action.value, outcome=outcome).inc()
            return True

        return False

    async def _sync_unit(self, session: AsyncSession, unit: SyncUnit) -> str:
        """Run the provider call for a unit and record what happened.

        Returns:
            "synced" or "error" (non-retryable failure recorded on the target).
        """
        action = unit.sync_action
        try:
            provider = self._provider_for(unit)
            if action is SyncAction.CREATE:
                await self._create_meeting(session, unit, provider)
            elif action is SyncAction.UPDATE:
                await self._update_meeting(session, unit, provider)
            else:
                await self._delete_meeting(session, unit, provider)
        except MeetingProviderError as exc:
            if exc.retryable:
                meeting_sync_total.labels(action=action.value, outcome="retry").inc()
                logger.warning(
                    "meeting_sync.retryable_error",
                    error=str(exc),
                    retry_after=exc.retry_after,
                    **unit.log_context(),
                )
                raise
            logger.warning("meeting_sync.failed", error=str(exc), **unit.log_context())
            await self._repository.record_meeting_error(session, unit, str(exc))
            return "error"

        logger.info("meeting_sync.synced", **unit.log_context())
        return "synced"

    def _provider_for(self, unit: SyncUnit) -> MeetingsProvider:
        provider = self._providers.get(unit.provider)
        if provider is None:
            raise ProviderNotConfiguredError(
                f"meetings provider not configured: {unit.provider.value}"
            )
        return provider

    # ── Actions ──────────────────────────────────────────────────────────

    async def _create_meeting(
        self, session: AsyncSession, unit: SyncUnit, provider: MeetingsProvider
    ) -> None:
        host_user_id = await self._allocate_host(session, unit)

        async with track_provider_call(provider.provider.value, "create_meeting"):
            provider_meeting = await provider.create_meeting(unit, host_user_id)

        await self._repository.record_meeting_created(
            session, unit, provider_meeting, host_user_id=host_user_id
        )

    async def _allocate_host(self, session: AsyncSession, unit: SyncUnit) -> str | None:
        """Pick a pool host for a new meeting, or None to use the default user.

        Units without a valid window skip allocation; the provider rejects
        them with a non-retryable error.

        Raises:
            HostUnavailableError: If every pool host is at its cap.
        """
        if not self._host_pool:
            return None
        if not window_is_valid(self._max_meetings_per_host, unit.starts_at, unit.ends_at):
            return None

        host = await self._host_allocator.allocate(
            session,
            self._host_pool,
            self._max_meetings_per_host,
            unit.starts_at,
            unit.ends_at,
        )
        if host is None:
            raise HostUnavailableError(
                f"no host available for meeting starting at {unit.starts_at.isoformat()}"
            )
        return host

    async def _update_meeting(
        self, session: AsyncSession, unit: SyncUnit, provider: MeetingsProvider
    ) -> None:
        async with track_provider_call(provider.provider.value, "update_meeting"):
            provider_meeting = await provider.update_meeting(unit.provider_meeting_id, unit)

        await self._repository.record_meeting_updated(session, unit, provider_meeting)

    async def _delete_meeting(
        self, session: AsyncSession, unit: SyncUnit, provider: MeetingsProvider
    ) -> None:
        if unit.provider_meeting_id is not None:
            try:
                async with track_provider_call(provider.provider.value, "delete_meeting"):
                    await provider.delete_meeting(unit.provider_meeting_id)
            except ProviderMeetingNotFoundError:
                logger.info("meeting_sync.already_deleted", **unit.log_context())

        await self._repository.record_meeting_deleted(session, unit)
