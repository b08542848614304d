"""AutoEndWorker -- ends provider meetings left running past their end time.

Each poll locks one overdue, unchecked meeting, asks its provider to end it
and stamps the outcome on the row in the same transaction. A stamped meeting
is never checked again. Retryable provider failures roll back so the meeting
is retried after the worker's pause.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable, Mapping
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from src.meetsync.core.monitoring import meeting_auto_end_checks_total, track_provider_call
from src.meetsync.meetings.providers.base import (
    MeetingProviderError,
    MeetingsProvider,
    ProviderMeetingNotFoundError,
)
from src.meetsync.meetings.schemas import (
    AutoEndCandidate,
    AutoEndCheckOutcome,
    MeetingEndResult,
    MeetingProvider,
)
from src.meetsync.meetings.sync.loop import PollingWorker

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.meetsync.meetings.repository import MeetingSyncRepository

logger = structlog.get_logger(__name__)

AUTO_END_GRACE = timedelta(minutes=10)


class AutoEndWorker(PollingWorker):
    """Checks overdue meetings and ends the ones still running.

    Args:
        repository: MeetingSyncRepository for candidate selection and outcomes.
        providers: Providers that can end meetings, keyed by MeetingProvider.
        session_factory: Async callable that yields AsyncSession instances.
        grace: Time after the scheduled end before a meeting is overdue.
    """

    def __init__(
        self,
        repository: MeetingSyncRepository,
        providers: Mapping[MeetingProvider, MeetingsProvider],
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        grace: timedelta = AUTO_END_GRACE,
        name: str = "meeting-auto-end",
        pause_on_error: float = 30.0,
        pause_on_none: float = 30.0,
    ) -> None:
        super().__init__(name, pause_on_error, pause_on_none)
        self._repository = repository
        self._providers = dict(providers)
        self._session_factory = session_factory
        self._grace = grace

    async def poll_once(self) -> bool:
        return await self.check_meeting()

    async def check_meeting(self) -> bool:
        """Check one overdue meeting.

        Returns:
            True if a meeting was checked, False if none was overdue.
        """
        async for session in self._session_factory():
            try:
                candidate = await self._repository.get_meeting_for_auto_end(
                    session, list(self._providers), self._grace
                )
                if candidate is None:
                    await session.rollback()
                    return False

                outcome = await self._end_meeting(candidate)
                await self._repository.set_meeting_auto_end_check_outcome(
                    session, candidate.meeting_id, outcome
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise

            meeting_auto_end_checks_total.labels(outcome=outcome.value).inc()
            logger.info(
                "meeting_auto_end.checked",
                meeting_id=str(candidate.meeting_id),
                provider_meeting_id=candidate.provider_meeting_id,
                outcome=outcome.value,
            )
            return True

        return False

    async def _end_meeting(self, candidate: AutoEndCandidate) -> AutoEndCheckOutcome:
        provider = self._providers[candidate.provider]
        try:
            async with track_provider_call(provider.provider.value, "end_meeting"):
                result = await provider.end_meeting(candidate.provider_meeting_id)
        except ProviderMeetingNotFoundError:
            return AutoEndCheckOutcome.NOT_FOUND
        except MeetingProviderError as exc:
            if exc.retryable:
                raise
            logger.warning(
                "meeting_auto_end.failed",
                meeting_id=str(candidate.meeting_id),
                error=str(exc),
            )
            return AutoEndCheckOutcome.ERROR

        if result is MeetingEndResult.ENDED:
            return AutoEndCheckOutcome.AUTO_ENDED
        return AutoEndCheckOutcome.ALREADY_NOT_RUNNING
