"""Meeting provider contract and error taxonomy.

Workers only talk to providers through MeetingsProvider. Every failure a
provider reports is a MeetingProviderError whose ``retryable`` flag decides
what the worker does with the unit:

- retryable (network, server, token, rate limit): roll back, the unit is
  dequeued again after a pause
- non-retryable (client error, not found, not configured): record the error
  on the sync target and commit
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.meetsync.meetings.schemas import (
    MeetingEndResult,
    MeetingProvider,
    ProviderMeeting,
    SyncUnit,
)


# ── Errors ───────────────────────────────────────────────────────────────────


class MeetingProviderError(Exception):
    """Base class for provider failures."""

    retryable: bool = False

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ProviderNetworkError(MeetingProviderError):
    """The provider could not be reached."""

    retryable = True


class ProviderServerError(MeetingProviderError):
    """The provider answered with a 5xx."""

    retryable = True


class ProviderTokenError(MeetingProviderError):
    """Access token could not be obtained or was rejected."""

    retryable = True


class ProviderRateLimitError(MeetingProviderError):
    """The provider throttled the request; ``retry_after`` is in seconds."""

    retryable = True


class ProviderClientError(MeetingProviderError):
    """The provider rejected the request (bad input, invalid host, ...)."""


class ProviderMeetingNotFoundError(MeetingProviderError):
    """The meeting does not exist on the provider side."""


class ProviderNotConfiguredError(MeetingProviderError):
    """No credentials are configured for the unit's provider."""


# ── Contract ─────────────────────────────────────────────────────────────────


class MeetingsProvider(ABC):
    """Operations the sync and auto-end workers need from a provider."""

    provider: MeetingProvider

    @abstractmethod
    async def create_meeting(
        self, unit: SyncUnit, host_user_id: str | None = None
    ) -> ProviderMeeting:
        """Create a meeting for the unit, owned by ``host_user_id`` when given."""

    @abstractmethod
    async def get_meeting(self, provider_meeting_id: str) -> ProviderMeeting:
        """Fetch the provider's current view of a meeting."""

    @abstractmethod
    async def update_meeting(self, provider_meeting_id: str, unit: SyncUnit) -> ProviderMeeting:
        """Apply the unit's topic, schedule and hosts to an existing meeting."""

    @abstractmethod
    async def delete_meeting(self, provider_meeting_id: str) -> None:
        """Delete a meeting. Raises ProviderMeetingNotFoundError if it is gone."""

    @abstractmethod
    async def end_meeting(self, provider_meeting_id: str) -> MeetingEndResult:
        """End a meeting if it is currently running."""
