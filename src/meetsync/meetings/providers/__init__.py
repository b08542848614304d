"""Meeting provider adapters.

MeetingsProvider is the contract the sync and auto-end workers call;
ZoomProvider implements it against the Zoom REST API.
"""

from src.meetsync.meetings.providers.base import (
    MeetingProviderError,
    MeetingsProvider,
    ProviderClientError,
    ProviderMeetingNotFoundError,
    ProviderNetworkError,
    ProviderNotConfiguredError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderTokenError,
)

__all__ = [
    "MeetingProviderError",
    "MeetingsProvider",
    "ProviderClientError",
    "ProviderMeetingNotFoundError",
    "ProviderNetworkError",
    "ProviderNotConfiguredError",
    "ProviderRateLimitError",
    "ProviderServerError",
    "ProviderTokenError",
]
