"""Shared test fixtures for the meeting sync tests.

Provides:
- A fake AsyncSession (commit/rollback/execute as AsyncMocks)
- A session_factory yielding that session, matching get_session()
- A mocked MeetingSyncRepository and Zoom-like provider

PostgreSQL-backed fixtures live in test_repository_integration.py and are
skipped when Docker is not available.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.meetsync.meetings.schemas import MeetingProvider
from tests.factories import make_provider_meeting


@pytest.fixture
def fake_session():
    """Stand-in AsyncSession; tests assert on commit/rollback."""
    session = MagicMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.execute = AsyncMock()
    return session


@pytest.fixture
def session_factory(fake_session):
    """Async generator factory yielding the fake session, like get_session()."""

    async def factory():
        yield fake_session

    return factory


@pytest.fixture
def mock_repository():
    """Mock MeetingSyncRepository."""
    repo = AsyncMock()
    repo.get_meeting_out_of_sync = AsyncMock(return_value=None)
    repo.get_meeting_for_auto_end = AsyncMock(return_value=None)
    repo.list_hosted_windows = AsyncMock(return_value=[])
    return repo


@pytest.fixture
def mock_provider():
    """Mock MeetingsProvider for Zoom."""
    provider = AsyncMock()
    provider.provider = MeetingProvider.ZOOM
    provider.create_meeting = AsyncMock(return_value=make_provider_meeting())
    provider.update_meeting = AsyncMock(return_value=make_provider_meeting())
    return provider
