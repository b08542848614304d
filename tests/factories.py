"""Builders for sync units and provider meetings used across the tests."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from src.meetsync.meetings.schemas import ProviderMeeting, SyncUnit
from src.meetsync.meetings.state import WorkClass

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def make_unit(**overrides) -> SyncUnit:
    """SyncUnit for an event create, with overrides applied."""
    defaults = {
        "work_class": WorkClass.EVENT_UPSERT,
        "event_id": uuid.uuid4(),
        "topic": "Community Call",
        "starts_at": NOW + timedelta(days=1),
        "duration_secs": 3600.0,
        "timezone": "Europe/Madrid",
        "hosts": [],
        "requires_password": True,
    }
    defaults.update(overrides)
    return SyncUnit(**defaults)


def make_provider_meeting(**overrides) -> ProviderMeeting:
    defaults = {
        "id": "81234567890",
        "join_url": "https://zoom.us/j/81234567890",
        "password": "s3cret",
    }
    defaults.update(overrides)
    return ProviderMeeting(**defaults)
