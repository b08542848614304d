"""Pydantic v2 schemas for the meeting synchronization engine.

Defines the data contracts passed between the dequeuer, the workers, the
providers and the outcome recorder: the dequeued SyncUnit, the provider's
view of a meeting, and the auto-end candidate.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from src.meetsync.meetings.state import SyncAction, WorkClass, sync_action_for


# ── Enums ────────────────────────────────────────────────────────────────────


class MeetingProvider(str, Enum):
    """Meeting providers the engine can synchronize with."""

    ZOOM = "zoom"


class AutoEndCheckOutcome(str, Enum):
    """Result of checking an overdue meeting for provider-side termination."""

    ALREADY_NOT_RUNNING = "already_not_running"
    AUTO_ENDED = "auto_ended"
    ERROR = "error"
    NOT_FOUND = "not_found"


class MeetingEndResult(str, Enum):
    """What a provider did when asked to end a meeting."""

    ENDED = "ended"
    ALREADY_NOT_RUNNING = "already_not_running"


# ── Dequeuer Output ──────────────────────────────────────────────────────────


class SyncUnit(BaseModel):
    """One unit of reconciliation work returned by the dequeuer.

    Create/update units carry everything the provider needs (topic, start,
    duration, timezone, declared hosts). Delete units carry only the owner
    and the existing meeting's identifiers.
    """

    work_class: WorkClass
    delete: bool = False
    provider: MeetingProvider = MeetingProvider.ZOOM

    event_id: uuid.UUID | None = None
    session_id: uuid.UUID | None = None
    meeting_id: uuid.UUID | None = None

    topic: str | None = None
    starts_at: datetime | None = None
    duration_secs: float | None = None
    timezone: str | None = None
    hosts: list[str] = Field(default_factory=list)
    requires_password: bool | None = None

    provider_meeting_id: str | None = None
    provider_host_user_id: str | None = None
    join_url: str | None = None
    password: str | None = None

    @model_validator(mode="after")
    def _single_owner(self) -> SyncUnit:
        if self.event_id is not None and self.session_id is not None:
            raise ValueError("a sync unit belongs to an event or a session, not both")
        return self

    @property
    def sync_action(self) -> SyncAction:
        return sync_action_for(self.delete, self.provider_meeting_id)

    @property
    def duration(self) -> timedelta | None:
        if self.duration_secs is None:
            return None
        return timedelta(seconds=self.duration_secs)

    @property
    def ends_at(self) -> datetime | None:
        if self.starts_at is None or self.duration is None:
            return None
        return self.starts_at + self.duration

    @property
    def is_orphan(self) -> bool:
        return self.event_id is None and self.session_id is None

    def log_context(self) -> dict[str, str | None]:
        """Identifiers for structured log lines."""
        return {
            "action": self.sync_action.value,
            "work_class": self.work_class.name.lower(),
            "event_id": str(self.event_id) if self.event_id else None,
            "session_id": str(self.session_id) if self.session_id else None,
            "meeting_id": str(self.meeting_id) if self.meeting_id else None,
        }


# ── Provider Models ──────────────────────────────────────────────────────────


class ProviderMeeting(BaseModel):
    """A meeting as the provider reports it after create, update or get."""

    id: str
    join_url: str
    password: str | None = None


# ── Auto-End Detector Output ─────────────────────────────────────────────────


class AutoEndCandidate(BaseModel):
    """An overdue meeting that still needs a provider-side end check."""

    meeting_id: uuid.UUID
    provider: MeetingProvider
    provider_meeting_id: str
