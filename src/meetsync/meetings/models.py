"""Sync target store models -- events, sessions, and provider meetings.

Three SQLAlchemy models:
- EventModel: Event carrying meeting desire, convergence flag, error slot and
  the lifecycle flags (deleted, canceled, published) its sessions inherit
- SessionModel: Session within an event, with its own meeting desire
- MeetingModel: Provider-side meeting owned by at most one event or session

Events and sessions are written by the owning CRUD paths, which only ever set
meeting_requested and meeting_in_sync = false. Meeting rows are written only
by MeetingSyncRepository.

Deleting an event or session nulls the meeting's owner reference, turning
the row into an orphan that the dequeuer picks up for provider deletion.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.meetsync.core.database import Base
from src.meetsync.meetings.schemas import AutoEndCheckOutcome, MeetingProvider


def _in_values(column: str, values: list[str]) -> str:
    return f"{column} in (" + ", ".join(f"'{value}'" for value in values) + ")"


PROVIDER_IDS = [provider.value for provider in MeetingProvider]
AUTO_END_CHECK_OUTCOMES = [outcome.value for outcome in AutoEndCheckOutcome]


class EventModel(Base):
    """Event that may want a provider meeting."""

    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("meeting_error <> ''", name="meeting_error"),
        CheckConstraint(_in_values("meeting_provider_id", PROVIDER_IDS), name="meeting_provider"),
        CheckConstraint(
            "not (meeting_requested = true and meeting_provider_id is null)",
            name="meeting_provider_required",
        ),
        CheckConstraint(
            "not (meeting_requested = true and (starts_at is null or ends_at is null))",
            name="meeting_requested_times",
        ),
        Index(
            "events_meeting_sync_idx",
            "meeting_requested",
            "meeting_in_sync",
            postgresql_where=text("meeting_in_sync = false"),
        ),
    )

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    timezone: Mapped[str] = mapped_column(String(100), nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    deleted: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    canceled: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    published: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )

    meeting_requested: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    meeting_in_sync: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    meeting_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_provider_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    meeting_requires_password: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    meeting_hosts: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class SessionModel(Base):
    """Session within an event; inherits the event's lifecycle and timezone."""

    __tablename__ = "sessions"
    __table_args__ = (
        CheckConstraint("meeting_error <> ''", name="meeting_error"),
        CheckConstraint(_in_values("meeting_provider_id", PROVIDER_IDS), name="meeting_provider"),
        CheckConstraint(
            "not (meeting_requested = true and meeting_provider_id is null)",
            name="meeting_provider_required",
        ),
        CheckConstraint(
            "not (meeting_requested = true and (starts_at is null or ends_at is null))",
            name="meeting_requested_times",
        ),
        Index(
            "sessions_meeting_sync_idx",
            "meeting_requested",
            "meeting_in_sync",
            postgresql_where=text("meeting_in_sync = false"),
        ),
    )

    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("events.event_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    meeting_requested: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    meeting_in_sync: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    meeting_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_provider_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    meeting_requires_password: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    meeting_hosts: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class MeetingModel(Base):
    """Meeting hosted by an external provider.

    At most one row per event and per session. auto_end_check_at and
    auto_end_check_outcome are written together by the auto-end recorder.
    """

    __tablename__ = "meetings"
    __table_args__ = (
        UniqueConstraint(
            "meeting_provider_id",
            "provider_meeting_id",
            name="meetings_provider_meeting_key",
        ),
        CheckConstraint("join_url <> ''", name="join_url"),
        CheckConstraint("provider_meeting_id <> ''", name="provider_meeting_id"),
        CheckConstraint("recording_url <> ''", name="recording_url"),
        CheckConstraint(
            "not (event_id is not null and session_id is not null)",
            name="single_owner",
        ),
        CheckConstraint(_in_values("meeting_provider_id", PROVIDER_IDS), name="meeting_provider"),
        CheckConstraint(
            _in_values("auto_end_check_outcome", AUTO_END_CHECK_OUTCOMES),
            name="auto_end_check_outcome",
        ),
        CheckConstraint(
            "(auto_end_check_at is null and auto_end_check_outcome is null)"
            " or (auto_end_check_at is not null and auto_end_check_outcome is not null)",
            name="auto_end_check_pair",
        ),
        Index(
            "meetings_auto_end_pending_idx",
            "meeting_provider_id",
            "auto_end_check_at",
            postgresql_where=text("auto_end_check_at is null"),
        ),
    )

    meeting_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    event_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("events.event_id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sessions.session_id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    meeting_provider_id: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_meeting_id: Mapped[str] = mapped_column(String(200), nullable=False)
    provider_host_user_id: Mapped[str | None] = mapped_column(String(320), nullable=True)
    join_url: Mapped[str] = mapped_column(Text, nullable=False)
    password: Mapped[str | None] = mapped_column(String(200), nullable=True)
    recording_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_end_check_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    auto_end_check_outcome: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )
