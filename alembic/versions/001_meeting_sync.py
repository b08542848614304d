"""Create the sync target store: events, sessions and provider meetings.

Revision ID: 001_meeting_sync
Revises:
Create Date: 2026-10-17

Creates three tables:
- events: meeting desire, convergence flag and error slot, plus the
  lifecycle flags (deleted, canceled, published) sessions inherit
- sessions: per-session meeting desire, cascading with their event
- meetings: provider meetings owned by at most one event or session;
  deleting the owner nulls the reference and leaves an orphan row

Partial indexes cover the dequeuer (meeting_in_sync = false) and the
auto-end detector (auto_end_check_at is null).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, UUID

# revision identifiers, used by Alembic.
revision: str = "001_meeting_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PROVIDERS = "('zoom')"
AUTO_END_OUTCOMES = "('already_not_running', 'auto_ended', 'error', 'not_found')"


def _meeting_desire_columns() -> list[sa.Column]:
    return [
        sa.Column("meeting_requested", sa.Boolean(), nullable=True),
        sa.Column("meeting_in_sync", sa.Boolean(), nullable=True),
        sa.Column("meeting_error", sa.Text(), nullable=True),
        sa.Column("meeting_provider_id", sa.String(50), nullable=True),
        sa.Column("meeting_requires_password", sa.Boolean(), nullable=True),
        sa.Column("meeting_hosts", ARRAY(sa.Text()), nullable=True),
    ]


def _meeting_desire_checks(table: str) -> list[sa.CheckConstraint]:
    return [
        sa.CheckConstraint("meeting_error <> ''", name=f"{table}_meeting_error_chk"),
        sa.CheckConstraint(
            f"meeting_provider_id in {PROVIDERS}", name=f"{table}_meeting_provider_chk"
        ),
        sa.CheckConstraint(
            "not (meeting_requested = true and meeting_provider_id is null)",
            name=f"{table}_meeting_provider_required_chk",
        ),
        sa.CheckConstraint(
            "not (meeting_requested = true and (starts_at is null or ends_at is null))",
            name=f"{table}_meeting_requested_times_chk",
        ),
    ]


def upgrade() -> None:
    # ── events table ─────────────────────────────────────────────────────

    op.create_table(
        "events",
        sa.Column(
            "event_id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("timezone", sa.String(100), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("canceled", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("published", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        *_meeting_desire_columns(),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("event_id", name="events_pkey"),
        *_meeting_desire_checks("events"),
    )
    op.execute(
        "CREATE INDEX events_meeting_sync_idx "
        "ON events(meeting_requested, meeting_in_sync) "
        "WHERE meeting_in_sync = false"
    )

    # ── sessions table ───────────────────────────────────────────────────

    op.create_table(
        "sessions",
        sa.Column(
            "session_id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("event_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(500), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=True),
        *_meeting_desire_columns(),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("session_id", name="sessions_pkey"),
        sa.ForeignKeyConstraint(
            ["event_id"],
            ["events.event_id"],
            name="sessions_event_id_fkey",
            ondelete="CASCADE",
        ),
        *_meeting_desire_checks("sessions"),
    )
    op.execute("CREATE INDEX sessions_event_id_idx ON sessions(event_id)")
    op.execute(
        "CREATE INDEX sessions_meeting_sync_idx "
        "ON sessions(meeting_requested, meeting_in_sync) "
        "WHERE meeting_in_sync = false"
    )

    # ── meetings table ───────────────────────────────────────────────────

    op.create_table(
        "meetings",
        sa.Column(
            "meeting_id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("event_id", UUID(as_uuid=True), nullable=True),
        sa.Column("session_id", UUID(as_uuid=True), nullable=True),
        sa.Column("meeting_provider_id", sa.String(50), nullable=False),
        sa.Column("provider_meeting_id", sa.String(200), nullable=False),
        sa.Column("provider_host_user_id", sa.String(320), nullable=True),
        sa.Column("join_url", sa.Text(), nullable=False),
        sa.Column("password", sa.String(200), nullable=True),
        sa.Column("recording_url", sa.Text(), nullable=True),
        sa.Column("auto_end_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_end_check_outcome", sa.String(50), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("meeting_id", name="meetings_pkey"),
        sa.ForeignKeyConstraint(
            ["event_id"],
            ["events.event_id"],
            name="meetings_event_id_fkey",
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["session_id"],
            ["sessions.session_id"],
            name="meetings_session_id_fkey",
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint("event_id", name="meetings_event_id_key"),
        sa.UniqueConstraint("session_id", name="meetings_session_id_key"),
        sa.UniqueConstraint(
            "meeting_provider_id",
            "provider_meeting_id",
            name="meetings_provider_meeting_key",
        ),
        sa.CheckConstraint("join_url <> ''", name="meetings_join_url_chk"),
        sa.CheckConstraint("provider_meeting_id <> ''", name="meetings_provider_meeting_id_chk"),
        sa.CheckConstraint("recording_url <> ''", name="meetings_recording_url_chk"),
        sa.CheckConstraint(
            "not (event_id is not null and session_id is not null)",
            name="meetings_single_owner_chk",
        ),
        sa.CheckConstraint(
            f"meeting_provider_id in {PROVIDERS}", name="meetings_meeting_provider_chk"
        ),
        sa.CheckConstraint(
            f"auto_end_check_outcome in {AUTO_END_OUTCOMES}",
            name="meetings_auto_end_check_outcome_chk",
        ),
        sa.CheckConstraint(
            "(auto_end_check_at is null and auto_end_check_outcome is null)"
            " or (auto_end_check_at is not null and auto_end_check_outcome is not null)",
            name="meetings_auto_end_check_pair_chk",
        ),
    )
    op.execute(
        "CREATE INDEX meetings_auto_end_pending_idx "
        "ON meetings(meeting_provider_id, auto_end_check_at) "
        "WHERE auto_end_check_at is null"
    )


def downgrade() -> None:
    op.drop_table("meetings")
    op.drop_table("sessions")
    op.drop_table("events")
