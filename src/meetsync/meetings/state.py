"""Sync state machine for event and session meetings.

The store keeps a meeting's desired state as boolean columns
(meeting_requested, meeting_in_sync, and the owning event's deleted /
canceled / published flags). This module names the states those flags
encode and maps each state to the dequeuer priority class that services it.

States:
- ABSENT: no meeting wanted and nothing pending
- WANTED: a meeting should exist (create or update pending)
- SYNCED: provider state matches the local desire
- PENDING_DELETION: a meeting may exist and must be removed
- ORPHAN: a meeting row whose event or session is gone

The repository builds its SQL predicates from the same definitions
(wanted_clause / pending_deletion_clause), so the Python classification and
the dequeuer agree on which rows belong to which class.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any

from sqlalchemy import and_, or_


class SyncState(str, Enum):
    ABSENT = "absent"
    WANTED = "wanted"
    SYNCED = "synced"
    PENDING_DELETION = "pending_deletion"
    ORPHAN = "orphan"


class TargetKind(str, Enum):
    EVENT = "event"
    SESSION = "session"


class WorkClass(IntEnum):
    """Dequeuer priority classes, lowest value served first.

    Creates and updates are served before deletes.
    """

    EVENT_UPSERT = 1
    SESSION_UPSERT = 2
    EVENT_DELETE = 3
    SESSION_DELETE = 4
    ORPHAN_DELETE = 5

    @property
    def is_delete(self) -> bool:
        return self >= WorkClass.EVENT_DELETE


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Lifecycle:
    """Lifecycle flags of the event that owns a sync target."""

    deleted: bool = False
    canceled: bool = False
    published: bool = True

    @property
    def active(self) -> bool:
        return not self.deleted and not self.canceled and self.published


# ── Transition Function ──────────────────────────────────────────────────────


def classify_target(
    meeting_requested: bool | None,
    meeting_in_sync: bool | None,
    lifecycle: Lifecycle,
) -> SyncState:
    """Classify an event or session from its stored flags.

    Only an explicit ``meeting_in_sync = False`` means pending work; NULL
    is how the store marks targets that never requested a meeting. A NULL
    ``meeting_requested`` counts as not requested.
    """
    if meeting_in_sync is not False:
        return SyncState.SYNCED if meeting_requested else SyncState.ABSENT
    if meeting_requested and lifecycle.active:
        return SyncState.WANTED
    return SyncState.PENDING_DELETION


def classify_meeting(event_id: uuid.UUID | None, session_id: uuid.UUID | None) -> SyncState | None:
    """Return ORPHAN for a meeting row with no owner, None otherwise."""
    if event_id is None and session_id is None:
        return SyncState.ORPHAN
    return None


def work_class_for(state: SyncState, kind: TargetKind | None = None) -> WorkClass | None:
    """Map a sync state to the dequeuer class that services it.

    Returns None for states with no pending work (ABSENT, SYNCED).
    """
    if state is SyncState.ORPHAN:
        return WorkClass.ORPHAN_DELETE
    if state is SyncState.WANTED:
        return WorkClass.EVENT_UPSERT if kind is TargetKind.EVENT else WorkClass.SESSION_UPSERT
    if state is SyncState.PENDING_DELETION:
        return WorkClass.EVENT_DELETE if kind is TargetKind.EVENT else WorkClass.SESSION_DELETE
    return None


def sync_action_for(delete: bool, provider_meeting_id: str | None) -> SyncAction:
    """Pick the provider operation for a dequeued unit."""
    if delete:
        return SyncAction.DELETE
    if provider_meeting_id is None:
        return SyncAction.CREATE
    return SyncAction.UPDATE


# ── SQL Predicates ───────────────────────────────────────────────────────────


def lifecycle_active_clause(event_model: Any) -> Any:
    """SQL form of Lifecycle.active for the event table."""
    return and_(
        event_model.deleted.is_(False),
        event_model.canceled.is_(False),
        event_model.published.is_(True),
    )


def wanted_clause(target_model: Any, event_model: Any) -> Any:
    """SQL form of classify_target(...) == WANTED."""
    return and_(
        target_model.meeting_requested.is_(True),
        target_model.meeting_in_sync.is_(False),
        lifecycle_active_clause(event_model),
    )


def pending_deletion_clause(target_model: Any, event_model: Any) -> Any:
    """SQL form of classify_target(...) == PENDING_DELETION."""
    inactive = or_(
        event_model.deleted.is_(True),
        event_model.canceled.is_(True),
        event_model.published.is_(False),
    )
    return and_(
        target_model.meeting_in_sync.is_(False),
        or_(
            and_(target_model.meeting_requested.is_(True), inactive),
            target_model.meeting_requested.isnot(True),
        ),
    )
