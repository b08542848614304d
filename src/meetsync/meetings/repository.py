"""Meeting sync repository -- dequeuer, outcome recorder and auto-end queries.

Provides MeetingSyncRepository with the session_factory callable pattern.
Every operation a sync worker performs on a unit of work takes the worker's
AsyncSession so that dequeue, host allocation and outcome recording share one
transaction: row locks taken by the dequeuer (SELECT ... FOR UPDATE SKIP
LOCKED) and the host allocation advisory lock are held until the worker
commits or rolls back. A crashed or timed-out worker releases them on
rollback and the row becomes selectable again; that is the only retry
mechanism.

Only update_meeting_recording_url opens its own session, since it is called
from the webhook outside any sync transaction.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Collection
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.meetsync.meetings.hosts import HostedWindow
from src.meetsync.meetings.models import EventModel, MeetingModel, SessionModel
from src.meetsync.meetings.schemas import (
    AutoEndCandidate,
    AutoEndCheckOutcome,
    MeetingProvider,
    ProviderMeeting,
    SyncUnit,
)
from src.meetsync.meetings.state import (
    WorkClass,
    lifecycle_active_clause,
    pending_deletion_clause,
    wanted_clause,
)

logger = structlog.get_logger(__name__)

HOST_SLOT_LOCK_NAME = "meeting_host_slot_allocation"
UNKNOWN_ERROR = "unknown error"


class SyncTargetNotFoundError(ValueError):
    """The event or session a unit of work belongs to no longer exists."""


# ── Serialization Helpers ───────────────────────────────────────────────────


def _provider_of(*values: str | None) -> MeetingProvider:
    """First non-null provider id, defaulting to Zoom for bare delete units."""
    for value in values:
        if value is not None:
            return MeetingProvider(value)
    return MeetingProvider.ZOOM


def _duration_secs(starts_at: datetime | None, ends_at: datetime | None) -> float | None:
    if starts_at is None or ends_at is None:
        return None
    return (ends_at - starts_at).total_seconds()


def _existing_meeting_fields(meeting: MeetingModel | None) -> dict[str, Any]:
    if meeting is None:
        return {}
    return {
        "meeting_id": meeting.meeting_id,
        "provider_meeting_id": meeting.provider_meeting_id,
        "provider_host_user_id": meeting.provider_host_user_id,
        "join_url": meeting.join_url,
        "password": meeting.password,
    }


# ── Repository ──────────────────────────────────────────────────────────────


class MeetingSyncRepository:
    """Store operations for the meeting synchronization engine.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Dequeuer ─────────────────────────────────────────────────────────

    async def get_meeting_out_of_sync(self, session: AsyncSession) -> SyncUnit | None:
        """Lock and return one unit of pending reconciliation work.

        Classes are tried in WorkClass order and the first non-empty class
        wins. Within a class the most overdue target (earliest start) is
        taken first. Rows locked by other in-flight transactions are skipped,
        so concurrent callers never receive the same unit.

        Args:
            session: The caller's session; its transaction holds the lock.

        Returns:
            SyncUnit, or None when nothing is pending.
        """
        for work_class in WorkClass:
            unit = await self._dequeue(session, work_class)
            if unit is not None:
                logger.debug("meeting_sync.dequeued", **unit.log_context())
                return unit
        return None

    async def _dequeue(self, session: AsyncSession, work_class: WorkClass) -> SyncUnit | None:
        if work_class is WorkClass.EVENT_UPSERT:
            event_id = await self._lock_event(session, wanted_clause(EventModel, EventModel))
            return await self._load_event_unit(session, event_id, work_class) if event_id else None

        if work_class is WorkClass.SESSION_UPSERT:
            session_id = await self._lock_session(session, wanted_clause(SessionModel, EventModel))
            return await self._load_session_unit(session, session_id, work_class) if session_id else None

        if work_class is WorkClass.EVENT_DELETE:
            event_id = await self._lock_event(
                session, pending_deletion_clause(EventModel, EventModel)
            )
            return await self._load_event_unit(session, event_id, work_class) if event_id else None

        if work_class is WorkClass.SESSION_DELETE:
            session_id = await self._lock_session(
                session, pending_deletion_clause(SessionModel, EventModel)
            )
            return await self._load_session_unit(session, session_id, work_class) if session_id else None

        return await self._lock_orphan_meeting(session)

    async def _lock_event(self, session: AsyncSession, predicate: Any) -> uuid.UUID | None:
        stmt = (
            select(EventModel.event_id)
            .where(predicate)
            .order_by(EventModel.starts_at.asc().nulls_last(), EventModel.event_id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_session(self, session: AsyncSession, predicate: Any) -> uuid.UUID | None:
        stmt = (
            select(SessionModel.session_id)
            .join(EventModel, EventModel.event_id == SessionModel.event_id)
            .where(predicate)
            .order_by(SessionModel.starts_at.asc().nulls_last(), SessionModel.session_id)
            .limit(1)
            .with_for_update(of=SessionModel, skip_locked=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_orphan_meeting(self, session: AsyncSession) -> SyncUnit | None:
        stmt = (
            select(MeetingModel)
            .where(MeetingModel.event_id.is_(None), MeetingModel.session_id.is_(None))
            .order_by(MeetingModel.created_at, MeetingModel.meeting_id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        result = await session.execute(stmt)
        meeting = result.scalar_one_or_none()
        if meeting is None:
            return None
        return SyncUnit(
            work_class=WorkClass.ORPHAN_DELETE,
            delete=True,
            provider=_provider_of(meeting.meeting_provider_id),
            **_existing_meeting_fields(meeting),
        )

    async def _load_event_unit(
        self, session: AsyncSession, event_id: uuid.UUID, work_class: WorkClass
    ) -> SyncUnit:
        stmt = (
            select(EventModel, MeetingModel)
            .outerjoin(MeetingModel, MeetingModel.event_id == EventModel.event_id)
            .where(EventModel.event_id == event_id)
        )
        event, meeting = (await session.execute(stmt)).one()

        if work_class.is_delete:
            return SyncUnit(
                work_class=work_class,
                delete=True,
                event_id=event.event_id,
                provider=_provider_of(
                    meeting.meeting_provider_id if meeting else None,
                    event.meeting_provider_id,
                ),
                **_existing_meeting_fields(meeting),
            )

        return SyncUnit(
            work_class=work_class,
            event_id=event.event_id,
            provider=_provider_of(event.meeting_provider_id),
            topic=event.name,
            starts_at=event.starts_at,
            duration_secs=_duration_secs(event.starts_at, event.ends_at),
            timezone=event.timezone,
            hosts=list(event.meeting_hosts or []),
            requires_password=event.meeting_requires_password,
            **_existing_meeting_fields(meeting),
        )

    async def _load_session_unit(
        self, session: AsyncSession, session_id: uuid.UUID, work_class: WorkClass
    ) -> SyncUnit:
        stmt = (
            select(SessionModel, EventModel, MeetingModel)
            .join(EventModel, EventModel.event_id == SessionModel.event_id)
            .outerjoin(MeetingModel, MeetingModel.session_id == SessionModel.session_id)
            .where(SessionModel.session_id == session_id)
        )
        target, event, meeting = (await session.execute(stmt)).one()

        if work_class.is_delete:
            return SyncUnit(
                work_class=work_class,
                delete=True,
                session_id=target.session_id,
                provider=_provider_of(
                    meeting.meeting_provider_id if meeting else None,
                    target.meeting_provider_id,
                ),
                **_existing_meeting_fields(meeting),
            )

        return SyncUnit(
            work_class=work_class,
            session_id=target.session_id,
            provider=_provider_of(target.meeting_provider_id),
            topic=target.name,
            starts_at=target.starts_at,
            duration_secs=_duration_secs(target.starts_at, target.ends_at),
            timezone=event.timezone,
            hosts=list(target.meeting_hosts or []),
            requires_password=target.meeting_requires_password,
            **_existing_meeting_fields(meeting),
        )

    # ── Outcome Recorder ─────────────────────────────────────────────────

    async def record_meeting_created(
        self,
        session: AsyncSession,
        unit: SyncUnit,
        provider_meeting: ProviderMeeting,
        host_user_id: str | None = None,
    ) -> uuid.UUID:
        """Persist a newly created provider meeting and mark the owner synced.

        Upserts on the owner, so recording the same creation twice leaves a
        single meeting row.

        Returns:
            The meeting_id of the stored row.
        """
        return await self._upsert_meeting(session, unit, provider_meeting, host_user_id)

    async def record_meeting_updated(
        self,
        session: AsyncSession,
        unit: SyncUnit,
        provider_meeting: ProviderMeeting,
    ) -> uuid.UUID:
        """Persist the provider's view of an updated meeting and mark the owner synced."""
        return await self._upsert_meeting(
            session, unit, provider_meeting, unit.provider_host_user_id
        )

    async def _upsert_meeting(
        self,
        session: AsyncSession,
        unit: SyncUnit,
        provider_meeting: ProviderMeeting,
        host_user_id: str | None,
    ) -> uuid.UUID:
        if unit.is_orphan:
            raise ValueError("Cannot record a meeting without an owning event or session")

        await self._mark_target_synced(session, unit)

        if unit.event_id is not None:
            owner_clause = MeetingModel.event_id == unit.event_id
        else:
            owner_clause = MeetingModel.session_id == unit.session_id
        result = await session.execute(select(MeetingModel).where(owner_clause))
        model = result.scalar_one_or_none()

        if model is None:
            model = MeetingModel(
                event_id=unit.event_id,
                session_id=unit.session_id,
                meeting_provider_id=unit.provider.value,
            )
            session.add(model)
        else:
            model.updated_at = datetime.now(timezone.utc)

        model.provider_meeting_id = provider_meeting.id
        model.join_url = provider_meeting.join_url
        model.password = provider_meeting.password
        if host_user_id is not None:
            model.provider_host_user_id = host_user_id

        await session.flush()
        logger.info(
            "meeting_sync.meeting_recorded",
            provider_meeting_id=provider_meeting.id,
            host=model.provider_host_user_id,
            **{**unit.log_context(), "meeting_id": str(model.meeting_id)},
        )
        return model.meeting_id

    async def record_meeting_deleted(self, session: AsyncSession, unit: SyncUnit) -> None:
        """Remove the meeting row (if any) and mark the owner synced."""
        if unit.meeting_id is not None:
            await session.execute(
                delete(MeetingModel).where(MeetingModel.meeting_id == unit.meeting_id)
            )
        await self._mark_target_synced(session, unit)
        logger.info("meeting_sync.meeting_removed", **unit.log_context())

    async def record_meeting_error(
        self, session: AsyncSession, unit: SyncUnit, error: str
    ) -> None:
        """Record a sync failure on the owning event or session.

        The owner is also marked in sync, which takes it out of the dequeuer's
        selection until its desire changes again. An orphan meeting has no
        owner to annotate, so its row is deleted instead.
        """
        if unit.is_orphan:
            if unit.meeting_id is not None:
                await session.execute(
                    delete(MeetingModel).where(MeetingModel.meeting_id == unit.meeting_id)
                )
            logger.warning("meeting_sync.orphan_dropped", error=error, **unit.log_context())
            return

        await self._mark_target_synced(session, unit, error=error or UNKNOWN_ERROR)
        logger.warning("meeting_sync.error_recorded", error=error, **unit.log_context())

    async def _mark_target_synced(
        self, session: AsyncSession, unit: SyncUnit, error: str | None = None
    ) -> None:
        """Set meeting_in_sync = true and the error slot on the unit's owner.

        Raises:
            SyncTargetNotFoundError: If the owning event or session is gone.
        """
        if unit.event_id is not None:
            stmt = (
                update(EventModel)
                .where(EventModel.event_id == unit.event_id)
                .values(meeting_in_sync=True, meeting_error=error)
            )
            owner = f"event={unit.event_id}"
        elif unit.session_id is not None:
            stmt = (
                update(SessionModel)
                .where(SessionModel.session_id == unit.session_id)
                .values(meeting_in_sync=True, meeting_error=error)
            )
            owner = f"session={unit.session_id}"
        else:
            return

        result = await session.execute(stmt)
        if result.rowcount == 0:
            raise SyncTargetNotFoundError(f"Sync target not found: {owner}")

    async def update_meeting_recording_url(
        self,
        provider: MeetingProvider,
        provider_meeting_id: str,
        recording_url: str,
    ) -> bool:
        """Set a meeting's recording link by provider-side meeting id.

        Independent of the sync and error flags. Runs in its own transaction.

        Returns:
            True if a meeting matched, False otherwise.
        """
        matched = False
        async for session in self._session_factory():
            stmt = (
                update(MeetingModel)
                .where(
                    MeetingModel.meeting_provider_id == provider.value,
                    MeetingModel.provider_meeting_id == provider_meeting_id,
                )
                .values(recording_url=recording_url, updated_at=datetime.now(timezone.utc))
            )
            result = await session.execute(stmt)
            await session.commit()
            matched = result.rowcount > 0

        logger.info(
            "meeting_sync.recording_url_updated",
            provider=provider.value,
            provider_meeting_id=provider_meeting_id,
            matched=matched,
        )
        return matched

    # ── Host Allocation ──────────────────────────────────────────────────

    async def acquire_host_allocation_lock(self, session: AsyncSession) -> None:
        """Take the transaction-scoped host allocation lock.

        Blocks until any other allocation transaction ends; released
        automatically on commit or rollback.
        """
        await session.execute(
            text("select pg_advisory_xact_lock(hashtext(:name)::bigint)"),
            {"name": HOST_SLOT_LOCK_NAME},
        )

    async def list_hosted_windows(
        self,
        session: AsyncSession,
        provider: MeetingProvider,
        hosts: Collection[str],
        ending_after: datetime,
    ) -> list[HostedWindow]:
        """Load the time windows of meetings assigned to the given hosts.

        Host identities are compared lowercased. Meetings whose owner has no
        complete time window, and meetings that ended before ``ending_after``,
        are skipped.
        """
        host = func.lower(MeetingModel.provider_host_user_id)
        starts_at = func.coalesce(EventModel.starts_at, SessionModel.starts_at)
        ends_at = func.coalesce(EventModel.ends_at, SessionModel.ends_at)

        stmt = (
            select(host, starts_at, ends_at)
            .select_from(MeetingModel)
            .outerjoin(EventModel, EventModel.event_id == MeetingModel.event_id)
            .outerjoin(SessionModel, SessionModel.session_id == MeetingModel.session_id)
            .where(
                MeetingModel.meeting_provider_id == provider.value,
                MeetingModel.provider_host_user_id.isnot(None),
                host.in_(list(hosts)),
                starts_at.isnot(None),
                ends_at.isnot(None),
                ends_at >= ending_after,
            )
        )
        result = await session.execute(stmt)
        return [
            HostedWindow(host=row[0], starts_at=row[1], ends_at=row[2])
            for row in result.all()
        ]

    # ── Auto-End Detector ────────────────────────────────────────────────

    async def get_meeting_for_auto_end(
        self,
        session: AsyncSession,
        providers: Collection[MeetingProvider],
        grace: timedelta,
        now: datetime | None = None,
    ) -> AutoEndCandidate | None:
        """Lock and return one overdue meeting that has not been end-checked.

        Event meetings are preferred over session meetings; within each class
        the most recently ended meeting comes first. Only owners that are
        requested, in sync and active qualify.

        Args:
            session: The caller's session; its transaction holds the lock.
            providers: Providers that support ending meetings.
            grace: How long after the scheduled end a meeting becomes overdue.
            now: Reference time (defaults to the current UTC time).
        """
        provider_ids = [provider.value for provider in providers]
        if not provider_ids:
            return None
        cutoff = (now or datetime.now(timezone.utc)) - grace

        event_stmt = (
            select(MeetingModel)
            .join(EventModel, EventModel.event_id == MeetingModel.event_id)
            .where(
                MeetingModel.meeting_provider_id.in_(provider_ids),
                MeetingModel.auto_end_check_at.is_(None),
                EventModel.meeting_requested.is_(True),
                EventModel.meeting_in_sync.is_(True),
                lifecycle_active_clause(EventModel),
                EventModel.ends_at.isnot(None),
                EventModel.ends_at <= cutoff,
            )
            .order_by(EventModel.ends_at.desc(), MeetingModel.meeting_id)
            .limit(1)
            .with_for_update(of=MeetingModel, skip_locked=True)
        )
        meeting = (await session.execute(event_stmt)).scalar_one_or_none()

        if meeting is None:
            session_stmt = (
                select(MeetingModel)
                .join(SessionModel, SessionModel.session_id == MeetingModel.session_id)
                .join(EventModel, EventModel.event_id == SessionModel.event_id)
                .where(
                    MeetingModel.meeting_provider_id.in_(provider_ids),
                    MeetingModel.auto_end_check_at.is_(None),
                    SessionModel.meeting_requested.is_(True),
                    SessionModel.meeting_in_sync.is_(True),
                    lifecycle_active_clause(EventModel),
                    SessionModel.ends_at.isnot(None),
                    SessionModel.ends_at <= cutoff,
                )
                .order_by(SessionModel.ends_at.desc(), MeetingModel.meeting_id)
                .limit(1)
                .with_for_update(of=MeetingModel, skip_locked=True)
            )
            meeting = (await session.execute(session_stmt)).scalar_one_or_none()

        if meeting is None:
            return None

        return AutoEndCandidate(
            meeting_id=meeting.meeting_id,
            provider=MeetingProvider(meeting.meeting_provider_id),
            provider_meeting_id=meeting.provider_meeting_id,
        )

    async def set_meeting_auto_end_check_outcome(
        self,
        session: AsyncSession,
        meeting_id: uuid.UUID,
        outcome: AutoEndCheckOutcome,
        now: datetime | None = None,
    ) -> bool:
        """Stamp the auto-end check time and outcome on a meeting.

        A meeting that no longer exists is not an error.

        Returns:
            True if a meeting was updated.
        """
        stmt = (
            update(MeetingModel)
            .where(MeetingModel.meeting_id == meeting_id)
            .values(
                auto_end_check_at=now or datetime.now(timezone.utc),
                auto_end_check_outcome=outcome.value,
            )
        )
        result = await session.execute(stmt)
        return result.rowcount > 0
