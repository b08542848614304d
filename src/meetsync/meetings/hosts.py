"""Host allocation -- picks a pool host with a free slot for a meeting window.

Load is measured per host from the meetings already assigned to it:
- overlap load: meetings whose window, padded by HOST_SLOT_BUFFER on both
  ends, intersects the requested window (half-open ranges)
- upcoming load: meetings that have not ended yet, used only as a tie-break

A host is eligible while its overlap load is below the per-host cap. The
least-loaded eligible host wins; remaining ties go to the smallest identity
so allocation is reproducible.

The read-then-decide sequence runs under a transaction-scoped advisory lock
(see MeetingSyncRepository.acquire_host_allocation_lock), so at most one
allocation decision is in flight at a time and the meeting row recorded for
the chosen host is committed before the next decision reads the load.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog

from src.meetsync.core.monitoring import meeting_host_allocations_total
from src.meetsync.meetings.schemas import MeetingProvider

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from src.meetsync.meetings.repository import MeetingSyncRepository

logger = structlog.get_logger(__name__)

HOST_SLOT_BUFFER = timedelta(minutes=15)


@dataclass(frozen=True)
class HostedWindow:
    """Time window of a meeting already assigned to a host."""

    host: str
    starts_at: datetime
    ends_at: datetime


@dataclass
class HostLoad:
    overlapping: int = 0
    upcoming: int = 0


# ── Pure Selection Logic ─────────────────────────────────────────────────────


def normalize_host_pool(pool: Iterable[str | None]) -> list[str]:
    """Trim, lowercase and de-duplicate pool entries, dropping blanks."""
    return sorted(
        {entry.strip().lower() for entry in pool if entry is not None and entry.strip()}
    )


def compute_host_loads(
    windows: Iterable[HostedWindow],
    starts_at: datetime,
    ends_at: datetime,
    now: datetime,
    buffer: timedelta = HOST_SLOT_BUFFER,
) -> dict[str, HostLoad]:
    """Aggregate overlap and upcoming load per (lowercased) host."""
    loads: dict[str, HostLoad] = {}
    for window in windows:
        load = loads.setdefault(window.host.lower(), HostLoad())
        padded_start = window.starts_at - buffer
        padded_end = window.ends_at + buffer
        if padded_start < ends_at and starts_at < padded_end:
            load.overlapping += 1
        if window.ends_at >= now:
            load.upcoming += 1
    return loads


def select_host(
    pool: Iterable[str],
    loads: dict[str, HostLoad],
    max_per_host: int,
) -> str | None:
    """Pick the least-loaded pool host below the overlap cap."""
    candidates = []
    for host in pool:
        load = loads.get(host, HostLoad())
        if load.overlapping < max_per_host:
            candidates.append((load.overlapping, load.upcoming, host))
    if not candidates:
        return None
    return min(candidates)[2]


def window_is_valid(
    max_per_host: int, starts_at: datetime | None, ends_at: datetime | None
) -> bool:
    return (
        max_per_host >= 1
        and starts_at is not None
        and ends_at is not None
        and ends_at > starts_at
    )


# ── Allocator ────────────────────────────────────────────────────────────────


class HostAllocator:
    """Allocates pool hosts for new provider meetings.

    Args:
        repository: MeetingSyncRepository for the lock and load queries.
        provider: Provider whose meetings count toward host load.
    """

    def __init__(
        self,
        repository: MeetingSyncRepository,
        provider: MeetingProvider = MeetingProvider.ZOOM,
    ) -> None:
        self._repository = repository
        self._provider = provider

    async def allocate(
        self,
        session: AsyncSession,
        pool: Iterable[str | None],
        max_per_host: int,
        starts_at: datetime | None,
        ends_at: datetime | None,
        now: datetime | None = None,
    ) -> str | None:
        """Return an available host for the window, or None.

        Invalid input (cap below one, missing or inverted window, empty pool)
        returns None without taking the lock. None for valid input means every
        host is at its cap; callers treat it as a transient failure.

        The advisory lock is held until ``session``'s transaction ends.
        """
        hosts = normalize_host_pool(pool)
        if not hosts or not window_is_valid(max_per_host, starts_at, ends_at):
            meeting_host_allocations_total.labels(result="invalid_input").inc()
            return None

        now = now or datetime.now(timezone.utc)
        await self._repository.acquire_host_allocation_lock(session)

        # Meetings ending before this cutoff add neither overlap nor upcoming load
        cutoff = min(starts_at - HOST_SLOT_BUFFER, now)
        windows = await self._repository.list_hosted_windows(
            session, self._provider, hosts, ending_after=cutoff
        )
        loads = compute_host_loads(windows, starts_at, ends_at, now)
        host = select_host(hosts, loads, max_per_host)

        if host is None:
            meeting_host_allocations_total.labels(result="exhausted").inc()
            logger.warning(
                "host_allocation.exhausted",
                pool_size=len(hosts),
                max_per_host=max_per_host,
                starts_at=starts_at.isoformat(),
            )
            return None

        meeting_host_allocations_total.labels(result="allocated").inc()
        logger.info(
            "host_allocation.allocated",
            host=host,
            overlapping=loads.get(host, HostLoad()).overlapping,
            starts_at=starts_at.isoformat(),
        )
        return host
