"""Zoom meetings provider -- async REST client and MeetingsProvider adapter.

ZoomClient talks to the Zoom v2 REST API with a server-to-server OAuth app
(``account_credentials`` grant). The access token is cached and refreshed
TOKEN_EXPIRY_MARGIN before it expires. Transport failures on reads, updates,
deletes and ends are retried with tenacity (3 attempts, exponential backoff
1-10s). Creates are never re-sent, since a timed-out POST may already have
created the meeting. Every other failure is mapped onto the
MeetingProviderError taxonomy and left to the sync worker.

ZoomProvider turns SyncUnits into Zoom scheduled meetings (type 2) with the
default meeting settings applied to every meeting.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.meetsync.meetings.providers.base import (
    MeetingsProvider,
    ProviderClientError,
    ProviderMeetingNotFoundError,
    ProviderNetworkError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderTokenError,
)
from src.meetsync.meetings.schemas import (
    MeetingEndResult,
    MeetingProvider,
    ProviderMeeting,
    SyncUnit,
)

logger = structlog.get_logger(__name__)

# ── Constants ────────────────────────────────────────────────────────────────

BASE_URL = "https://api.zoom.us/v2"
TOKEN_URL = "https://zoom.us/oauth/token"
DEFAULT_USER_ID = "me"

MEETING_NOT_FOUND_CODE = 3001
SCHEDULED_MEETING_TYPE = 2
MIN_DURATION_MINUTES = 5
MAX_DURATION_MINUTES = 720

DEFAULT_RATE_LIMIT_RETRY_SECONDS = 60.0
TOKEN_EXPIRY_MARGIN_SECONDS = 300.0

DEFAULT_MEETING_SETTINGS: dict[str, Any] = {
    "auto_recording": "cloud",
    "jbh_time": 15,
    "join_before_host": True,
    "mute_upon_entry": True,
    "participant_video": False,
    "waiting_room": False,
}

# Only transport failures are retried in-process; the rest go back to the worker
_zoom_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(ProviderNetworkError),
    reraise=True,
)


@dataclass
class _CachedToken:
    access_token: str
    expires_at: float  # time.monotonic() deadline


# ── Error Mapping ────────────────────────────────────────────────────────────


def _error_body(response: httpx.Response) -> tuple[int, str]:
    try:
        data = response.json()
    except ValueError:
        return 0, response.text
    if not isinstance(data, dict):
        return 0, response.text
    return int(data.get("code") or 0), str(data.get("message") or "")


def _retry_after(response: httpx.Response) -> float:
    value = response.headers.get("Retry-After")
    try:
        return float(value) if value is not None else DEFAULT_RATE_LIMIT_RETRY_SECONDS
    except ValueError:
        return DEFAULT_RATE_LIMIT_RETRY_SECONDS


def error_from_response(response: httpx.Response) -> Exception:
    """Map a non-2xx Zoom response onto the provider error taxonomy."""
    status = response.status_code
    code, message = _error_body(response)

    if status == 429:
        retry_after = _retry_after(response)
        return ProviderRateLimitError(
            f"zoom rate limit exceeded (retry after {retry_after:g}s)",
            retry_after=retry_after,
        )
    if status in (401, 403):
        return ProviderTokenError(f"zoom token rejected: {code} - {message}")
    if code == MEETING_NOT_FOUND_CODE:
        return ProviderMeetingNotFoundError(f"zoom meeting not found: {code} - {message}")
    if 400 <= status < 500:
        return ProviderClientError(f"zoom client error: {code} - {message}")
    return ProviderServerError(f"zoom server error: {status} {code} - {message}")


# ── Request Builders ─────────────────────────────────────────────────────────


def duration_minutes(unit: SyncUnit) -> int | None:
    """Whole minutes of the unit's duration, validated against Zoom's limits.

    Raises:
        ProviderClientError: If the duration is outside 5-720 minutes.
    """
    if unit.duration_secs is None:
        return None
    minutes = int(unit.duration_secs // 60)
    if not MIN_DURATION_MINUTES <= minutes <= MAX_DURATION_MINUTES:
        raise ProviderClientError(f"invalid meeting duration: {minutes} minutes")
    return minutes


def _meeting_fields(unit: SyncUnit, host_user_id: str | None) -> dict[str, Any]:
    settings = dict(DEFAULT_MEETING_SETTINGS)
    alternative_hosts = [
        host for host in unit.hosts if host and host.lower() != (host_user_id or "").lower()
    ]
    if alternative_hosts:
        settings["alternative_hosts"] = ";".join(alternative_hosts)

    fields: dict[str, Any] = {"settings": settings}
    minutes = duration_minutes(unit)
    if minutes is not None:
        fields["duration"] = minutes
    if unit.starts_at is not None:
        fields["start_time"] = unit.starts_at.astimezone(timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
    if unit.timezone:
        fields["timezone"] = unit.timezone
    return fields


def build_create_payload(unit: SyncUnit, host_user_id: str | None = None) -> dict[str, Any]:
    """Request body for POST /users/{user}/meetings."""
    payload: dict[str, Any] = {
        "type": SCHEDULED_MEETING_TYPE,
        "topic": unit.topic or "",
        "default_password": bool(unit.requires_password),
    }
    payload.update(_meeting_fields(unit, host_user_id))
    return payload


def build_update_payload(unit: SyncUnit) -> dict[str, Any]:
    """Request body for PATCH /meetings/{id}."""
    payload = _meeting_fields(unit, unit.provider_host_user_id)
    if unit.topic is not None:
        payload["topic"] = unit.topic
    return payload


def _parse_meeting_id(provider_meeting_id: str) -> int:
    try:
        return int(provider_meeting_id)
    except ValueError as exc:
        raise ProviderClientError(f"invalid zoom meeting id: {provider_meeting_id!r}") from exc


def _to_provider_meeting(data: dict[str, Any]) -> ProviderMeeting:
    return ProviderMeeting(
        id=str(data["id"]),
        join_url=data["join_url"],
        password=data.get("password") or None,
    )


# ── Client ───────────────────────────────────────────────────────────────────


class ZoomClient:
    """Async client for the Zoom meetings REST API.

    Args:
        account_id: Zoom account of the server-to-server OAuth app.
        client_id: OAuth client id.
        client_secret: OAuth client secret.
    """

    TIMEOUT = 20.0

    def __init__(self, account_id: str, client_id: str, client_secret: str) -> None:
        self._account_id = account_id
        self._client_id = client_id
        self._client_secret = client_secret
        self._token: _CachedToken | None = None
        self._token_lock = asyncio.Lock()

    def _client(self, timeout: float) -> httpx.AsyncClient:
        """Create a new httpx client with specified timeout."""
        return httpx.AsyncClient(timeout=timeout)

    # ── Token ────────────────────────────────────────────────────────────

    async def _get_token(self) -> str:
        async with self._token_lock:
            now = time.monotonic()
            if self._token is not None and now + TOKEN_EXPIRY_MARGIN_SECONDS < self._token.expires_at:
                return self._token.access_token
            self._token = await self._fetch_token()
            return self._token.access_token

    async def _fetch_token(self) -> _CachedToken:
        """Fetch a new access token with the account_credentials grant.

        Raises:
            ProviderTokenError: If Zoom cannot be reached or refuses the credentials.
        """
        try:
            async with self._client(self.TIMEOUT) as client:
                response = await client.post(
                    TOKEN_URL,
                    auth=(self._client_id, self._client_secret),
                    data={"grant_type": "account_credentials", "account_id": self._account_id},
                )
        except httpx.HTTPError as exc:
            raise ProviderTokenError(f"zoom token request failed: {exc}") from exc

        if response.status_code != 200:
            code, message = _error_body(response)
            raise ProviderTokenError(f"zoom token error: {code} - {message}")

        data = response.json()
        logger.debug("zoom.token_fetched", expires_in=data.get("expires_in"))
        return _CachedToken(
            access_token=data["access_token"],
            expires_at=time.monotonic() + float(data["expires_in"]),
        )

    # ── Requests ─────────────────────────────────────────────────────────

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        """Send an authenticated request, raising a provider error on failure."""
        token = await self._get_token()
        try:
            async with self._client(self.TIMEOUT) as client:
                response = await client.request(
                    method,
                    f"{BASE_URL}{path}",
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as exc:
            raise ProviderNetworkError(f"zoom request failed: {exc}") from exc

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.warning(
                "zoom.request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
                error=str(error),
            )
            raise error
        return response

    async def create_meeting(self, user_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST /users/{user_id}/meetings.

        Sent at most once per call. A transport failure is raised to the worker,
        whose rollback leaves the unit pending for the next poll.
        """
        response = await self._request("POST", f"/users/{user_id}/meetings", json=payload)
        return response.json()

    @_zoom_retry
    async def get_meeting(self, meeting_id: int) -> dict[str, Any]:
        """GET /meetings/{meeting_id}."""
        response = await self._request("GET", f"/meetings/{meeting_id}")
        return response.json()

    @_zoom_retry
    async def update_meeting(self, meeting_id: int, payload: dict[str, Any]) -> None:
        """PATCH /meetings/{meeting_id}."""
        await self._request("PATCH", f"/meetings/{meeting_id}", json=payload)

    @_zoom_retry
    async def delete_meeting(self, meeting_id: int) -> None:
        """DELETE /meetings/{meeting_id}."""
        await self._request("DELETE", f"/meetings/{meeting_id}")

    @_zoom_retry
    async def end_meeting(self, meeting_id: int) -> None:
        """PUT /meetings/{meeting_id}/status with action=end."""
        await self._request("PUT", f"/meetings/{meeting_id}/status", json={"action": "end"})


# ── Provider ─────────────────────────────────────────────────────────────────


class ZoomProvider(MeetingsProvider):
    """MeetingsProvider backed by ZoomClient."""

    provider = MeetingProvider.ZOOM

    def __init__(self, client: ZoomClient) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Any) -> ZoomProvider:
        return cls(
            ZoomClient(
                account_id=settings.ZOOM_ACCOUNT_ID,
                client_id=settings.ZOOM_CLIENT_ID,
                client_secret=settings.ZOOM_CLIENT_SECRET,
            )
        )

    async def create_meeting(
        self, unit: SyncUnit, host_user_id: str | None = None
    ) -> ProviderMeeting:
        payload = build_create_payload(unit, host_user_id)
        data = await self._client.create_meeting(host_user_id or DEFAULT_USER_ID, payload)
        meeting = _to_provider_meeting(data)
        logger.info("zoom.meeting_created", provider_meeting_id=meeting.id, host=host_user_id)
        return meeting

    async def get_meeting(self, provider_meeting_id: str) -> ProviderMeeting:
        data = await self._client.get_meeting(_parse_meeting_id(provider_meeting_id))
        return _to_provider_meeting(data)

    async def update_meeting(self, provider_meeting_id: str, unit: SyncUnit) -> ProviderMeeting:
        """Patch the meeting, then re-read it for the current join URL and password."""
        meeting_id = _parse_meeting_id(provider_meeting_id)
        await self._client.update_meeting(meeting_id, build_update_payload(unit))
        data = await self._client.get_meeting(meeting_id)
        logger.info("zoom.meeting_updated", provider_meeting_id=provider_meeting_id)
        return _to_provider_meeting(data)

    async def delete_meeting(self, provider_meeting_id: str) -> None:
        await self._client.delete_meeting(_parse_meeting_id(provider_meeting_id))
        logger.info("zoom.meeting_deleted", provider_meeting_id=provider_meeting_id)

    async def end_meeting(self, provider_meeting_id: str) -> MeetingEndResult:
        """End the meeting only when Zoom reports it as started."""
        meeting_id = _parse_meeting_id(provider_meeting_id)
        data = await self._client.get_meeting(meeting_id)
        if str(data.get("status") or "").lower() != "started":
            return MeetingEndResult.ALREADY_NOT_RUNNING

        await self._client.end_meeting(meeting_id)
        logger.info("zoom.meeting_ended", provider_meeting_id=provider_meeting_id)
        return MeetingEndResult.ENDED
