"""Unit tests for the Zoom provider.

Covers:
- Mapping of Zoom error responses onto the provider error taxonomy
- Duration validation and the create/update request bodies
- OAuth token caching and refresh in ZoomClient
- ZoomProvider create/update/delete/end against a mocked ZoomClient
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from tenacity import wait_none

from src.meetsync.meetings.providers.base import (
    ProviderClientError,
    ProviderMeetingNotFoundError,
    ProviderNetworkError,
    ProviderRateLimitError,
    ProviderServerError,
    ProviderTokenError,
)
from src.meetsync.meetings.providers.zoom import (
    BASE_URL,
    DEFAULT_MEETING_SETTINGS,
    TOKEN_URL,
    ZoomClient,
    ZoomProvider,
    _CachedToken,
    build_create_payload,
    build_update_payload,
    duration_minutes,
    error_from_response,
)
from src.meetsync.meetings.schemas import MeetingEndResult, MeetingProvider
from tests.factories import make_unit


def _response(status_code: int, json=None, headers=None, method: str = "GET") -> httpx.Response:
    return httpx.Response(
        status_code,
        json=json,
        headers=headers,
        request=httpx.Request(method, f"{BASE_URL}/meetings/1"),
    )


def _token_response(expires_in: int = 3600, token: str = "tok-1") -> httpx.Response:
    return httpx.Response(
        200,
        json={"access_token": token, "token_type": "bearer", "expires_in": expires_in},
        request=httpx.Request("POST", TOKEN_URL),
    )


@pytest.fixture
def client():
    return ZoomClient(account_id="acc", client_id="cid", client_secret="secret")


@pytest.fixture
def mock_client():
    zoom = MagicMock(spec=ZoomClient)
    zoom.create_meeting = AsyncMock(
        return_value={"id": 81234567890, "join_url": "https://zoom.us/j/81234567890", "password": "pw"}
    )
    zoom.get_meeting = AsyncMock(
        return_value={
            "id": 81234567890,
            "join_url": "https://zoom.us/j/81234567890?pwd=abc",
            "password": "",
            "status": "waiting",
        }
    )
    zoom.update_meeting = AsyncMock(return_value=None)
    zoom.delete_meeting = AsyncMock(return_value=None)
    zoom.end_meeting = AsyncMock(return_value=None)
    return zoom


# ── Error mapping ────────────────────────────────────────────────────────────


class TestErrorFromResponse:
    def test_rate_limit_uses_retry_after_header(self):
        error = error_from_response(_response(429, headers={"Retry-After": "12"}))
        assert isinstance(error, ProviderRateLimitError)
        assert error.retry_after == 12.0
        assert error.retryable

    def test_rate_limit_defaults_to_sixty_seconds(self):
        error = error_from_response(_response(429, json={"code": 429, "message": "slow down"}))
        assert isinstance(error, ProviderRateLimitError)
        assert error.retry_after == 60.0

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failures_are_token_errors(self, status):
        error = error_from_response(_response(status, json={"code": 124, "message": "Invalid access token."}))
        assert isinstance(error, ProviderTokenError)
        assert error.retryable

    def test_meeting_not_found_code(self):
        error = error_from_response(
            _response(400, json={"code": 3001, "message": "Meeting does not exist: 1."})
        )
        assert isinstance(error, ProviderMeetingNotFoundError)
        assert not error.retryable

    def test_404_without_meeting_code_is_client_error(self):
        error = error_from_response(
            _response(404, json={"code": 1001, "message": "User does not exist: x@example.com."})
        )
        assert isinstance(error, ProviderClientError)
        assert not isinstance(error, ProviderMeetingNotFoundError)
        assert not error.retryable

    def test_404_with_meeting_code_is_not_found(self):
        error = error_from_response(_response(404, json={"code": 3001, "message": "Meeting does not exist."}))
        assert isinstance(error, ProviderMeetingNotFoundError)

    def test_other_4xx_is_client_error(self):
        error = error_from_response(
            _response(400, json={"code": 1001, "message": "User does not exist."})
        )
        assert isinstance(error, ProviderClientError)
        assert "1001" in str(error)
        assert not error.retryable

    def test_5xx_is_server_error(self):
        error = error_from_response(_response(502))
        assert isinstance(error, ProviderServerError)
        assert error.retryable


# ── Request builders ─────────────────────────────────────────────────────────


class TestDurationMinutes:
    def test_whole_minutes(self):
        assert duration_minutes(make_unit(duration_secs=5430.0)) == 90

    def test_missing_duration(self):
        assert duration_minutes(make_unit(duration_secs=None)) is None

    @pytest.mark.parametrize("seconds", [60.0, 299.0, 721 * 60.0])
    def test_out_of_range_is_client_error(self, seconds):
        with pytest.raises(ProviderClientError, match="invalid meeting duration"):
            duration_minutes(make_unit(duration_secs=seconds))

    @pytest.mark.parametrize(("seconds", "minutes"), [(300.0, 5), (720 * 60.0, 720)])
    def test_bounds_are_inclusive(self, seconds, minutes):
        assert duration_minutes(make_unit(duration_secs=seconds)) == minutes


class TestPayloads:
    def test_create_payload(self):
        unit = make_unit(
            topic="Weekly sync",
            starts_at=datetime(2026, 3, 3, 16, 30, tzinfo=timezone.utc),
            duration_secs=3600.0,
            timezone="Europe/Madrid",
            hosts=["host1@example.com", "cohost@example.com"],
            requires_password=True,
        )

        payload = build_create_payload(unit, "host1@example.com")

        assert payload["type"] == 2
        assert payload["topic"] == "Weekly sync"
        assert payload["default_password"] is True
        assert payload["start_time"] == "2026-03-03T16:30:00Z"
        assert payload["duration"] == 60
        assert payload["timezone"] == "Europe/Madrid"
        assert payload["settings"]["alternative_hosts"] == "cohost@example.com"
        for key, value in DEFAULT_MEETING_SETTINGS.items():
            assert payload["settings"][key] == value

    def test_allocated_host_is_not_an_alternative_host(self):
        unit = make_unit(hosts=["HOST1@example.com"])
        payload = build_create_payload(unit, "host1@example.com")
        assert "alternative_hosts" not in payload["settings"]

    def test_password_flag_defaults_to_false(self):
        payload = build_create_payload(make_unit(requires_password=None))
        assert payload["default_password"] is False

    def test_update_payload_excludes_current_host(self):
        unit = make_unit(
            provider_meeting_id="81234567890",
            provider_host_user_id="host1@example.com",
            hosts=["host1@example.com", "cohost@example.com"],
        )

        payload = build_update_payload(unit)

        assert "type" not in payload
        assert "default_password" not in payload
        assert payload["topic"] == unit.topic
        assert payload["settings"]["alternative_hosts"] == "cohost@example.com"

    def test_update_payload_with_invalid_duration_raises(self):
        with pytest.raises(ProviderClientError):
            build_update_payload(make_unit(duration_secs=30.0))

    def test_settings_are_not_shared_between_payloads(self):
        build_create_payload(make_unit(hosts=["cohost@example.com"]))
        assert "alternative_hosts" not in DEFAULT_MEETING_SETTINGS


# ── ZoomClient ───────────────────────────────────────────────────────────────


class TestZoomClientToken:
    async def test_token_is_fetched_once_and_cached(self, client):
        meeting = _response(200, json={"id": 1, "join_url": "https://zoom.us/j/1"})
        with (
            patch(
                "httpx.AsyncClient.post", new_callable=AsyncMock, return_value=_token_response()
            ) as mock_post,
            patch(
                "httpx.AsyncClient.request", new_callable=AsyncMock, return_value=meeting
            ) as mock_request,
        ):
            await client.get_meeting(1)
            await client.get_meeting(1)

        mock_post.assert_awaited_once()
        assert mock_post.call_args.args[0] == TOKEN_URL
        assert mock_post.call_args.kwargs["auth"] == ("cid", "secret")
        assert mock_post.call_args.kwargs["data"] == {
            "grant_type": "account_credentials",
            "account_id": "acc",
        }
        assert mock_request.await_count == 2
        headers = mock_request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer tok-1"

    async def test_token_near_expiry_is_refreshed(self, client):
        client._token = _CachedToken(access_token="old", expires_at=time.monotonic() + 100)
        meeting = _response(200, json={"id": 1, "join_url": "https://zoom.us/j/1"})
        with (
            patch(
                "httpx.AsyncClient.post",
                new_callable=AsyncMock,
                return_value=_token_response(token="tok-2"),
            ) as mock_post,
            patch(
                "httpx.AsyncClient.request", new_callable=AsyncMock, return_value=meeting
            ) as mock_request,
        ):
            await client.get_meeting(1)

        mock_post.assert_awaited_once()
        assert mock_request.call_args.kwargs["headers"]["Authorization"] == "Bearer tok-2"

    async def test_rejected_credentials_raise_token_error(self, client):
        denied = httpx.Response(
            400,
            json={"reason": "Invalid client_id or client_secret", "error": "invalid_client"},
            request=httpx.Request("POST", TOKEN_URL),
        )
        with patch("httpx.AsyncClient.post", new_callable=AsyncMock, return_value=denied):
            with pytest.raises(ProviderTokenError):
                await client.get_meeting(1)

    async def test_unreachable_token_endpoint_raises_token_error(self, client):
        with patch(
            "httpx.AsyncClient.post",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectError("connection refused"),
        ):
            with pytest.raises(ProviderTokenError):
                await client.get_meeting(1)


class TestZoomClientRequests:
    @pytest.fixture(autouse=True)
    def _seed_token(self, client):
        client._token = _CachedToken(access_token="tok", expires_at=time.monotonic() + 3600)

    async def test_create_meeting_posts_to_user(self, client):
        created = _response(
            201, json={"id": 1, "join_url": "https://zoom.us/j/1"}, method="POST"
        )
        with patch(
            "httpx.AsyncClient.request", new_callable=AsyncMock, return_value=created
        ) as mock_request:
            data = await client.create_meeting("host1@example.com", {"topic": "t"})

        assert data["id"] == 1
        method, url = mock_request.call_args.args
        assert method == "POST"
        assert url == f"{BASE_URL}/users/host1@example.com/meetings"
        assert mock_request.call_args.kwargs["json"] == {"topic": "t"}

    async def test_create_meeting_is_sent_once_after_read_timeout(self, client):
        created = _response(
            201, json={"id": 1, "join_url": "https://zoom.us/j/1"}, method="POST"
        )
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            side_effect=[httpx.ReadTimeout("timed out"), created],
        ) as mock_request:
            with pytest.raises(ProviderNetworkError):
                await client.create_meeting("me", {"topic": "t"})

        mock_request.assert_awaited_once()
        method, url = mock_request.call_args.args
        assert method == "POST"
        assert url == f"{BASE_URL}/users/me/meetings"

    async def test_end_meeting_puts_status(self, client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(204, method="PUT"),
        ) as mock_request:
            await client.end_meeting(42)

        method, url = mock_request.call_args.args
        assert method == "PUT"
        assert url == f"{BASE_URL}/meetings/42/status"
        assert mock_request.call_args.kwargs["json"] == {"action": "end"}

    async def test_error_status_raises_mapped_error(self, client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(404, json={"code": 3001, "message": "Meeting does not exist"}),
        ) as mock_request:
            with pytest.raises(ProviderMeetingNotFoundError):
                await client.delete_meeting(42)

        mock_request.assert_awaited_once()

    async def test_transport_error_becomes_network_error(self, client):
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectTimeout("timed out"),
        ):
            with pytest.raises(ProviderNetworkError):
                await client._request("GET", "/meetings/42")

    async def test_transport_errors_are_retried_three_times(self, client):
        get_meeting = ZoomClient.get_meeting.retry_with(wait=wait_none())
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            side_effect=httpx.ConnectError("connection reset"),
        ) as mock_request:
            with pytest.raises(ProviderNetworkError):
                await get_meeting(client, 42)

        assert mock_request.await_count == 3

    async def test_server_errors_are_not_retried_in_process(self, client):
        get_meeting = ZoomClient.get_meeting.retry_with(wait=wait_none())
        with patch(
            "httpx.AsyncClient.request",
            new_callable=AsyncMock,
            return_value=_response(503),
        ) as mock_request:
            with pytest.raises(ProviderServerError):
                await get_meeting(client, 42)

        mock_request.assert_awaited_once()


# ── ZoomProvider ─────────────────────────────────────────────────────────────


class TestZoomProvider:
    def test_provider_identity(self, mock_client):
        assert ZoomProvider(mock_client).provider is MeetingProvider.ZOOM

    async def test_create_uses_allocated_host(self, mock_client):
        provider = ZoomProvider(mock_client)

        meeting = await provider.create_meeting(make_unit(), "host1@example.com")

        user_id, payload = mock_client.create_meeting.call_args.args
        assert user_id == "host1@example.com"
        assert payload["type"] == 2
        assert meeting.id == "81234567890"
        assert meeting.password == "pw"

    async def test_create_without_host_uses_me(self, mock_client):
        await ZoomProvider(mock_client).create_meeting(make_unit())

        assert mock_client.create_meeting.call_args.args[0] == "me"

    async def test_create_with_invalid_duration_never_calls_zoom(self, mock_client):
        with pytest.raises(ProviderClientError):
            await ZoomProvider(mock_client).create_meeting(make_unit(duration_secs=60.0))

        mock_client.create_meeting.assert_not_awaited()

    async def test_update_patches_then_rereads(self, mock_client):
        unit = make_unit(provider_meeting_id="81234567890")

        meeting = await ZoomProvider(mock_client).update_meeting("81234567890", unit)

        mock_client.update_meeting.assert_awaited_once()
        assert mock_client.update_meeting.call_args.args[0] == 81234567890
        mock_client.get_meeting.assert_awaited_once_with(81234567890)
        assert meeting.join_url == "https://zoom.us/j/81234567890?pwd=abc"
        assert meeting.password is None

    async def test_delete(self, mock_client):
        await ZoomProvider(mock_client).delete_meeting("81234567890")

        mock_client.delete_meeting.assert_awaited_once_with(81234567890)

    async def test_invalid_meeting_id_is_client_error(self, mock_client):
        with pytest.raises(ProviderClientError, match="invalid zoom meeting id"):
            await ZoomProvider(mock_client).delete_meeting("not-a-number")

    async def test_end_started_meeting(self, mock_client):
        mock_client.get_meeting.return_value = {
            "id": 81234567890,
            "join_url": "https://zoom.us/j/81234567890",
            "status": "started",
        }

        result = await ZoomProvider(mock_client).end_meeting("81234567890")

        assert result is MeetingEndResult.ENDED
        mock_client.end_meeting.assert_awaited_once_with(81234567890)

    async def test_end_meeting_that_is_not_running(self, mock_client):
        result = await ZoomProvider(mock_client).end_meeting("81234567890")

        assert result is MeetingEndResult.ALREADY_NOT_RUNNING
        mock_client.end_meeting.assert_not_awaited()

    async def test_end_propagates_not_found(self, mock_client):
        mock_client.get_meeting.side_effect = ProviderMeetingNotFoundError("gone")

        with pytest.raises(ProviderMeetingNotFoundError):
            await ZoomProvider(mock_client).end_meeting("81234567890")

    def test_from_settings(self):
        settings = MagicMock(ZOOM_ACCOUNT_ID="acc", ZOOM_CLIENT_ID="cid", ZOOM_CLIENT_SECRET="sec")

        provider = ZoomProvider.from_settings(settings)

        assert isinstance(provider._client, ZoomClient)
        assert provider._client._account_id == "acc"
