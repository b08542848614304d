"""Tests for the Zoom webhook endpoint.

Runs the webhooks router in a minimal FastAPI app with settings overridden
and a mocked repository on app.state. Signatures are computed with the same
v0 scheme Zoom uses.
"""

from __future__ import annotations

import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.meetsync.api.middleware import logging as request_logging
from src.meetsync.api.middleware.logging import LoggingMiddleware
from src.meetsync.api.v1 import webhooks
from src.meetsync.api.v1.webhooks import compute_hmac, redact_meeting_id, verify_signature
from src.meetsync.config import Settings, get_settings
from src.meetsync.meetings.schemas import MeetingProvider

SECRET = "whsec-test"
URL = "/api/v1/webhooks/zoom"


def _settings(**overrides) -> Settings:
    values = {
        "ZOOM_ACCOUNT_ID": "acc",
        "ZOOM_CLIENT_ID": "cid",
        "ZOOM_CLIENT_SECRET": "csecret",
        "ZOOM_WEBHOOK_SECRET_TOKEN": SECRET,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _signed_headers(body: str, secret: str = SECRET, timestamp: int | None = None) -> dict:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "x-zm-request-timestamp": ts,
        "x-zm-signature": "v0=" + compute_hmac(f"v0:{ts}:{body}", secret),
        "content-type": "application/json",
    }


# ── App Fixture ──────────────────────────────────────────────────────────────


@pytest.fixture
def repository():
    repo = AsyncMock()
    repo.update_meeting_recording_url = AsyncMock(return_value=True)
    return repo


def _create_test_app(repository, settings: Settings | None = None) -> FastAPI:
    app = FastAPI()
    app.include_router(webhooks.router)
    configured = settings or _settings()
    app.dependency_overrides[get_settings] = lambda: configured
    app.state.meetings_repository = repository
    return app


@pytest.fixture
def client(repository):
    return TestClient(_create_test_app(repository))


def _post(client: TestClient, payload, secret: str = SECRET, timestamp: int | None = None):
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return client.post(URL, content=body, headers=_signed_headers(body, secret, timestamp))


# ── Signature verification ───────────────────────────────────────────────────


class TestVerifySignature:
    def test_valid_signature(self):
        body = '{"event":"x"}'
        signature = "v0=" + compute_hmac(f"v0:1700000000:{body}", SECRET)
        assert verify_signature(signature, "1700000000", body, SECRET, now=1700000100)

    def test_wrong_secret(self):
        body = '{"event":"x"}'
        signature = "v0=" + compute_hmac(f"v0:1700000000:{body}", "other")
        assert not verify_signature(signature, "1700000000", body, SECRET, now=1700000000)

    def test_tampered_body(self):
        signature = "v0=" + compute_hmac('v0:1700000000:{"event":"x"}', SECRET)
        assert not verify_signature(signature, "1700000000", '{"event":"y"}', SECRET, now=1700000000)

    @pytest.mark.parametrize("skew", [301, -301])
    def test_stale_or_future_timestamp(self, skew):
        body = "{}"
        signature = "v0=" + compute_hmac(f"v0:1700000000:{body}", SECRET)
        assert not verify_signature(signature, "1700000000", body, SECRET, now=1700000000 + skew)

    def test_timestamp_at_limit_is_accepted(self):
        body = "{}"
        signature = "v0=" + compute_hmac(f"v0:1700000000:{body}", SECRET)
        assert verify_signature(signature, "1700000000", body, SECRET, now=1700000300)

    @pytest.mark.parametrize(
        ("signature", "timestamp"),
        [(None, "1700000000"), ("v0=abc", None), ("v0=abc", "not-a-number"), ("", "")],
    )
    def test_missing_or_malformed_headers(self, signature, timestamp):
        assert not verify_signature(signature, timestamp, "{}", SECRET, now=1700000000)


# ── Endpoint ─────────────────────────────────────────────────────────────────


class TestZoomWebhook:
    def test_404_when_zoom_is_not_configured(self, repository):
        client = TestClient(_create_test_app(repository, _settings(ZOOM_CLIENT_SECRET="")))
        resp = _post(client, {"event": "recording.completed"})
        assert resp.status_code == 404

    def test_404_without_webhook_secret(self, repository):
        client = TestClient(_create_test_app(repository, _settings(ZOOM_WEBHOOK_SECRET_TOKEN="")))
        resp = _post(client, {"event": "recording.completed"})
        assert resp.status_code == 404

    def test_401_on_bad_signature(self, client, repository):
        resp = _post(client, {"event": "recording.completed"}, secret="wrong")
        assert resp.status_code == 401
        repository.update_meeting_recording_url.assert_not_awaited()

    def test_401_on_stale_timestamp(self, client):
        resp = _post(client, {"event": "meeting.started"}, timestamp=int(time.time()) - 600)
        assert resp.status_code == 401

    def test_401_without_headers(self, client):
        resp = client.post(URL, content='{"event":"meeting.started"}')
        assert resp.status_code == 401

    @pytest.mark.parametrize("body", ["not json", "[1, 2]", '{"payload": {}}', '{"event": 5}'])
    def test_400_on_malformed_payload(self, client, body):
        assert _post(client, body).status_code == 400

    def test_url_validation_challenge(self, client):
        resp = _post(
            client,
            {"event": "endpoint.url_validation", "payload": {"plainToken": "qgg8vlvZRS6UYooatFL8Aw"}},
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "plainToken": "qgg8vlvZRS6UYooatFL8Aw",
            "encryptedToken": compute_hmac("qgg8vlvZRS6UYooatFL8Aw", SECRET),
        }

    def test_url_validation_without_plain_token(self, client):
        resp = _post(client, {"event": "endpoint.url_validation", "payload": {}})
        assert resp.status_code == 400

    def test_recording_completed_stores_share_url(self, client, repository):
        resp = _post(
            client,
            {
                "event": "recording.completed",
                "payload": {
                    "object": {
                        "id": 81234567890,
                        "share_url": "https://zoom.us/rec/share/abc",
                    }
                },
            },
        )

        assert resp.status_code == 200
        repository.update_meeting_recording_url.assert_awaited_once_with(
            MeetingProvider.ZOOM, "81234567890", "https://zoom.us/rec/share/abc"
        )

    def test_recording_for_unknown_meeting_is_acknowledged(self, client, repository):
        repository.update_meeting_recording_url.return_value = False
        resp = _post(
            client,
            {
                "event": "recording.completed",
                "payload": {"object": {"id": 1, "share_url": "https://zoom.us/rec/share/x"}},
            },
        )
        assert resp.status_code == 200

    def test_recording_without_share_url_is_ignored(self, client, repository):
        resp = _post(
            client,
            {"event": "recording.completed", "payload": {"object": {"id": 81234567890}}},
        )

        assert resp.status_code == 200
        repository.update_meeting_recording_url.assert_not_awaited()

    @pytest.mark.parametrize(
        "payload",
        [{}, {"object": "nope"}, {"object": {"share_url": "https://zoom.us/rec/share/x"}}],
    )
    def test_recording_without_meeting_object(self, client, repository, payload):
        resp = _post(client, {"event": "recording.completed", "payload": payload})

        assert resp.status_code == 400
        repository.update_meeting_recording_url.assert_not_awaited()

    def test_500_when_recording_update_fails(self, client, repository):
        repository.update_meeting_recording_url.side_effect = RuntimeError("db down")
        resp = _post(
            client,
            {
                "event": "recording.completed",
                "payload": {"object": {"id": 1, "share_url": "https://zoom.us/rec/share/x"}},
            },
        )
        assert resp.status_code == 500

    def test_other_events_are_acknowledged(self, client, repository):
        resp = _post(client, {"event": "meeting.started", "payload": {"object": {"id": 1}}})

        assert resp.status_code == 200
        repository.update_meeting_recording_url.assert_not_awaited()


# ── Request logging ──────────────────────────────────────────────────────────


def _recording_payload(meeting_id: int = 81234567890) -> dict:
    return {
        "event": "recording.completed",
        "payload": {"object": {"id": meeting_id, "share_url": "https://zoom.us/rec/share/abc"}},
    }


class TestRequestLogging:
    @pytest.fixture
    def logged_client(self, repository):
        app = _create_test_app(repository)
        app.add_middleware(LoggingMiddleware)
        return TestClient(app)

    @pytest.mark.parametrize(
        ("meeting_id", "redacted"),
        [("81234567890", "*******7890"), ("1234", "****"), ("", "")],
    )
    def test_redact_meeting_id(self, meeting_id, redacted):
        assert redact_meeting_id(meeting_id) == redacted

    def test_recording_event_fields_reach_the_request_log(self, logged_client):
        with patch.object(request_logging, "logger", MagicMock()) as logger:
            resp = _post(logged_client, _recording_payload())

        assert resp.status_code == 200
        logger.info.assert_called_once()
        event, = logger.info.call_args.args
        fields = logger.info.call_args.kwargs
        assert event == "http.request_completed"
        assert fields["zoom_event"] == "recording.completed"
        assert fields["provider_meeting_id"] == "*******7890"
        assert fields["status_code"] == 200
        assert fields["request_id"] == resp.headers["X-Request-ID"]

    def test_rejected_request_has_no_event_fields(self, logged_client):
        body = json.dumps(_recording_payload())
        with patch.object(request_logging, "logger", MagicMock()) as logger:
            resp = logged_client.post(
                URL, content=body, headers=_signed_headers(body, secret="wrong")
            )

        assert resp.status_code == 401
        fields = logger.warning.call_args.kwargs
        assert fields["status_code"] == 401
        assert "zoom_event" not in fields

    def test_incoming_request_id_is_reused(self, logged_client):
        body = json.dumps({"event": "meeting.started", "payload": {}})
        headers = {**_signed_headers(body), "X-Request-ID": "zoom-retry-7"}
        with patch.object(request_logging, "logger", MagicMock()) as logger:
            resp = logged_client.post(URL, content=body, headers=headers)

        assert resp.headers["X-Request-ID"] == "zoom-retry-7"
        assert logger.info.call_args.kwargs["request_id"] == "zoom-retry-7"
        assert logger.info.call_args.kwargs["zoom_event"] == "meeting.started"
