"""Zoom webhook endpoint.

Receives Zoom event notifications at POST /api/v1/webhooks/zoom:

- endpoint.url_validation: answers Zoom's challenge with the HMAC of the
  plain token
- recording.completed: stores the recording share URL on the meeting
- anything else: acknowledged and ignored

Every request must carry a valid x-zm-signature over the raw body and an
x-zm-request-timestamp within MAX_TIMESTAMP_AGE_SECONDS of now. The route
answers 404 while Zoom is not configured.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from src.meetsync.api.middleware.logging import add_log_fields
from src.meetsync.config import Settings, get_settings
from src.meetsync.core.database import get_session
from src.meetsync.meetings.repository import MeetingSyncRepository
from src.meetsync.meetings.schemas import MeetingProvider

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

EVENT_RECORDING_COMPLETED = "recording.completed"
EVENT_URL_VALIDATION = "endpoint.url_validation"

HEADER_SIGNATURE = "x-zm-signature"
HEADER_TIMESTAMP = "x-zm-request-timestamp"

MAX_TIMESTAMP_AGE_SECONDS = 300


# ── Signature Verification ───────────────────────────────────────────────────


def redact_meeting_id(provider_meeting_id: str) -> str:
    """Keep the last four characters of a meeting id for log lines."""
    if len(provider_meeting_id) <= 4:
        return "*" * len(provider_meeting_id)
    return "*" * (len(provider_meeting_id) - 4) + provider_meeting_id[-4:]


def compute_hmac(message: str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed with ``secret``."""
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_signature(
    signature: str | None,
    timestamp: str | None,
    body: str,
    secret: str,
    now: float | None = None,
) -> bool:
    """Check a Zoom v0 signature and the freshness of its timestamp."""
    if not signature or not timestamp:
        return False
    try:
        sent_at = int(timestamp)
    except ValueError:
        return False

    current = int(now if now is not None else time.time())
    if abs(current - sent_at) > MAX_TIMESTAMP_AGE_SECONDS:
        return False

    expected = "v0=" + compute_hmac(f"v0:{timestamp}:{body}", secret)
    return hmac.compare_digest(signature.encode(), expected.encode())


# ── Dependencies ─────────────────────────────────────────────────────────────


def get_meetings_repository(request: Request) -> MeetingSyncRepository:
    """Repository owned by the running app, or a fresh one on the shared engine."""
    repository = getattr(request.app.state, "meetings_repository", None)
    if repository is None:
        repository = MeetingSyncRepository(session_factory=get_session)
    return repository


# ── Endpoint ─────────────────────────────────────────────────────────────────


@router.post("/zoom")
async def zoom_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository: MeetingSyncRepository = Depends(get_meetings_repository),
) -> Response:
    """Zoom event notification receiver."""
    if not (settings.zoom_enabled and settings.ZOOM_WEBHOOK_SECRET_TOKEN):
        return Response(status_code=status.HTTP_404_NOT_FOUND)

    body = (await request.body()).decode("utf-8", errors="replace")
    secret = settings.ZOOM_WEBHOOK_SECRET_TOKEN

    if not verify_signature(
        request.headers.get(HEADER_SIGNATURE),
        request.headers.get(HEADER_TIMESTAMP),
        body,
        secret,
    ):
        logger.warning("zoom_webhook.invalid_signature")
        return Response(status_code=status.HTTP_401_UNAUTHORIZED)

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("zoom_webhook.invalid_payload")
        return Response(status_code=status.HTTP_400_BAD_REQUEST)
    if not isinstance(payload, dict) or not isinstance(payload.get("event"), str):
        logger.warning("zoom_webhook.invalid_payload")
        return Response(status_code=status.HTTP_400_BAD_REQUEST)

    event = payload["event"]
    add_log_fields(request, zoom_event=event)
    event_payload = payload.get("payload")
    if not isinstance(event_payload, dict):
        event_payload = {}

    if event == EVENT_URL_VALIDATION:
        return _handle_url_validation(event_payload, secret)
    if event == EVENT_RECORDING_COMPLETED:
        return await _handle_recording_completed(request, event_payload, repository)

    logger.debug("zoom_webhook.ignored", zoom_event=event)
    return Response(status_code=status.HTTP_200_OK)


def _handle_url_validation(event_payload: dict, secret: str) -> Response:
    plain_token = event_payload.get("plainToken")
    if not isinstance(plain_token, str):
        logger.warning("zoom_webhook.missing_plain_token")
        return Response(status_code=status.HTTP_400_BAD_REQUEST)

    return JSONResponse(
        content={
            "plainToken": plain_token,
            "encryptedToken": compute_hmac(plain_token, secret),
        }
    )


async def _handle_recording_completed(
    request: Request, event_payload: dict, repository: MeetingSyncRepository
) -> Response:
    recording = event_payload.get("object")
    if not isinstance(recording, dict) or recording.get("id") is None:
        logger.warning("zoom_webhook.missing_recording_object")
        return Response(status_code=status.HTTP_400_BAD_REQUEST)

    share_url = recording.get("share_url")
    if not share_url:
        return Response(status_code=status.HTTP_200_OK)

    provider_meeting_id = str(recording["id"])
    add_log_fields(request, provider_meeting_id=redact_meeting_id(provider_meeting_id))
    try:
        await repository.update_meeting_recording_url(
            MeetingProvider.ZOOM, provider_meeting_id, share_url
        )
    except Exception:
        logger.exception(
            "zoom_webhook.recording_update_failed",
            provider_meeting_id=redact_meeting_id(provider_meeting_id),
        )
        return Response(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    return Response(status_code=status.HTTP_200_OK)
