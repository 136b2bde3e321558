"""
FastAPI route: FMS alert webhook.

    POST /fms/alerts

Checks, in order:
    1. source IP against ALLOWED_SOURCE_IPS (when configured)     → 403
    2. HMAC signature of the raw body (when a secret is set)      → 401
    3. body is a JSON object                                      → 422
    4. ingestion (resolve, phone, idempotency, message, enqueue)

Responses:
    202 {"queued": true, "alert_id": N}
    200 {"duplicate": true}
    200 {"skipped": true}      no template mapping, fallback disabled
    422                        missing phone / malformed body
    500                        storage failure
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Optional, Union

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from backend.app.api.deps import get_alert_service, get_settings_dep
from backend.app.api.schemas import DuplicateResponse, QueuedResponse, SkippedResponse
from backend.app.core.config import Settings
from backend.app.core.errors import ForbiddenSourceError, SignatureError, ValidationError
from backend.app.notifications.models import IngestStatus
from backend.app.notifications.service import AlertService

router = APIRouter(tags=["fms-webhook"])

SIGNATURE_PREFIX = "sha256="


def sign_body(raw: bytes, secret: str) -> str:
    """Header value a sender must present for ``raw``."""
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(raw: bytes, provided: Optional[str], secret: str) -> None:
    if not provided:
        raise SignatureError("missing signature")
    if not hmac.compare_digest(sign_body(raw, secret), provided.strip()):
        raise SignatureError()


def check_source_ip(request: Request, settings: Settings) -> None:
    allowed = settings.allowed_source_ips
    if not allowed:
        return
    client_ip = request.client.host if request.client else ""
    if client_ip not in allowed:
        raise ForbiddenSourceError(client_ip)


@router.post(
    "/fms/alerts",
    status_code=202,
    response_model=QueuedResponse,
    responses={200: {"model": Union[DuplicateResponse, SkippedResponse]}},
    summary="Receive a fleet telemetry alert",
)
async def receive_fms_alert(
    request: Request,
    settings: Settings = Depends(get_settings_dep),
    service: AlertService = Depends(get_alert_service),
):
    check_source_ip(request, settings)

    raw = await request.body()
    if settings.WEBHOOK_SIGNING_SECRET:
        verify_signature(
            raw,
            request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER),
            settings.WEBHOOK_SIGNING_SECRET,
        )

    try:
        payload = json.loads(raw)
    except ValueError:
        raise ValidationError("malformed JSON body")
    if not isinstance(payload, dict):
        raise ValidationError("body must be a JSON object")

    result = await service.ingest(payload)

    if result.status == IngestStatus.DUPLICATE:
        return JSONResponse(status_code=200, content={"duplicate": True})
    if result.status == IngestStatus.SKIPPED:
        return JSONResponse(status_code=200, content={"skipped": True})
    return QueuedResponse(alert_id=result.alert_id)
