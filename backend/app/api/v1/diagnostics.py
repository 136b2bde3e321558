"""
FastAPI route: WhatsApp diagnostics.

    GET  /api/test/whatsapp                — English templates available for testing
    POST /api/test/whatsapp/{alert_type}   — send a dummy alert end to end

Disabled (404) unless DIAGNOSTICS_TOKEN is set; every call must carry
``Authorization: Bearer <token>``.
"""

from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, HTTPException, Request

from backend.app.api.deps import get_alert_service, get_settings_dep
from backend.app.api.schemas import (
    DiagnosticAlertRequest,
    DiagnosticAlertResponse,
    TemplateInfo,
    TemplateListResponse,
)
from backend.app.core.config import Settings
from backend.app.notifications.service import AlertService


def require_diagnostics_token(
    request: Request,
    settings: Settings = Depends(get_settings_dep),
) -> None:
    token = settings.DIAGNOSTICS_TOKEN
    if not token:
        raise HTTPException(status_code=404, detail="Not Found")

    header = request.headers.get("Authorization", "")
    scheme, _, provided = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(provided.strip(), token):
        raise HTTPException(
            status_code=401,
            detail="Invalid diagnostics token",
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter(
    prefix="/api/test/whatsapp",
    tags=["diagnostics"],
    dependencies=[Depends(require_diagnostics_token)],
)


@router.get("", response_model=TemplateListResponse)
async def list_test_templates(service: AlertService = Depends(get_alert_service)):
    templates = [
        TemplateInfo(alert_type=alert_type, template=entry.template, priority=entry.priority.value)
        for alert_type, entry in service.resolver.english_templates().items()
    ]
    return TemplateListResponse(templates=templates)


@router.post("/{alert_type}", response_model=DiagnosticAlertResponse)
async def trigger_test_alert(
    alert_type: str,
    body: DiagnosticAlertRequest,
    service: AlertService = Depends(get_alert_service),
):
    summary = await service.trigger_test_alert(
        alert_type,
        body.phone,
        vehicle_id=body.vehicle_id,
        direct=body.direct,
        overrides=body.payload_overrides(),
    )
    if body.direct:
        summary["success"] = summary["outcome"]["status"] == "sent"
    return DiagnosticAlertResponse(**summary)
