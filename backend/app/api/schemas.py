"""
Pydantic schemas for the webhook and diagnostics API.

The webhook body itself is NOT modelled: FMS payloads vary by sender and
are read with tolerant path lookups (see notifications.placeholders).
These schemas describe what we answer.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Webhook responses
# ---------------------------------------------------------------------------

class QueuedResponse(BaseModel):
    queued: bool = True
    alert_id: int = Field(..., examples=[42])


class DuplicateResponse(BaseModel):
    duplicate: bool = True


class SkippedResponse(BaseModel):
    skipped: bool = True


class HealthzResponse(BaseModel):
    ok: bool = True


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

class DiagnosticAlertRequest(BaseModel):
    """Body for POST /api/test/whatsapp/{alert_type}.

    Any of the payload fields below replaces the generated dummy value.
    """
    phone: str = Field(..., min_length=1, examples=["966500000000"])
    vehicle_id: str = Field("TEST-API", examples=["TEST-API"])
    direct: bool = Field(
        False,
        description="Send synchronously instead of through the queue",
    )
    message: Optional[str] = None
    speed: Optional[Union[int, float, str]] = Field(None, examples=[140])
    address: Optional[str] = None
    occurred_at: Optional[str] = Field(None, examples=["2025-08-17T14:25:00Z"])
    location: Optional[Dict[str, Any]] = Field(None, examples=[{"lat": "24.7", "lng": "46.6"}])

    def payload_overrides(self) -> Dict[str, Any]:
        return self.model_dump(
            include={"message", "speed", "address", "occurred_at", "location"},
            exclude_none=True,
        )


class DiagnosticAlertResponse(BaseModel):
    success: bool = True
    alert_id: int
    message_id: int
    alert_type: str
    template: str
    language: str
    plain_text: bool
    phone: Optional[str] = None
    direct: bool = False
    queued: bool = False
    outcome: Optional[Dict[str, Any]] = None


class TemplateInfo(BaseModel):
    alert_type: str
    template: str
    priority: str


class TemplateListResponse(BaseModel):
    templates: List[TemplateInfo]
    usage: str = "POST /api/test/whatsapp/{alert_type} with {\"phone\": \"966500000000\"}"
