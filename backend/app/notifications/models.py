"""
models.py — Shared data structures for the WhatsApp alert pipeline.

Defines:
    • MessageStatus    — delivery state of one outbound message
    • Alert            — ORM row: one deduplicated telemetry event
    • Message          — ORM row: one outbound WhatsApp notification
    • AlertFields      — normalised view of an inbound webhook payload
    • TemplateResolution — resolved (template code, language) pair
    • DeliveryTask     — unit of work handed to the delivery queue
    • ProviderResult   — structured answer from the WhatsApp provider
    • DeliveryOutcome  — what a single delivery attempt decided

═══════════════════════════════════════════════════════════════════════════
TABLES
═══════════════════════════════════════════════════════════════════════════

    alerts
    ──────────────────────────────────────────────────────────────────
    | id              | PK                                            |
    | idempotency_key | sha256(vehicle|type|occurred_at), UNIQUE      |
    | event_id        | upstream id, nullable                         |
    | vehicle_id      |                                               |
    | customer_id     | nullable                                      |
    | alert_type      | raw string as received                        |
    | occurred_at     | truncated to whole seconds, nullable          |
    | payload         | webhook body, verbatim                        |
    ──────────────────────────────────────────────────────────────────
    INDEX (alert_type, created_at)

    messages
    ──────────────────────────────────────────────────────────────────
    | id                  | PK                                        |
    | alert_id            | FK alerts.id                              |
    | to_msisdn           | recipient phone                           |
    | template_code       | or "plain_text_fallback"                  |
    | language            | two-letter code                           |
    | status              | pending | sent | failed (| delivered|read) |
    | provider_message_id | set on success                            |
    | attempts            | +1 per delivery attempt                   |
    | last_error          | provider body or exception text           |
    ──────────────────────────────────────────────────────────────────
    INDEX (status, created_at)  — retry sweeps

Alerts are never mutated or deleted. Messages are created together with
their alert and afterwards only touched by the delivery worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from backend.app.core.database import Base

# Template code stored on messages sent as free text
PLAIN_TEXT_TEMPLATE = "plain_text_fallback"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class MessageStatus(str, Enum):
    """Delivery state machine per message."""
    PENDING   = "pending"     # created, first attempt not made yet
    SENT      = "sent"        # provider accepted and returned an id
    FAILED    = "failed"      # last attempt failed; may still be requeued
    DELIVERED = "delivered"   # reserved for provider delivery callbacks
    READ      = "read"        # reserved for provider read callbacks


# Only these may be (re)sent; delivered/read come from provider callbacks
RETRYABLE_STATUSES = (MessageStatus.PENDING.value, MessageStatus.FAILED.value)


class IngestStatus(str, Enum):
    """How the webhook handler disposed of one inbound alert."""
    QUEUED    = "queued"
    DUPLICATE = "duplicate"
    SKIPPED   = "skipped"


# ═══════════════════════════════════════════════════════════════════════════
# ORM Rows
# ═══════════════════════════════════════════════════════════════════════════

class Alert(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(64), nullable=False, unique=True)
    event_id = Column(String(255), nullable=True)
    vehicle_id = Column(String(255), nullable=False)
    customer_id = Column(String(255), nullable=True)
    alert_type = Column(String(255), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    messages = relationship("Message", back_populates="alert")

    __table_args__ = (
        Index("ix_alerts_alert_type_created", "alert_type", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"Alert(id={self.id}, vehicle_id={self.vehicle_id}, "
            f"alert_type={self.alert_type})"
        )


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    alert_id = Column(Integer, ForeignKey("alerts.id"), nullable=False)
    to_msisdn = Column(String(32), nullable=False)
    template_code = Column(String(255), nullable=False)
    language = Column(String(8), nullable=False, default="ar")
    status = Column(String(16), nullable=False, default=MessageStatus.PENDING.value)
    provider_message_id = Column(String(255), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    alert = relationship("Alert", back_populates="messages")

    __table_args__ = (
        Index("ix_messages_status_created", "status", "created_at"),
    )

    @property
    def is_plain_text(self) -> bool:
        return self.template_code == PLAIN_TEXT_TEMPLATE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "to_msisdn": self.to_msisdn,
            "template_code": self.template_code,
            "language": self.language,
            "status": self.status,
            "provider_message_id": self.provider_message_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }

    def __repr__(self) -> str:
        return (
            f"Message(id={self.id}, alert_id={self.alert_id}, "
            f"status={self.status}, attempts={self.attempts})"
        )


# ═══════════════════════════════════════════════════════════════════════════
# Pipeline Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertFields:
    """
    Fields pulled out of a loosely structured webhook body.

    Attributes
    ----------
    alert_type : str
        Raw alert type exactly as the sender wrote it.
    vehicle_id : str
        "NA" when the sender did not identify the vehicle.
    occurred_at : str
        Upstream timestamp string, untouched (it feeds the idempotency key).
    phone : str | None
        Recipient MSISDN; None means the webhook must be rejected.
    """
    alert_type: str
    vehicle_id: str
    occurred_at: str
    message: str = ""
    customer_id: Optional[str] = None
    event_id: Optional[str] = None
    phone: Optional[str] = None
    speed: str = ""
    address: str = ""
    latitude: str = ""
    longitude: str = ""


@dataclass(frozen=True)
class TemplateResolution:
    template_code: str
    language: str


@dataclass(frozen=True)
class DeliveryTask:
    """
    Everything the worker needs to send one message without re-reading
    the alert: the ordered placeholders (template sends) or the rendered
    sentence (plain-text sends).

    ``attempts`` is the attempt count the task was built against; the
    worker only claims the next attempt if the row still has that count,
    so a stale or duplicated task never sends.
    """
    message_id: int
    alert_type: str = ""
    placeholders: List[str] = field(default_factory=list)
    text: str = ""
    attempts: int = 0

    def after(self, attempts: int) -> "DeliveryTask":
        return replace(self, attempts=attempts)


@dataclass
class ProviderResult:
    """Structured provider answer; non-2xx responses are results, not errors."""
    status_code: int
    body: str
    provider_message_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class DeliveryOutcome:
    message_id: int
    status: MessageStatus
    attempts: int = 0
    retry_in: Optional[float] = None  # seconds; None = do not requeue
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "retry_in": self.retry_in,
            "error": self.error,
        }


@dataclass
class IngestResult:
    status: IngestStatus
    alert_id: Optional[int] = None
    message_id: Optional[int] = None
    task: Optional[DeliveryTask] = None
