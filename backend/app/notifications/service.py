"""
service.py — Alert ingestion and delivery orchestration.

This is the central coordinator that:
    1. Extracts fields from an inbound webhook payload
    2. Resolves the alert type to a WhatsApp template (or plain-text fallback)
    3. Validates the recipient phone number
    4. Passes the alert through the idempotency gate
    5. Creates the Message row in the same transaction
    6. Hands a DeliveryTask to the queue once the transaction is committed

═══════════════════════════════════════════════════════════════════════════
INGESTION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  webhook payload    │
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐   no mapping + fallback off
    │  Template Resolver  │ ─────────────────────────────▶  SKIPPED
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐   no phone
    │  phone validation   │ ─────────────────────────────▶  422
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐   key exists
    │  Idempotency Gate   │ ─────────────────────────────▶  DUPLICATE
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  Message (pending)  │   same transaction as the Alert
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  enqueue task       │  ─────────────────────────────▶  QUEUED
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
RECOVERY
═══════════════════════════════════════════════════════════════════════════

The queue lives in memory. Messages that were committed but never
finished (process restart, handler crash) are found by status and
re-enqueued by ``recover_undelivered``; their placeholders are rebuilt
from the stored alert payload, which is kept verbatim for this reason.

Several sweeps may run against one database (replicas, the CLI). Each
stale row is claimed with a conditional UPDATE on the ``updated_at`` and
``attempts`` values it was read with; only the sweep whose UPDATE hits the
row enqueues it. The worker then claims each attempt the same way, so the
sweep grace period only has to exceed one provider call.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import Settings
from backend.app.core.errors import StorageError, ValidationError
from backend.app.notifications.idempotency import accept_alert
from backend.app.notifications.models import (
    PLAIN_TEXT_TEMPLATE,
    RETRYABLE_STATUSES,
    Alert,
    AlertFields,
    DeliveryOutcome,
    DeliveryTask,
    IngestResult,
    IngestStatus,
    Message,
    MessageStatus,
    TemplateResolution,
)
from backend.app.notifications.placeholders import (
    build_placeholders,
    extract_fields,
    render_plain_text,
)
from backend.app.notifications.queue import DeliveryQueue
from backend.app.notifications.templates import TemplateResolver
from backend.app.notifications.worker import DeliveryWorker

logger = logging.getLogger(__name__)

PLAIN_TEXT_LANGUAGE = "en"
SWEEP_BATCH_SIZE = 500


def generate_test_payload(alert_type: str, vehicle_id: str, phone: str) -> Dict[str, Any]:
    """Dummy webhook body used by the diagnostic trigger."""
    base = {
        "alert_type": alert_type,
        "vehicle_id": vehicle_id,
        "phone_number": phone,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "customer_id": "TEST-CUSTOMER",
    }
    samples = {
        "overspeed": {
            "message": "Vehicle exceeded speed limit during test",
            "speed": "125",
            "address": "King Fahd Road, Riyadh (Test Location)",
            "location": {"lat": "24.7136", "lng": "46.6753"},
        },
        "ignition_on": {
            "message": "Vehicle ignition turned on during test",
            "address": "Olaya Street, Riyadh (Test Location)",
            "location": {"lat": "24.6877", "lng": "46.7219"},
        },
        "ignition_off": {
            "message": "Vehicle ignition turned off during test",
            "address": "Prince Mohammed Bin Abdulaziz Road, Riyadh (Test Location)",
            "location": {"lat": "24.7744", "lng": "46.7383"},
        },
    }
    extra = samples.get(alert_type, {
        "message": f"Test alert for {alert_type}",
        "address": "Test Location, Riyadh",
        "location": {"lat": "24.7136", "lng": "46.6753"},
    })
    return {**base, **extra}


class AlertService:
    """
    Glue between the HTTP/CLI surfaces and the delivery pipeline.

    Parameters
    ----------
    settings : Settings
    session_factory : async_sessionmaker
    resolver : TemplateResolver
    worker : DeliveryWorker
        Used directly for synchronous diagnostic sends.
    queue : DeliveryQueue | None
        Required for anything that enqueues.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        resolver: TemplateResolver,
        worker: DeliveryWorker,
        queue: Optional[DeliveryQueue] = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.resolver = resolver
        self.worker = worker
        self.queue = queue

    # ------------------------------------------------------------------
    # Task construction
    # ------------------------------------------------------------------

    def build_task(self, message: Message, fields: AlertFields) -> DeliveryTask:
        if message.is_plain_text:
            return DeliveryTask(
                message_id=message.id,
                alert_type=fields.alert_type,
                text=render_plain_text(fields, self.settings.SPEED_LIMIT_KMH),
                attempts=message.attempts,
            )
        return DeliveryTask(
            message_id=message.id,
            alert_type=fields.alert_type,
            placeholders=build_placeholders(fields),
            attempts=message.attempts,
        )

    def _resolve(self, alert_type: str, *, allow_fallback: bool) -> Optional[TemplateResolution]:
        resolution = self.resolver.resolve(alert_type)
        if resolution is None and allow_fallback:
            return TemplateResolution(PLAIN_TEXT_TEMPLATE, PLAIN_TEXT_LANGUAGE)
        return resolution

    def _enqueue(self, task: DeliveryTask) -> None:
        if self.queue is None:
            raise RuntimeError("No delivery queue configured")
        self.queue.enqueue(task)

    # ------------------------------------------------------------------
    # Webhook ingestion
    # ------------------------------------------------------------------

    async def ingest(self, payload: Mapping[str, Any]) -> IngestResult:
        """Accept one webhook body; enqueues delivery for new alerts."""
        fields = extract_fields(payload)

        resolution = self._resolve(
            fields.alert_type,
            allow_fallback=self.settings.PLAIN_TEXT_FALLBACK_ENABLED,
        )
        if resolution is None:
            return IngestResult(status=IngestStatus.SKIPPED)

        if not fields.phone:
            logger.error(
                "Missing phone (to_msisdn) in payload for vehicle %s", fields.vehicle_id,
                extra={"alert_type": fields.alert_type},
            )
            raise ValidationError("missing phone", field="phone_number")

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    gate = await accept_alert(session, fields, dict(payload))
                    if not gate.created:
                        return IngestResult(status=IngestStatus.DUPLICATE, alert_id=gate.alert.id)

                    message = Message(
                        alert_id=gate.alert.id,
                        to_msisdn=fields.phone,
                        template_code=resolution.template_code,
                        language=resolution.language,
                        status=MessageStatus.PENDING.value,
                        attempts=0,
                    )
                    session.add(message)
                    await session.flush()
                    alert_id, message_id = gate.alert.id, message.id
                    task = self.build_task(message, fields)
        except SQLAlchemyError as exc:
            logger.exception(
                "Database operation failed for vehicle %s (%s, template %s)",
                fields.vehicle_id, fields.alert_type, resolution.template_code,
                extra={"alert_type": fields.alert_type, "template": resolution.template_code},
            )
            raise StorageError(
                "Unable to process webhook due to database error",
                vehicle_id=fields.vehicle_id,
                alert_type=fields.alert_type,
            ) from exc

        self._enqueue(task)
        logger.info(
            "Alert %s queued as message %s (%s)",
            alert_id, message_id, resolution.template_code,
            extra={
                "alert_id": alert_id,
                "message_id": message_id,
                "template": resolution.template_code,
                "alert_type": fields.alert_type,
                "language": resolution.language,
            },
        )
        return IngestResult(
            status=IngestStatus.QUEUED,
            alert_id=alert_id,
            message_id=message_id,
            task=task,
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def trigger_test_alert(
        self,
        alert_type: str,
        phone: str,
        *,
        vehicle_id: str = "TEST-CMD",
        direct: bool = False,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send a dummy alert through the real resolver, builder and worker.

        ``direct=True`` runs one synchronous attempt without the queue;
        otherwise the task is enqueued like a webhook would be. Unmapped
        types always use the plain-text fallback here.
        """
        if not phone:
            raise ValidationError("missing phone", field="phone")

        payload = generate_test_payload(alert_type, vehicle_id, phone)
        if overrides:
            payload.update(overrides)
        fields = extract_fields(payload)
        resolution = self._resolve(fields.alert_type, allow_fallback=True)
        if resolution is None:
            raise RuntimeError(f"No template or fallback for alert type {fields.alert_type!r}")

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    gate = await accept_alert(
                        session, fields, payload, key=f"test-{uuid.uuid4().hex}",
                    )
                    message = Message(
                        alert_id=gate.alert.id,
                        to_msisdn=fields.phone or phone,
                        template_code=resolution.template_code,
                        language=resolution.language,
                        status=MessageStatus.PENDING.value,
                        attempts=0,
                    )
                    session.add(message)
                    await session.flush()
                    alert_id, message_id = gate.alert.id, message.id
                    task = self.build_task(message, fields)
        except SQLAlchemyError as exc:
            logger.exception("Test WhatsApp alert could not be stored")
            raise StorageError("Unable to store test alert", alert_type=alert_type) from exc

        summary: Dict[str, Any] = {
            "alert_id": alert_id,
            "message_id": message_id,
            "alert_type": fields.alert_type,
            "template": resolution.template_code,
            "language": resolution.language,
            "plain_text": resolution.template_code == PLAIN_TEXT_TEMPLATE,
            "phone": fields.phone,
            "direct": direct,
        }
        logger.info(
            "Test WhatsApp alert triggered for %s", alert_type,
            extra={"alert_id": alert_id, "message_id": message_id, "alert_type": alert_type},
        )

        if direct:
            outcome: DeliveryOutcome = await self.worker.deliver(task)
            summary["outcome"] = outcome.to_dict()
        else:
            self._enqueue(task)
            summary["queued"] = True
        return summary

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _claim_for_recovery(self, message: Message) -> bool:
        """
        Touch ``updated_at`` only if the row is unchanged since it was read.

        Concurrent sweeps (another replica, the CLI) read the same stale
        row; exactly one of them sees rowcount 1 and enqueues it.
        """
        stmt = (
            update(Message)
            .where(
                Message.id == message.id,
                Message.updated_at == message.updated_at,
                Message.attempts == message.attempts,
                Message.status.in_(RETRYABLE_STATUSES),
            )
            .values(updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
        return result.rowcount == 1

    async def recover_undelivered(self, *, grace_seconds: Optional[float] = None) -> int:
        """Claim and re-enqueue unfinished messages untouched for ``grace_seconds``."""
        if self.queue is None:
            raise RuntimeError("No delivery queue configured")
        grace = self.settings.DELIVERY_SWEEP_GRACE_SECONDS if grace_seconds is None else grace_seconds
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=grace)

        stmt = (
            select(Message, Alert)
            .join(Alert, Message.alert_id == Alert.id)
            .where(
                Message.status.in_(RETRYABLE_STATUSES),
                Message.attempts < self.worker.max_attempts,
                Message.updated_at <= cutoff,
            )
            .order_by(Message.id)
            .limit(SWEEP_BATCH_SIZE)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        recovered = 0
        for message, alert in rows:
            if self.queue.is_tracked(message.id):
                continue
            if not await self._claim_for_recovery(message):
                logger.debug("Message %s claimed by another sweep; skipping", message.id)
                continue
            task = self.build_task(message, extract_fields(alert.payload or {}))
            if self.queue.enqueue(task):
                recovered += 1

        if recovered:
            logger.warning("Recovered %d undelivered messages", recovered)
        return recovered


class RecoverySweeper:
    """
    Runs ``AlertService.recover_undelivered`` on a fixed interval.

    Usage:
        sweeper = RecoverySweeper(service, interval_seconds=60)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, service: AlertService, interval_seconds: float):
        self._service = service
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None or self._interval <= 0:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Recovery sweeper started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Recovery sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._service.recover_undelivered()
            except Exception:
                logger.exception("Recovery sweep failed")
