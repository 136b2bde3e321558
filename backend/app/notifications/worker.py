"""
worker.py — One delivery attempt per queued task.

State machine per message:

    pending ──send ok──────────────▶ sent
       │
       └──non-2xx / exception──▶ failed ──requeue after fixed delay──▶ (next attempt)
                                    │
                                    └── attempts == max_attempts ──▶ failed (terminal)

Every attempt:
    1. load the message (skip if missing, not pending/failed, or if its
       attempt count moved past the one the task was built against)
    2. claim the attempt: attempts += 1 with a conditional UPDATE on the
       attempts value just read, committed before the provider call
    3. call the provider: template or plain text, decided by template_code
    4. record sent / failed + provider id or last_error for that attempt

Only one worker, in any process, can win the claim for a given attempt
number, so a message is never sent twice in parallel and never more than
``max_attempts`` times. A crash after the claim leaves the attempt counted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import FleetAlertError
from backend.app.notifications.channels.whatsapp import WhatsAppClient
from backend.app.notifications.models import (
    RETRYABLE_STATUSES,
    DeliveryOutcome,
    DeliveryTask,
    Message,
    MessageStatus,
    ProviderResult,
)

logger = logging.getLogger(__name__)


class DeliveryWorker:
    """
    Sends one queued message and decides whether it should be retried.

    Parameters
    ----------
    session_factory : async_sessionmaker
        Each attempt runs in its own session.
    client : WhatsAppClient
    max_attempts : int
        Total attempts including the first one.
    retry_delay_seconds : float
        Fixed delay before a failed message is tried again.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: WhatsAppClient,
        *,
        max_attempts: int = 3,
        retry_delay_seconds: float = 3.0,
    ):
        self._session_factory = session_factory
        self._client = client
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds

    async def _send(self, message: Message, task: DeliveryTask) -> ProviderResult:
        if message.is_plain_text:
            return await self._client.send_text(message.to_msisdn, task.text)
        return await self._client.send_template(
            message.to_msisdn,
            message.template_code,
            task.placeholders,
            message.language,
        )

    async def _claim_attempt(self, session: AsyncSession, message: Message) -> bool:
        """Atomically bump ``attempts`` from the value read; False if someone else did."""
        result = await session.execute(
            update(Message)
            .where(
                Message.id == message.id,
                Message.attempts == message.attempts,
                Message.status.in_(RETRYABLE_STATUSES),
            )
            .values(attempts=Message.attempts + 1, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def _record(self, session: AsyncSession, message_id: int, attempt: int, values: Dict[str, Any]) -> None:
        await session.execute(
            update(Message)
            .where(Message.id == message_id, Message.attempts == attempt)
            .values(updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async def deliver(self, task: DeliveryTask) -> DeliveryOutcome:
        async with self._session_factory() as session:
            message: Optional[Message] = await session.get(Message, task.message_id)
            if message is None:
                logger.error(
                    "Message %s not found; dropping delivery task", task.message_id,
                    extra={"message_id": task.message_id, "outcome": "missing"},
                )
                return DeliveryOutcome(task.message_id, MessageStatus.FAILED, error="message not found")

            if message.status not in RETRYABLE_STATUSES:
                logger.info(
                    "Message %s already %s; skipping", message.id, message.status,
                    extra={"message_id": message.id, "outcome": "already_" + message.status},
                )
                return DeliveryOutcome(message.id, MessageStatus(message.status), attempts=message.attempts)

            if message.attempts >= self.max_attempts:
                return DeliveryOutcome(
                    message.id, MessageStatus(message.status),
                    attempts=message.attempts, error=message.last_error,
                )

            if message.attempts != task.attempts:
                logger.warning(
                    "Message %s is at %d attempts, task expected %d; dropping stale task",
                    message.id, message.attempts, task.attempts,
                    extra={"message_id": message.id, "outcome": "stale"},
                )
                return DeliveryOutcome(message.id, MessageStatus(message.status), attempts=message.attempts)

            attempt = message.attempts + 1
            context = {
                "message_id": message.id,
                "alert_id": message.alert_id,
                "template": message.template_code,
                "phone": message.to_msisdn,
                "alert_type": task.alert_type,
                "language": message.language,
                "attempt": attempt,
            }

            if not await self._claim_attempt(session, message):
                logger.warning(
                    "Attempt %d for message %s already claimed elsewhere; skipping",
                    attempt, message.id,
                    extra={**context, "outcome": "claimed_elsewhere"},
                )
                return DeliveryOutcome(message.id, MessageStatus(message.status), attempts=message.attempts)

            logger.info(
                "Processing WhatsApp alert %s (attempt %d/%d, %s)",
                message.id, attempt, self.max_attempts,
                "plain text" if message.is_plain_text else message.template_code,
                extra=context,
            )

            result: Optional[ProviderResult] = None
            error: Optional[str] = None
            try:
                result = await self._send(message, task)
            except FleetAlertError as exc:
                error = exc.message
            except Exception as exc:
                logger.exception("Unexpected error sending message %s", message.id, extra=context)
                error = f"{type(exc).__name__}: {exc}"

            if result is not None and result.ok and result.provider_message_id:
                await self._record(session, message.id, attempt, {
                    "status": MessageStatus.SENT.value,
                    "provider_message_id": result.provider_message_id,
                    "last_error": None,
                })
                logger.info(
                    "WhatsApp alert %s sent (provider id %s)",
                    message.id, result.provider_message_id,
                    extra={**context, "outcome": "sent", "provider_message_id": result.provider_message_id},
                )
                return DeliveryOutcome(message.id, MessageStatus.SENT, attempts=attempt)

            if error is None and result is not None:
                error = result.body or f"HTTP {result.status_code} without message id"
            await self._record(session, message.id, attempt, {
                "status": MessageStatus.FAILED.value,
                "last_error": error,
            })

        retry_in = self.retry_delay_seconds if attempt < self.max_attempts else None
        logger.error(
            "WhatsApp send failed for message %s: %s",
            message.id, error,
            extra={
                **context,
                "outcome": "retry" if retry_in is not None else "failed",
                "status_code": result.status_code if result is not None else None,
            },
        )
        return DeliveryOutcome(
            message.id, MessageStatus.FAILED,
            attempts=attempt, retry_in=retry_in, error=error,
        )
