"""
idempotency.py — Duplicate suppression for inbound alerts.

Webhook senders retry, sometimes twice within the same millisecond. The
gate therefore never reads before writing: it issues one
``INSERT ... ON CONFLICT (idempotency_key) DO NOTHING`` and lets the
unique index decide which request wins. The loser reloads the existing
row and reports a duplicate.

Dialects without ON CONFLICT support go through a SAVEPOINT and catch the
unique violation instead; the outcome is the same.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.notifications.models import Alert, AlertFields
from backend.app.notifications.placeholders import parse_occurred_at

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class GateResult:
    alert: Alert
    created: bool


def compute_idempotency_key(vehicle_id: str, alert_type: str, occurred_at: str) -> str:
    """sha256 hex of "vehicle|type|occurred_at"."""
    raw = f"{vehicle_id}|{alert_type}|{occurred_at}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _stored_occurred_at(value: str) -> Optional[datetime]:
    moment = parse_occurred_at(value)
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.replace(microsecond=0)


def _alert_values(fields: AlertFields, key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    return {
        "idempotency_key": key,
        "event_id": fields.event_id,
        "vehicle_id": fields.vehicle_id,
        "customer_id": fields.customer_id,
        "alert_type": fields.alert_type,
        "occurred_at": _stored_occurred_at(fields.occurred_at),
        "payload": payload,
        "created_at": now,
        "updated_at": now,
    }


async def _load(session: AsyncSession, key: str) -> Alert:
    result = await session.execute(select(Alert).where(Alert.idempotency_key == key))
    return result.scalar_one()


async def accept_alert(
    session: AsyncSession,
    fields: AlertFields,
    payload: Dict[str, Any],
    *,
    key: Optional[str] = None,
) -> GateResult:
    """
    Atomically insert the alert unless its idempotency key already exists.

    Runs inside the caller's transaction; the caller commits together with
    the message row so the pair is created together or not at all.
    """
    if key is None:
        key = compute_idempotency_key(fields.vehicle_id, fields.alert_type, fields.occurred_at)
    values = _alert_values(fields, key, payload)

    upsert = _UPSERT_DIALECTS.get(session.get_bind().dialect.name)

    if upsert is not None:
        stmt = (
            upsert(Alert)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["idempotency_key"])
            .returning(Alert.id)
        )
        new_id = (await session.execute(stmt)).scalar_one_or_none()
        alert = await _load(session, key)
        created = new_id is not None
    else:
        try:
            async with session.begin_nested():
                await session.execute(insert(Alert).values(**values))
            created = True
        except IntegrityError:
            created = False
        alert = await _load(session, key)

    if not created:
        logger.info(
            "Duplicate alert %s for vehicle %s (%s)",
            alert.id, fields.vehicle_id, fields.alert_type,
            extra={"alert_id": alert.id, "alert_type": fields.alert_type},
        )
    return GateResult(alert=alert, created=created)
