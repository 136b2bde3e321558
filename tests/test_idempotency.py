"""
test_idempotency.py — Duplicate suppression on the alerts table.

Uses a temporary SQLite database (aiosqlite) and the same ON CONFLICT
path the PostgreSQL deployment takes.

Run with:
    pytest tests/test_idempotency.py -v
"""

from __future__ import annotations

import asyncio
import hashlib
import sqlite3

from backend.app.notifications.idempotency import accept_alert, compute_idempotency_key
from backend.app.notifications.placeholders import extract_fields


def _make_payload(**overrides):
    payload = {
        "vehicle_id": "V1",
        "alert_type": "overspeed",
        "occurred_at": "2025-01-01T00:00:00Z",
        "phone_number": "966500000000",
    }
    payload.update(overrides)
    return payload


async def _accept(session_factory, payload, key=None):
    async with session_factory() as session:
        async with session.begin():
            return await accept_alert(session, extract_fields(payload), payload, key=key)


def _count_alerts(db_path) -> int:
    with sqlite3.connect(db_path) as conn:
        return conn.execute("SELECT COUNT(*) FROM alerts").fetchone()[0]


class TestComputeKey:

    def test_sha256_of_joined_fields(self):
        expected = hashlib.sha256(b"V1|overspeed|2025-01-01T00:00:00Z").hexdigest()
        assert compute_idempotency_key("V1", "overspeed", "2025-01-01T00:00:00Z") == expected

    def test_each_field_matters(self):
        base = compute_idempotency_key("V1", "overspeed", "t")
        assert base != compute_idempotency_key("V2", "overspeed", "t")
        assert base != compute_idempotency_key("V1", "SOS", "t")
        assert base != compute_idempotency_key("V1", "overspeed", "t2")

    def test_length(self):
        assert len(compute_idempotency_key("a", "b", "c")) == 64


class TestAcceptAlert:

    def test_first_insert_creates(self, run_db, db_path):
        result = run_db(lambda factory: _accept(factory, _make_payload()))
        assert result.created is True
        assert result.alert.vehicle_id == "V1"
        assert result.alert.idempotency_key == compute_idempotency_key(
            "V1", "overspeed", "2025-01-01T00:00:00Z",
        )
        assert _count_alerts(db_path) == 1

    def test_second_insert_is_duplicate(self, run_db, db_path):
        async def scenario(factory):
            first = await _accept(factory, _make_payload())
            second = await _accept(factory, _make_payload())
            return first, second

        first, second = run_db(scenario)
        assert first.created is True
        assert second.created is False
        assert second.alert.id == first.alert.id
        assert _count_alerts(db_path) == 1

    def test_concurrent_duplicates_create_one_row(self, run_db, db_path):
        async def scenario(factory):
            return await asyncio.gather(*[_accept(factory, _make_payload()) for _ in range(5)])

        results = run_db(scenario)
        assert sum(1 for r in results if r.created) == 1
        assert len({r.alert.id for r in results}) == 1
        assert _count_alerts(db_path) == 1

    def test_different_occurrence_is_new(self, run_db, db_path):
        async def scenario(factory):
            await _accept(factory, _make_payload())
            return await _accept(factory, _make_payload(occurred_at="2025-01-01T00:00:01Z"))

        assert run_db(scenario).created is True
        assert _count_alerts(db_path) == 2

    def test_explicit_key(self, run_db):
        result = run_db(lambda factory: _accept(factory, _make_payload(), key="test-abc"))
        assert result.alert.idempotency_key == "test-abc"

    def test_payload_stored_verbatim(self, run_db, db_path):
        payload = _make_payload(extra={"nested": [1, 2]})
        run_db(lambda factory: _accept(factory, payload))
        with sqlite3.connect(db_path) as conn:
            stored = conn.execute("SELECT payload FROM alerts").fetchone()[0]
        assert '"nested"' in stored

    def test_unparseable_time_stored_as_null(self, run_db, db_path):
        run_db(lambda factory: _accept(factory, _make_payload(occurred_at="whenever")))
        with sqlite3.connect(db_path) as conn:
            assert conn.execute("SELECT occurred_at FROM alerts").fetchone()[0] is None

    def test_rolled_back_insert_leaves_nothing(self, run_db, db_path):
        async def scenario(factory):
            async with factory() as session:
                await accept_alert(session, extract_fields(_make_payload()), _make_payload())
                await session.rollback()

        run_db(scenario)
        assert _count_alerts(db_path) == 0
