"""
Shared fixtures: SQLite-backed settings, a recording provider transport,
and a recording queue that stands in for the asyncio workers.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from backend.app.core.config import Settings
from backend.app.core.database import build_engine, build_session_factory, close_db, init_db
from backend.app.notifications.channels.whatsapp import ProviderConfig, WhatsAppClient
from backend.app.notifications.models import DeliveryTask

SUCCESS_BODY = {
    "messages": [{"messageId": "prov-1", "status": {"groupName": "PENDING"}}],
    "messageId": "prov-1",
}


class FakeProvider:
    """httpx.MockTransport handler that records requests and replays responses."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responses: List[Any] = []
        self.error: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.responses:
            status, body = self.responses.pop(0)
        else:
            status, body = 200, SUCCESS_BODY
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def always(self, status: int, body: Any) -> None:
        self.responses = [(status, body)] * 50

    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    def client(self, settings: Settings) -> WhatsAppClient:
        return WhatsAppClient(
            ProviderConfig.from_settings(settings),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self)),
        )


class SlowProvider(FakeProvider):
    """FakeProvider that holds every response for ``delay`` seconds."""

    def __init__(self, delay: float = 0.1):
        super().__init__()
        self.delay = delay

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(self.delay)
        return super().__call__(request)


class RecordingQueue:
    """Duck-typed DeliveryQueue that only records what was enqueued."""

    def __init__(self):
        self.tasks: List[DeliveryTask] = []
        self.running = False

    async def start(self) -> None:
        self.running = True

    async def stop(self) -> None:
        self.running = False

    def enqueue(self, task: DeliveryTask, delay: float = 0.0) -> bool:
        self.tasks.append(task)
        return True

    def is_tracked(self, message_id: int) -> bool:
        return False

    def stats(self) -> Dict[str, int]:
        return {"ready": len(self.tasks), "delayed": 0, "in_flight": 0, "workers": 0, "processed": 0}

    async def drain(self, timeout: float = 30.0) -> bool:
        return True


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "alerts.db"


@pytest.fixture
def make_settings(db_path):
    def factory(**overrides: Any) -> Settings:
        values: Dict[str, Any] = {
            "ENVIRONMENT": "testing",
            "LOG_LEVEL": "WARNING",
            "DATABASE_URL": f"sqlite+aiosqlite:///{db_path}",
            "INFOBIP_BASE_URL": "https://infobip.test",
            "INFOBIP_API_KEY": "test-key",
            "WABA_SENDER": "966111111111",
            "DELIVERY_RETRY_DELAY_SECONDS": 0.01,
            "DELIVERY_SWEEP_INTERVAL_SECONDS": 0,
            "WEBHOOK_SIGNING_SECRET": None,
            "ALLOWED_SOURCE_IPS": None,
            "DIAGNOSTICS_TOKEN": None,
        }
        values.update(overrides)
        return Settings(**values)
    return factory


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def slow_provider():
    return SlowProvider(delay=0.1)


@pytest.fixture
def recording_queue():
    return RecordingQueue()


@pytest.fixture
def run_db(settings):
    """Run ``await fn(session_factory)`` against a freshly initialised SQLite file."""
    def run(fn):
        async def runner():
            engine = build_engine(settings)
            await init_db(engine)
            try:
                return await fn(build_session_factory(engine))
            finally:
                await close_db(engine)
        return asyncio.run(runner())
    return run
