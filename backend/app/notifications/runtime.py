"""
runtime.py — Wires settings into the delivery pipeline.

Shared by the FastAPI lifespan and the CLI so both run the exact same
components:

    Settings ─▶ engine / session factory ─▶ WhatsAppClient ─▶ DeliveryWorker
                                                                  │
                          AlertService ◀── DeliveryQueue ◀────────┘
                               │
                        RecoverySweeper
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backend.app.core.config import Settings
from backend.app.core.database import build_engine, build_session_factory, close_db, init_db
from backend.app.notifications.channels.whatsapp import ProviderConfig, WhatsAppClient
from backend.app.notifications.queue import DeliveryQueue
from backend.app.notifications.service import AlertService, RecoverySweeper
from backend.app.notifications.templates import TemplateResolver
from backend.app.notifications.worker import DeliveryWorker

logger = logging.getLogger(__name__)


@dataclass
class AlertRuntime:
    settings: Settings
    engine: Optional[AsyncEngine]
    session_factory: async_sessionmaker[AsyncSession]
    client: WhatsAppClient
    worker: DeliveryWorker
    queue: DeliveryQueue
    service: AlertService
    sweeper: RecoverySweeper

    async def start(self, *, sweep: bool = True) -> None:
        """Create tables (if configured), start workers, run the startup sweep."""
        if self.engine is not None and self.settings.DATABASE_AUTO_CREATE:
            await init_db(self.engine)
        await self.queue.start()
        if sweep:
            await self.service.recover_undelivered()
            await self.sweeper.start()

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.queue.stop()
        await self.client.close()
        if self.engine is not None:
            await close_db(self.engine)


def build_runtime(
    settings: Settings,
    *,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    client: Optional[WhatsAppClient] = None,
    queue: Optional[DeliveryQueue] = None,
) -> AlertRuntime:
    """
    Build every component from settings.

    Injected pieces are used as-is; an injected session factory means the
    caller owns the engine and its tables.
    """
    engine: Optional[AsyncEngine] = None
    if session_factory is None:
        engine = build_engine(settings)
        session_factory = build_session_factory(engine)

    if client is None:
        client = WhatsAppClient(ProviderConfig.from_settings(settings))

    worker = DeliveryWorker(
        session_factory,
        client,
        max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
        retry_delay_seconds=settings.DELIVERY_RETRY_DELAY_SECONDS,
    )
    if queue is None:
        queue = DeliveryQueue(worker.deliver, workers=settings.DELIVERY_WORKERS)

    resolver = TemplateResolver(settings.ALERT_TEMPLATES, settings.DEFAULT_LANGUAGE)
    service = AlertService(settings, session_factory, resolver, worker, queue)
    sweeper = RecoverySweeper(service, settings.DELIVERY_SWEEP_INTERVAL_SECONDS)

    return AlertRuntime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        client=client,
        worker=worker,
        queue=queue,
        service=service,
        sweeper=sweeper,
    )
