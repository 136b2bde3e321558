"""Request-scoped accessors for the components built in the app lifespan."""

from __future__ import annotations

from fastapi import Request

from backend.app.core.config import Settings
from backend.app.notifications.service import AlertService


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.runtime.settings


def get_alert_service(request: Request) -> AlertService:
    return request.app.state.runtime.service
