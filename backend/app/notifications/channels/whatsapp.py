"""
whatsapp.py — WhatsApp delivery channel via the Infobip HTTP API.

═══════════════════════════════════════════════════════════════════════════
WIRE FORMAT
═══════════════════════════════════════════════════════════════════════════

    POST {base}/whatsapp/1/message/template
    Authorization: App <api key>

        {"messages": [{
            "from": "<sender>",
            "to": "<msisdn>",
            "messageId": "msg_<hex>",
            "content": {
                "templateName": "overspeed_alert_en",
                "templateData": {"body": {"placeholders": ["V1", ...]}},
                "language": "en"
            }
        }]}

        200 → {"messages": [{"messageId": "...", "status": {...}}], ...}

    POST {base}/whatsapp/1/message/text

        {"from": "<sender>", "to": "<msisdn>", "messageId": "msg_<hex>",
         "content": {"text": "Vehicle V1 triggered ..."}}

        200 → {"messageId": "...", "status": {...}, ...}

═══════════════════════════════════════════════════════════════════════════
FAILURE SEMANTICS
═══════════════════════════════════════════════════════════════════════════

    • Missing sender / recipient / template → ProviderValidationError,
      raised before any network I/O.
    • Non-2xx HTTP response → returned as a ProviderResult; the caller
      inspects ``status_code``.
    • Timeout, DNS failure, connection refused → ProviderTransportError.

Connect timeout is sub-second and the total timeout a few seconds, so
a hung provider cannot stall the queue workers.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import httpx

from backend.app.core.config import Settings
from backend.app.core.errors import ProviderTransportError, ProviderValidationError
from backend.app.notifications.models import ProviderResult

logger = logging.getLogger(__name__)

TEMPLATE_PATH = "/whatsapp/1/message/template"
TEXT_PATH = "/whatsapp/1/message/text"


@dataclass(frozen=True)
class ProviderConfig:
    base_url: str
    api_key: str = ""
    sender: str = ""
    connect_timeout: float = 0.5
    timeout: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderConfig":
        return cls(
            base_url=settings.INFOBIP_BASE_URL,
            api_key=settings.INFOBIP_API_KEY or "",
            sender=settings.WABA_SENDER or "",
            connect_timeout=settings.PROVIDER_CONNECT_TIMEOUT,
            timeout=settings.PROVIDER_TIMEOUT,
        )


def _correlation_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def _parse_json(body: str) -> Dict[str, Any]:
    try:
        data = json.loads(body)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _template_message_id(data: Dict[str, Any]) -> Optional[str]:
    messages = data.get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        value = messages[0].get("messageId")
        return str(value) if value else None
    return None


def _text_message_id(data: Dict[str, Any]) -> Optional[str]:
    value = data.get("messageId")
    return str(value) if value else None


class WhatsAppClient:
    """
    Async client for template and free-text WhatsApp sends.

    Parameters
    ----------
    config : ProviderConfig
        Base URL, API key, sender and timeouts.
    http_client : httpx.AsyncClient | None
        Injected client (tests pass one built on ``httpx.MockTransport``).
        When omitted a client is created lazily and owned by this object.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout, connect=self.config.connect_timeout),
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _url(self, path: str) -> str:
        return self.config.base_url.rstrip("/") + path

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"App {self.config.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _require(self, to: str) -> None:
        if not self.config.sender:
            raise ProviderValidationError("WhatsApp sender is not configured", field="from")
        if not to:
            raise ProviderValidationError("Recipient phone number is empty", field="to")

    async def _post(self, path: str, body: Dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.post(self._url(path), json=body, headers=self._headers())
        except httpx.TransportError as exc:
            logger.warning("WhatsApp %s transport failure: %s", path, exc)
            raise ProviderTransportError(
                f"{type(exc).__name__}: {exc}", path=path,
            ) from exc

    async def send_template(
        self,
        to: str,
        template_code: str,
        placeholders: Sequence[str],
        language: str,
    ) -> ProviderResult:
        """Send a pre-approved template with ordered placeholders."""
        self._require(to)
        if not template_code:
            raise ProviderValidationError("Template code is empty", field="templateName")

        body = {
            "messages": [
                {
                    "from": self.config.sender,
                    "to": to,
                    "messageId": _correlation_id(),
                    "content": {
                        "templateName": template_code,
                        "templateData": {
                            "body": {"placeholders": [str(p) for p in placeholders]},
                        },
                        "language": language,
                    },
                }
            ]
        }
        response = await self._post(TEMPLATE_PATH, body)
        data = _parse_json(response.text)
        return ProviderResult(
            status_code=response.status_code,
            body=response.text,
            provider_message_id=_template_message_id(data) if response.is_success else None,
        )

    async def send_text(self, to: str, text: str) -> ProviderResult:
        """Send a free-text message (only valid inside a 24h session window)."""
        self._require(to)
        if not text:
            raise ProviderValidationError("Message text is empty", field="text")

        body = {
            "from": self.config.sender,
            "to": to,
            "messageId": _correlation_id(),
            "content": {"text": text},
        }
        response = await self._post(TEXT_PATH, body)
        data = _parse_json(response.text)
        return ProviderResult(
            status_code=response.status_code,
            body=response.text,
            provider_message_id=_text_message_id(data) if response.is_success else None,
        )

    def describe(self) -> Dict[str, Any]:
        """Configuration summary for health checks (never includes the key)."""
        return {
            "base_url": self.config.base_url,
            "sender_configured": bool(self.config.sender),
            "api_key_configured": bool(self.config.api_key),
            "timeouts": {
                "connect": self.config.connect_timeout,
                "total": self.config.timeout,
            },
        }
