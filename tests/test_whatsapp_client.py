"""
test_whatsapp_client.py — Infobip WhatsApp client against httpx.MockTransport.

Run with:
    pytest tests/test_whatsapp_client.py -v
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from backend.app.core.errors import ProviderTransportError, ProviderValidationError
from backend.app.notifications.channels.whatsapp import (
    TEMPLATE_PATH,
    TEXT_PATH,
    ProviderConfig,
    WhatsAppClient,
)

PLACEHOLDERS = ["V1", "overspeed", "m", "2025-01-01T00:00:00Z", "1", "2", "125", "A"]


class TestSendTemplate:

    def test_request_shape(self, settings, provider):
        client = provider.client(settings)
        result = asyncio.run(client.send_template("966500000000", "overspeed_alert_en", PLACEHOLDERS, "en"))

        assert result.ok
        assert result.provider_message_id == "prov-1"

        request = provider.requests[0]
        assert str(request.url) == "https://infobip.test" + TEMPLATE_PATH
        assert request.headers["Authorization"] == "App test-key"
        assert request.headers["Content-Type"] == "application/json"

        message = provider.bodies()[0]["messages"][0]
        assert message["from"] == "966111111111"
        assert message["to"] == "966500000000"
        assert message["messageId"].startswith("msg_")
        assert message["content"]["templateName"] == "overspeed_alert_en"
        assert message["content"]["templateData"]["body"]["placeholders"] == PLACEHOLDERS
        assert message["content"]["language"] == "en"

    def test_correlation_ids_are_unique(self, settings, provider):
        client = provider.client(settings)

        async def runner():
            await client.send_template("1", "t_en", [], "en")
            await client.send_template("1", "t_en", [], "en")

        asyncio.run(runner())
        ids = [b["messages"][0]["messageId"] for b in provider.bodies()]
        assert ids[0] != ids[1]

    def test_non_2xx_is_returned_not_raised(self, settings, provider):
        provider.responses = [(400, '{"requestError": "bad template"}')]
        result = asyncio.run(provider.client(settings).send_template("1", "t_en", [], "en"))
        assert not result.ok
        assert result.status_code == 400
        assert "bad template" in result.body
        assert result.provider_message_id is None

    def test_2xx_without_id(self, settings, provider):
        provider.responses = [(200, {"messages": []})]
        result = asyncio.run(provider.client(settings).send_template("1", "t_en", [], "en"))
        assert result.ok
        assert result.provider_message_id is None

    def test_empty_template_rejected_before_io(self, settings, provider):
        with pytest.raises(ProviderValidationError):
            asyncio.run(provider.client(settings).send_template("1", "", [], "en"))
        assert provider.requests == []


class TestSendText:

    def test_request_shape(self, settings, provider):
        result = asyncio.run(provider.client(settings).send_text("966500000000", "Vehicle V1 triggered SOS."))

        assert result.provider_message_id == "prov-1"
        request = provider.requests[0]
        assert request.url.path == TEXT_PATH
        body = provider.bodies()[0]
        assert body["to"] == "966500000000"
        assert body["from"] == "966111111111"
        assert body["content"] == {"text": "Vehicle V1 triggered SOS."}

    def test_empty_text_rejected(self, settings, provider):
        with pytest.raises(ProviderValidationError):
            asyncio.run(provider.client(settings).send_text("1", ""))
        assert provider.requests == []


class TestValidationAndTransport:

    def test_missing_sender(self, make_settings, provider):
        client = provider.client(make_settings(WABA_SENDER=None))
        with pytest.raises(ProviderValidationError) as exc:
            asyncio.run(client.send_template("1", "t_en", [], "en"))
        assert exc.value.details["field"] == "from"
        assert provider.requests == []

    def test_missing_recipient(self, settings, provider):
        with pytest.raises(ProviderValidationError):
            asyncio.run(provider.client(settings).send_text("", "hi"))

    def test_transport_error_wrapped(self, settings, provider):
        provider.error = httpx.ConnectTimeout("connect timed out")
        with pytest.raises(ProviderTransportError) as exc:
            asyncio.run(provider.client(settings).send_text("1", "hi"))
        assert exc.value.status_code == 502
        assert "ConnectTimeout" in exc.value.message


class TestClientConfig:

    def test_from_settings(self, make_settings):
        config = ProviderConfig.from_settings(make_settings(PROVIDER_CONNECT_TIMEOUT=0.2, PROVIDER_TIMEOUT=2))
        assert config.connect_timeout == 0.2
        assert config.timeout == 2

    def test_describe_hides_key(self, settings):
        summary = WhatsAppClient(ProviderConfig.from_settings(settings)).describe()
        assert summary["api_key_configured"] is True
        assert "test-key" not in str(summary)

    def test_owned_client_closed(self, settings):
        client = WhatsAppClient(ProviderConfig.from_settings(settings))

        async def runner():
            http = await client._get_client()
            await client.close()
            return http

        http = asyncio.run(runner())
        assert http.is_closed
