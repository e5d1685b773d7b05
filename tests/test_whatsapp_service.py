import json
import unittest
from unittest.mock import patch

import httpx

from tests.helpers import TEST_SECRET  # noqa: F401

from hub_auth.core.config import settings
from hub_auth.core.errors import ConfigError
from hub_auth.services.whatsapp_service import (
    GreenApiWhatsAppChannel,
    MockWhatsAppChannel,
    build_otp_message,
    delivery_provider_health,
    get_delivery_channel,
)


def _client_factory(handler):
    return lambda timeout: httpx.Client(transport=httpx.MockTransport(handler), timeout=timeout)


class WhatsAppServiceTests(unittest.TestCase):
    def setUp(self):
        self._settings_backup = {
            "WHATSAPP_PROVIDER": settings.WHATSAPP_PROVIDER,
            "GREENAPI_INSTANCE_ID": settings.GREENAPI_INSTANCE_ID,
            "GREENAPI_TOKEN": settings.GREENAPI_TOKEN,
            "OTP_MESSAGE_TEMPLATE": settings.OTP_MESSAGE_TEMPLATE,
        }

    def tearDown(self):
        for key, value in self._settings_backup.items():
            setattr(settings, key, value)

    def _channel(self):
        return GreenApiWhatsAppChannel(
            api_base="https://api.green-api.com/",
            instance_id="1101",
            token="tok",
            timeout=5,
        )

    def test_message_contains_code_and_brand(self):
        message = build_otp_message("0427")
        self.assertIn("0427", message)
        self.assertIn(settings.HUB_BRAND_NAME, message)

    def test_broken_template_falls_back(self):
        settings.OTP_MESSAGE_TEMPLATE = "Code {missing}"
        self.assertIn("0427", build_otp_message("0427"))

    def test_dummy_provider_is_mock(self):
        settings.WHATSAPP_PROVIDER = "dummy"
        channel = get_delivery_channel()
        self.assertIsInstance(channel, MockWhatsAppChannel)
        with self.assertLogs("hub_auth.whatsapp", level="INFO") as logs:
            result = channel.send("966512345678", "code 9876")
        self.assertTrue(result.success)
        self.assertNotIn("9876", "\n".join(logs.output))
        self.assertNotIn("966512345678", "\n".join(logs.output))

    def test_unknown_provider_is_config_error(self):
        settings.WHATSAPP_PROVIDER = "carrier-pigeon"
        with self.assertRaises(ConfigError):
            get_delivery_channel()

    def test_greenapi_requires_credentials(self):
        settings.WHATSAPP_PROVIDER = "greenapi"
        settings.GREENAPI_INSTANCE_ID = ""
        settings.GREENAPI_TOKEN = ""
        with self.assertRaises(ConfigError):
            get_delivery_channel()

    def test_greenapi_send_posts_chat_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"idMessage": "BAE5F4886F6F2D05"})

        with patch("hub_auth.services.whatsapp_service._http_client", _client_factory(handler)):
            result = self._channel().send("966512345678", "hello")

        self.assertTrue(result.success)
        self.assertEqual(result.provider_message_id, "BAE5F4886F6F2D05")
        self.assertEqual(seen["url"], "https://api.green-api.com/waInstance1101/sendMessage/tok")
        self.assertEqual(seen["body"], {"chatId": "966512345678@c.us", "message": "hello"})

    def test_greenapi_http_error_is_failure_result(self):
        def handler(request):
            return httpx.Response(466, json={"message": "quota exceeded"})

        with patch("hub_auth.services.whatsapp_service._http_client", _client_factory(handler)):
            result = self._channel().send("966512345678", "hello")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "quota exceeded")

    def test_greenapi_timeout_fails_closed(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with patch("hub_auth.services.whatsapp_service._http_client", _client_factory(handler)):
            result = self._channel().send("966512345678", "hello")
        self.assertFalse(result.success)
        self.assertIn("timed out", result.error)

    def test_health_dummy(self):
        settings.WHATSAPP_PROVIDER = "dummy"
        health = delivery_provider_health()
        self.assertEqual(health["status"], "ok")
        self.assertEqual(health["mode"], "mock")

    def test_health_greenapi_missing_credentials(self):
        settings.WHATSAPP_PROVIDER = "greenapi"
        settings.GREENAPI_INSTANCE_ID = ""
        settings.GREENAPI_TOKEN = ""
        health = delivery_provider_health()
        self.assertEqual(health["status"], "degraded")
        self.assertFalse(health["can_send"])
        self.assertFalse(health["checks"]["token_configured"])

    def test_health_greenapi_authorized(self):
        settings.WHATSAPP_PROVIDER = "greenapi"
        settings.GREENAPI_INSTANCE_ID = "1101"
        settings.GREENAPI_TOKEN = "tok"

        def handler(request):
            return httpx.Response(200, json={"stateInstance": "authorized"})

        with patch("hub_auth.services.whatsapp_service._http_client", _client_factory(handler)):
            health = delivery_provider_health()
        self.assertEqual(health["status"], "ok")
        self.assertEqual(health["instance_state"], "authorized")

    def test_health_greenapi_not_authorized(self):
        settings.WHATSAPP_PROVIDER = "greenapi"
        settings.GREENAPI_INSTANCE_ID = "1101"
        settings.GREENAPI_TOKEN = "tok"

        def handler(request):
            return httpx.Response(200, json={"stateInstance": "notAuthorized"})

        with patch("hub_auth.services.whatsapp_service._http_client", _client_factory(handler)):
            health = delivery_provider_health()
        self.assertEqual(health["status"], "degraded")
        self.assertIn("notAuthorized", health["issues"][0])


class DeliveryHealthEndpointTests(unittest.TestCase):
    def setUp(self):
        from fastapi.testclient import TestClient

        from hub_auth.main import app

        self.client = TestClient(app)

    def tearDown(self):
        self.client.close()

    def test_requires_internal_token(self):
        response = self.client.get("/api/hub/system/delivery-health")
        self.assertEqual(response.status_code, 403)

        wrong = self.client.get("/api/hub/system/delivery-health", headers={"X-Internal-Token": "nope"})
        self.assertEqual(wrong.status_code, 403)

    def test_reports_provider_health(self):
        with (
            patch("hub_auth.core.deps.settings.INTERNAL_SERVICE_TOKEN", "internal-test-token"),
            patch("hub_auth.services.whatsapp_service.settings.WHATSAPP_PROVIDER", "dummy"),
        ):
            response = self.client.get(
                "/api/hub/system/delivery-health",
                headers={"X-Internal-Token": "internal-test-token"},
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["provider"], "dummy")
