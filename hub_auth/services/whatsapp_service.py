from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from hub_auth.core.config import settings
from hub_auth.core.errors import ConfigError
from hub_auth.services.phone import mask_identity

_LOG = logging.getLogger("hub_auth.whatsapp")

MOCK_PROVIDERS = {"", "dummy", "mock", "console"}
GREENAPI_PROVIDERS = {"greenapi", "green_api"}


@dataclass
class DeliveryResult:
    success: bool
    provider: str
    provider_message_id: str | None = None
    error: str | None = None


class DeliveryChannel(Protocol):
    def send(self, destination: str, message: str) -> DeliveryResult:
        ...


def build_otp_message(code: str) -> str:
    brand = str(settings.HUB_BRAND_NAME or "").strip()
    template = str(settings.OTP_MESSAGE_TEMPLATE or "").strip() or "{code}"
    try:
        return template.format(code=code, brand=brand)
    except (KeyError, IndexError, ValueError):
        return f"{code}\n{brand}".strip()


def to_chat_id(identity: str) -> str:
    return f"{identity}@c.us"


def _http_client(timeout: float) -> httpx.Client:
    return httpx.Client(timeout=timeout)


class MockWhatsAppChannel:
    provider = "mock_whatsapp"

    def send(self, destination: str, message: str) -> DeliveryResult:
        _LOG.info("[WHATSAPP MOCK] destination=%s chars=%s", mask_identity(destination), len(message))
        return DeliveryResult(success=True, provider=self.provider, provider_message_id=None)


class GreenApiWhatsAppChannel:
    provider = "greenapi"

    def __init__(self, *, api_base: str, instance_id: str, token: str, timeout: float = 15.0):
        if not str(instance_id or "").strip() or not str(token or "").strip():
            raise ConfigError("GREENAPI_INSTANCE_ID and GREENAPI_TOKEN must be configured")
        self.api_base = str(api_base or "").rstrip("/")
        self.instance_id = str(instance_id).strip()
        self.token = str(token).strip()
        self.timeout = float(timeout)

    def _url(self, method: str) -> str:
        return f"{self.api_base}/waInstance{self.instance_id}/{method}/{self.token}"

    def send(self, destination: str, message: str) -> DeliveryResult:
        payload = {"chatId": to_chat_id(destination), "message": message}
        try:
            with _http_client(self.timeout) as client:
                response = client.post(self._url("sendMessage"), json=payload)
            data = response.json() if response.content else {}
        except (httpx.HTTPError, ValueError) as exc:
            _LOG.warning("Green API send failed destination=%s error=%s", mask_identity(destination), exc)
            return DeliveryResult(success=False, provider=self.provider, error=f"Green API send failed: {exc}")

        if response.status_code >= 400:
            detail = data.get("message") if isinstance(data, dict) else None
            _LOG.warning("Green API rejected message status=%s", response.status_code)
            return DeliveryResult(
                success=False,
                provider=self.provider,
                error=str(detail or f"Green API HTTP {response.status_code}"),
            )
        message_id = data.get("idMessage") if isinstance(data, dict) else None
        return DeliveryResult(success=True, provider=self.provider, provider_message_id=message_id or None)

    def state(self) -> dict[str, Any]:
        with _http_client(self.timeout) as client:
            response = client.get(self._url("getStateInstance"))
        response.raise_for_status()
        return dict(response.json() or {})


def get_delivery_channel() -> DeliveryChannel:
    provider = str(settings.WHATSAPP_PROVIDER or "dummy").strip().lower()
    if provider in MOCK_PROVIDERS:
        return MockWhatsAppChannel()
    if provider in GREENAPI_PROVIDERS:
        return GreenApiWhatsAppChannel(
            api_base=settings.GREENAPI_API_BASE,
            instance_id=settings.GREENAPI_INSTANCE_ID,
            token=settings.GREENAPI_TOKEN,
            timeout=settings.WHATSAPP_TIMEOUT_SECONDS,
        )
    raise ConfigError(f"Unknown WHATSAPP_PROVIDER: {provider}")


def delivery_provider_health() -> dict[str, Any]:
    provider = str(settings.WHATSAPP_PROVIDER or "dummy").strip().lower()
    if provider in MOCK_PROVIDERS:
        return {
            "provider": "dummy",
            "status": "ok",
            "mode": "mock",
            "can_send": True,
            "checks": {"mock_mode": True},
            "issues": [],
        }

    if provider in GREENAPI_PROVIDERS:
        checks = {
            "instance_configured": bool(str(settings.GREENAPI_INSTANCE_ID or "").strip()),
            "token_configured": bool(str(settings.GREENAPI_TOKEN or "").strip()),
        }
        issues: list[str] = []
        if not checks["instance_configured"]:
            issues.append("GREENAPI_INSTANCE_ID is not set")
        if not checks["token_configured"]:
            issues.append("GREENAPI_TOKEN is not set")
        can_send = all(checks.values())
        instance_state: str | None = None
        if can_send:
            channel = GreenApiWhatsAppChannel(
                api_base=settings.GREENAPI_API_BASE,
                instance_id=settings.GREENAPI_INSTANCE_ID,
                token=settings.GREENAPI_TOKEN,
                timeout=settings.WHATSAPP_TIMEOUT_SECONDS,
            )
            try:
                instance_state = str(channel.state().get("stateInstance") or "") or None
            except (httpx.HTTPError, ValueError) as exc:
                issues.append(f"Green API state check failed: {exc}")
            else:
                if instance_state != "authorized":
                    issues.append(f"Green API instance state: {instance_state or 'unknown'}")
        return {
            "provider": "greenapi",
            "status": "ok" if can_send and instance_state == "authorized" else "degraded",
            "mode": "real",
            "can_send": can_send,
            "instance_state": instance_state,
            "checks": checks,
            "issues": issues,
        }

    return {
        "provider": provider,
        "status": "error",
        "mode": "unknown",
        "can_send": False,
        "checks": {"provider_supported": False},
        "issues": [f"Unknown WHATSAPP_PROVIDER: {provider}"],
    }
