"""Client for the spreadsheet-backed hub backend.

Every action is posted as one signed JSON document; the backend recomputes
``sig`` with the shared ``OTP_HMAC_SECRET`` before trusting ``appId`` or
``mobile``.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

import httpx

from hub_auth.core.config import settings
from hub_auth.core.errors import StorageError
from hub_auth.services.phone import mask_identity
from hub_auth.services.signing import with_signature

_LOG = logging.getLogger("hub_auth.backend")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _http_client(timeout: float) -> httpx.Client:
    return httpx.Client(timeout=timeout, follow_redirects=True)


class HubBackendClient:
    def __init__(self, url: str, *, timeout: float = 15.0, secret: str | None = None):
        self.url = url
        self.timeout = float(timeout)
        self.secret = secret

    def post_action(self, payload: dict[str, Any]) -> dict[str, Any]:
        signed = with_signature(payload, self.secret)
        action = payload.get("action")
        try:
            with _http_client(self.timeout) as client:
                response = client.post(self.url, json=signed)
        except httpx.HTTPError as exc:
            _LOG.warning("Hub backend call failed action=%s error=%s", action, exc)
            raise StorageError(f"Hub backend unavailable: {exc}") from exc

        text = response.text or ""
        try:
            data = response.json() if text else {}
        except ValueError as exc:
            raise StorageError(f"Non-JSON response (HTTP {response.status_code}): {text[:220]}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Unexpected hub backend response (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise StorageError(str(data.get("error") or data.get("message") or f"HTTP {response.status_code}"))
        if not data.get("success"):
            raise StorageError(str(data.get("error") or "Hub backend rejected the request"), backend=data)
        return data

    def store_otp(
        self,
        *,
        app_id: str,
        identity: str,
        code_digest: str,
        expires_at: datetime,
        ts: int | None = None,
        code_signature: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload = {
            "action": "otp.store",
            "appId": app_id,
            "mobile": identity,
            "otpHash": code_digest,
            "expiresAt": expires_at.isoformat(),
            "ts": _now_ms() if ts is None else int(ts),
            "meta": dict(meta or {}),
        }
        if code_signature:
            # HMAC over appId|mobile|code|ts.
            payload["otpSig"] = code_signature
        return self.post_action(payload)

    def fail_otp(self, *, app_id: str, identity: str, code_digest: str, reason: str) -> dict[str, Any]:
        _LOG.info("Marking OTP failed app_id=%s identity=%s", app_id, mask_identity(identity))
        return self.post_action(
            {
                "action": "otp.fail",
                "appId": app_id,
                "mobile": identity,
                "otpHash": code_digest,
                "ts": _now_ms(),
                "reason": reason,
            }
        )

    def mark_verified(self, *, app_id: str, identity: str) -> dict[str, Any]:
        return self.post_action({"action": "otp.verified", "appId": app_id, "mobile": identity, "ts": _now_ms()})


def get_hub_backend() -> HubBackendClient | None:
    url = str(settings.HUB_BACKEND_URL or "").strip()
    if not url:
        return None
    return HubBackendClient(url, timeout=settings.HUB_BACKEND_TIMEOUT_SECONDS)
