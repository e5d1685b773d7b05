"""Error kinds surfaced by the OTP service.

Every error carries a stable ``kind`` so callers can branch on it without
matching message text. The HTTP layer renders them as
``{"success": false, "error": kind, "message": ...}``.
"""
from __future__ import annotations

from typing import Any


class OtpError(Exception):
    kind = "error"
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "error": self.kind, "message": self.message}
        payload.update(self.extra)
        return payload


class ConfigError(OtpError):
    """Missing secret or credentials. Fatal, never retried."""

    kind = "config"
    status_code = 500


class ValidationError(OtpError):
    kind = "validation"
    status_code = 400


class RateLimitError(OtpError):
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, *, retry_after_seconds: int, **extra: Any):
        self.retry_after_seconds = max(int(retry_after_seconds), 1)
        super().__init__(message, retryAfterSeconds=self.retry_after_seconds, **extra)


class DeliveryError(OtpError):
    kind = "delivery_failed"
    status_code = 502


class StorageError(OtpError):
    """Persistence unavailable. Transient, the caller may retry."""

    kind = "storage_unavailable"
    status_code = 503
