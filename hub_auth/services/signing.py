"""Canonical JSON and HMAC-SHA256 signing shared with the hub backend.

The backend recomputes the same signatures, so the canonical form must stay
byte-stable: keys sorted at every level, compact separators, UTF-8 text kept
as-is.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

from hub_auth.core.config import settings
from hub_auth.core.errors import ConfigError

SIGNATURE_FIELD = "sig"


def require_secret(secret: str | None = None) -> str:
    value = settings.OTP_HMAC_SECRET if secret is None else secret
    value = str(value or "")
    if not value.strip():
        raise ConfigError("OTP_HMAC_SECRET is not configured")
    return value


def digest(secret: str, *parts: Any) -> str:
    key = require_secret(secret)
    message = "|".join(str(part) for part in parts)
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_code(app_id: str, identity: str, code: str, secret: str | None = None) -> str:
    return digest(require_secret(secret), app_id, identity, code)


def sign_code_issue(app_id: str, identity: str, code: str, timestamp: int, secret: str | None = None) -> str:
    return digest(require_secret(secret), app_id, identity, code, int(timestamp))


def stable_stringify(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign_payload(payload: dict[str, Any] | None, secret: str | None = None) -> str:
    key = require_secret(secret)
    unsigned = {k: v for k, v in (payload or {}).items() if k != SIGNATURE_FIELD}
    canonical = stable_stringify(unsigned)
    return hmac.new(key.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256).hexdigest()


def with_signature(payload: dict[str, Any], secret: str | None = None) -> dict[str, Any]:
    signed = dict(payload)
    signed[SIGNATURE_FIELD] = sign_payload(payload, secret)
    return signed


def verify_payload_signature(payload: dict[str, Any] | None, secret: str | None = None) -> bool:
    provided = str((payload or {}).get(SIGNATURE_FIELD) or "")
    if not provided:
        return False
    return hmac.compare_digest(provided, sign_payload(payload, secret))


def digests_match(candidate: str, stored: str) -> bool:
    if not stored:
        return False
    return hmac.compare_digest(str(candidate), str(stored))
