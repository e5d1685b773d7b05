"""OTP issuance and verification.

Issuance stores the digest first, then notifies the hub backend, then
delivers. Any later step failing rolls back the stored record, so a user
never holds a "ghost" code that was stored but not received (or received
but not stored).

Verification per ``(app_id, identity)``::

    NONE -> PENDING -> VERIFIED | EXPIRED | LOCKED

Success is decided by a conditional delete on the stored digest, so the
same code verifies at most once even under concurrent requests.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from hub_auth.core.config import settings
from hub_auth.core.errors import DeliveryError, RateLimitError, StorageError, ValidationError
from hub_auth.services.hub_backend import HubBackendClient, get_hub_backend
from hub_auth.services.otp_codes import generate_code, is_well_formed_code
from hub_auth.services.otp_store import OtpStore, get_otp_store
from hub_auth.services.phone import mask_identity, normalize_app_id, normalize_mobile
from hub_auth.services.rate_limit import RateLimiter, get_rate_limiter, hash_key_part
from hub_auth.services.signing import digests_match, hash_code, require_secret, sign_code_issue
from hub_auth.services.whatsapp_service import DeliveryChannel, build_otp_message, get_delivery_channel

_LOG = logging.getLogger("hub_auth.otp")


class VerifyStatus(str, enum.Enum):
    VERIFIED = "verified"
    EXPIRED = "expired"
    INVALID = "invalid"
    LOCKED = "locked"


@dataclass
class IssueResult:
    app_id: str
    identity: str
    cooldown_seconds: int
    ttl_seconds: int
    expires_at: datetime
    provider_message_id: str | None = None


@dataclass
class VerifyResult:
    status: VerifyStatus
    app_id: str
    identity: str
    attempts: int | None = None
    attempts_remaining: int | None = None
    backend: dict[str, Any] = field(default_factory=dict)

    @property
    def verified(self) -> bool:
        return self.status is VerifyStatus.VERIFIED


class OtpService:
    def __init__(
        self,
        *,
        store: OtpStore,
        limiter: RateLimiter,
        delivery: DeliveryChannel,
        backend: HubBackendClient | None = None,
        secret: str | None = None,
        code_length: int | None = None,
        ttl_seconds: int | None = None,
        max_attempts: int | None = None,
        cooldown_seconds: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.limiter = limiter
        self.delivery = delivery
        self.backend = backend
        self.secret = require_secret(secret)
        self.code_length = int(code_length if code_length is not None else settings.OTP_LENGTH)
        self.ttl_seconds = int(ttl_seconds if ttl_seconds is not None else settings.OTP_TTL_SECONDS)
        self.max_attempts = int(max_attempts if max_attempts is not None else settings.OTP_MAX_ATTEMPTS)
        self.cooldown_seconds = int(cooldown_seconds if cooldown_seconds is not None else settings.OTP_COOLDOWN_SECONDS)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _cooldown_key(self, app_id: str, identity: str) -> str:
        return f"otp:cooldown:{hash_key_part(app_id)}:{hash_key_part(identity)}"

    def _enforce_cooldown(self, app_id: str, identity: str) -> None:
        if self.cooldown_seconds <= 0:
            return
        result = self.limiter.hit(self._cooldown_key(app_id, identity), limit=1, window_seconds=self.cooldown_seconds)
        if not result.allowed:
            raise RateLimitError(
                f"OTP was sent recently. Retry in {max(result.retry_after_seconds, 1)} sec.",
                retry_after_seconds=result.retry_after_seconds,
            )

    def _release_cooldown(self, app_id: str, identity: str) -> None:
        if self.cooldown_seconds <= 0:
            return
        try:
            self.limiter.reset(self._cooldown_key(app_id, identity))
        except StorageError as exc:
            _LOG.warning("Could not release OTP cooldown identity=%s: %s", mask_identity(identity), exc)

    def issue(self, app_id: str | None, identity: str | None, *, meta: dict[str, Any] | None = None) -> IssueResult:
        app = normalize_app_id(app_id)
        mobile = normalize_mobile(identity)
        self._enforce_cooldown(app, mobile)
        try:
            return self._issue_code(app, mobile, meta)
        except (DeliveryError, StorageError):
            # No code went out; the cooldown slot is returned.
            self._release_cooldown(app, mobile)
            raise

    def _issue_code(self, app: str, mobile: str, meta: dict[str, Any] | None) -> IssueResult:
        code = generate_code(self.code_length)
        code_digest = hash_code(app, mobile, code, self.secret)
        record = self.store.put(app, mobile, code_digest, self.ttl_seconds)

        if self.backend is not None:
            ts = int(self._clock().timestamp() * 1000)
            try:
                self.backend.store_otp(
                    app_id=app,
                    identity=mobile,
                    code_digest=code_digest,
                    expires_at=record.expires_at,
                    ts=ts,
                    code_signature=sign_code_issue(app, mobile, code, ts, self.secret),
                    meta=meta,
                )
            except StorageError:
                self.store.delete(app, mobile, expected_digest=code_digest)
                raise

        result = self.delivery.send(mobile, build_otp_message(code))
        if not result.success:
            self.store.delete(app, mobile, expected_digest=code_digest)
            reason = result.error or "WhatsApp send failed"
            if self.backend is not None:
                try:
                    self.backend.fail_otp(app_id=app, identity=mobile, code_digest=code_digest, reason=reason)
                except StorageError as exc:
                    _LOG.warning("Could not mark OTP failed on hub backend: %s", exc)
            _LOG.warning("OTP delivery failed app_id=%s identity=%s reason=%s", app, mask_identity(mobile), reason)
            raise DeliveryError(f"Failed to send WhatsApp OTP: {reason}")

        _LOG.info("OTP issued app_id=%s identity=%s provider=%s", app, mask_identity(mobile), result.provider)
        return IssueResult(
            app_id=app,
            identity=mobile,
            cooldown_seconds=self.cooldown_seconds,
            ttl_seconds=self.ttl_seconds,
            expires_at=record.expires_at,
            provider_message_id=result.provider_message_id,
        )

    def _locked_or_invalid(self, app: str, mobile: str) -> VerifyStatus:
        current = self.store.get(app, mobile)
        if current is not None and current.locked and not self.store.is_expired(current, self._clock()):
            return VerifyStatus.LOCKED
        return VerifyStatus.INVALID

    def verify(self, app_id: str | None, identity: str | None, code: str | None) -> VerifyResult:
        app = normalize_app_id(app_id)
        mobile = normalize_mobile(identity)
        candidate = str(code or "").strip()
        if not is_well_formed_code(candidate, self.code_length):
            raise ValidationError(f"Code must be {self.code_length} digits")

        record = self.store.get(app, mobile)
        if record is None:
            return VerifyResult(VerifyStatus.INVALID, app, mobile)

        if self.store.is_expired(record, self._clock()):
            self.store.delete(app, mobile, expected_expires_at=record.expires_at)
            return VerifyResult(VerifyStatus.EXPIRED, app, mobile)

        if record.locked or record.attempts >= self.max_attempts:
            return VerifyResult(VerifyStatus.LOCKED, app, mobile, attempts_remaining=0)

        if digests_match(hash_code(app, mobile, candidate, self.secret), record.code_digest):
            if not self.store.delete(app, mobile, expected_digest=record.code_digest):
                # Consumed, reissued or locked by a concurrent request.
                return VerifyResult(self._locked_or_invalid(app, mobile), app, mobile)
            backend_payload: dict[str, Any] = {}
            if self.backend is not None:
                backend_payload = self.backend.mark_verified(app_id=app, identity=mobile)
            _LOG.info("OTP verified app_id=%s identity=%s", app, mask_identity(mobile))
            return VerifyResult(VerifyStatus.VERIFIED, app, mobile, backend=backend_payload)

        attempts = self.store.increment_attempts(app, mobile, max_attempts=self.max_attempts)
        if attempts is None:
            return VerifyResult(self._locked_or_invalid(app, mobile), app, mobile, attempts_remaining=0)
        if attempts >= self.max_attempts:
            _LOG.warning("OTP locked after %s attempts app_id=%s identity=%s", attempts, app, mask_identity(mobile))
            return VerifyResult(VerifyStatus.LOCKED, app, mobile, attempts=attempts, attempts_remaining=0)
        return VerifyResult(
            VerifyStatus.INVALID,
            app,
            mobile,
            attempts=attempts,
            attempts_remaining=self.max_attempts - attempts,
        )


def build_otp_service() -> OtpService:
    return OtpService(
        store=get_otp_store(),
        limiter=get_rate_limiter(),
        delivery=get_delivery_channel(),
        backend=get_hub_backend(),
    )
