import os
import re
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("OTP_HMAC_SECRET", "test-otp-secret")

from hub_auth.services.whatsapp_service import DeliveryResult

TEST_SECRET = os.environ["OTP_HMAC_SECRET"]


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingChannel:
    """Delivery stub that keeps every message so tests can read the code."""

    provider = "recording"

    def __init__(self, *, fail_with: str | None = None):
        self.fail_with = fail_with
        self.sent: list[tuple[str, str]] = []

    def send(self, destination: str, message: str) -> DeliveryResult:
        self.sent.append((destination, message))
        if self.fail_with:
            return DeliveryResult(success=False, provider=self.provider, error=self.fail_with)
        return DeliveryResult(success=True, provider=self.provider, provider_message_id=f"msg-{len(self.sent)}")

    def last_code(self) -> str:
        _, message = self.sent[-1]
        return re.findall(r"\d{4,}", message)[0]


def wrong_code_for(code: str) -> str:
    return "0" * len(code) if code != "0" * len(code) else "1" * len(code)
