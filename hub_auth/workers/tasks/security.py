from __future__ import annotations

import logging
from datetime import datetime, timezone

from hub_auth.services.otp_store import get_otp_store
from hub_auth.workers.celery_app import celery_app

_LOG = logging.getLogger("hub_auth.workers.security")


@celery_app.task(name="hub_auth.workers.tasks.security.cleanup_expired_otps")
def cleanup_expired_otps():
    now = datetime.now(timezone.utc)
    deleted = get_otp_store().purge_expired(now)
    if deleted:
        _LOG.info("Purged %s expired OTP records", deleted)
    return {"deleted": int(deleted), "checked_at": now.isoformat()}
