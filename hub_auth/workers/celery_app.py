from celery import Celery
from hub_auth.core.config import settings

celery_app = Celery(
    "hub_auth",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["hub_auth.workers.tasks.security"],
)

celery_app.conf.beat_schedule = {
    "cleanup_expired_otps": {"task": "hub_auth.workers.tasks.security.cleanup_expired_otps", "schedule": 3600.0},
}
celery_app.conf.timezone = "Asia/Riyadh"
