from celery import Celery

from leadflow.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "leadflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["leadflow.services.notifications"],
)
