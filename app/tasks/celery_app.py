from celery import Celery
from app.core.config import settings

celery_app = Celery("node_release_controller", broker=settings.redis_url, backend=settings.redis_url, include=["app.tasks.pipeline"])
celery_app.conf.update(task_track_started=True, result_expires=3600, broker_connection_retry_on_startup=True,)
celery_app.conf.beat_schedule = {
    "poll-sources": {"task": "poll_sources", "schedule": float(settings.source_poll_interval_seconds)},
    "expire-handshakes": {"task": "expire_handshakes", "schedule": 15.0},
}
