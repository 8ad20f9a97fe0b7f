from datetime import timedelta

from celery import Celery

from wgmanager.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url or settings.redis_url,
        "result_backend": settings.celery_result_backend or settings.redis_url,
        "timezone": settings.celery_timezone,
    }


def build_beat_schedule() -> dict:
    return {
        "wireguard_sync_peer_stats": {
            "task": "wgmanager.tasks.wireguard.sync_peer_stats",
            "schedule": timedelta(seconds=max(settings.peer_stats_sync_seconds, 5)),
        },
    }


celery_app = Celery("wgmanager")
celery_app.conf.update(get_celery_config())
celery_app.conf.beat_schedule = build_beat_schedule()
celery_app.autodiscover_tasks(["wgmanager.tasks"])
