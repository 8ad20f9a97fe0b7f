"""WireGuard background tasks.

Provides Celery tasks for:
- Peer status synchronization (live handshake/traffic into peer rows)
- Restarting every interface
"""

import logging
import time

from fastapi import HTTPException

from wgmanager.celery_app import celery_app
from wgmanager.db import SessionLocal
from wgmanager.logging import configure_logging
from wgmanager.metrics import observe_job
from wgmanager.services import wireguard_deploy, wireguard_status

logger = logging.getLogger(__name__)


@celery_app.task(name="wgmanager.tasks.wireguard.sync_peer_stats")
def sync_peer_stats() -> dict[str, int]:
    """Copy live peer counters from running devices into the database."""
    configure_logging()
    started = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        updated = wireguard_status.sync_peer_stats(session)
        return {"peers_updated": updated}
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("wg_task_sync_peer_stats_failed")
        raise
    finally:
        session.close()
        observe_job("wireguard_sync_peer_stats", status, time.monotonic() - started)


@celery_app.task(name="wgmanager.tasks.wireguard.restart_all_interfaces")
def restart_all_interfaces() -> dict[str, object]:
    configure_logging()
    started = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        restarted = wireguard_deploy.restart_all(session)
        return {"restarted": restarted, "errors": None}
    except HTTPException as exc:
        status = "error"
        return {"restarted": [], "errors": exc.detail}
    finally:
        session.close()
        observe_job("wireguard_restart_all", status, time.monotonic() - started)
