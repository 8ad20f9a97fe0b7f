import logging
from time import monotonic

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from wgmanager.api.wireguard import router as wireguard_router
from wgmanager.config import settings
from wgmanager.db import Base, SessionLocal, engine
from wgmanager.errors import register_error_handlers
from wgmanager.logging import configure_logging
from wgmanager.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY
from wgmanager.services import wireguard as wg_service
from wgmanager.services import wireguard_import

app = FastAPI(title="wgmanager API")
logger = logging.getLogger(__name__)
configure_logging()
register_error_handlers(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    started = monotonic()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        labels = {"method": request.method, "path": path, "status": str(status_code)}
        REQUEST_COUNT.labels(**labels).inc()
        REQUEST_LATENCY.labels(**labels).observe(monotonic() - started)
        if status_code >= 500:
            REQUEST_ERRORS.labels(**labels).inc()


app.include_router(wireguard_router, prefix="/api")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _prepare_database():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        wg_service.wg_interfaces.backfill_network_info(db)
        if settings.import_existing_configs:
            imported = wireguard_import.import_directory(db)
            if imported:
                logger.info("wg_startup_import interfaces=%s", ",".join(imported))
    finally:
        db.close()
