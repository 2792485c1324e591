"""
Main FastAPI application (entrypoint).

Responsibilities:
- Wire the WhatsApp webhook router
- Register centralized exception handlers and request-id logging
- Provide health / status endpoints for operators
- On startup: load durable state, validate the notifier, restore monitors,
  start the inbound worker and the hourly maintenance loop (alerts and
  inactive configs)
- On shutdown: stop monitors and background tasks, close HTTP clients
Notes:
- A StartupError (unreadable store, missing Twilio credentials) is not caught:
  uvicorn aborts startup and exits non-zero.
"""
import asyncio
import logging
import time

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import routes_whatsapp
from config.settings import settings
from core.exception_handlers import register_exception_handlers
from core.logging import configure_logging, request_logging_middleware
from core.response import ok
from core.singleton import (
    alert_store,
    config_store,
    inbound_worker,
    monitor_scheduler,
    notification_service,
    transit_client,
)
from models.schemas import HealthReport, StatusReport

configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes_whatsapp.router, prefix="/whatsapp", tags=["whatsapp"])

register_exception_handlers(app)

# Adds X-Request-ID header and logs every request
app.middleware("http")(request_logging_middleware)

started_at = time.monotonic()
background_tasks: list[asyncio.Task] = []

@app.get("/health")
async def health():
    """Liveness plus a summary of the monitoring core."""
    report = HealthReport(
        status="ok",
        uptimeSeconds=round(time.monotonic() - started_at, 1),
        activeMonitorCount=monitor_scheduler.active_count(),
        notifierReady=notification_service.is_ready(),
    )
    return ok(report.model_dump())

@app.get("/status")
async def status():
    """Running monitor keys, every stored configuration and alert totals."""
    report = StatusReport(
        monitoredKeys=monitor_scheduler.monitored_keys(),
        configurations=[config.to_json() for config in config_store.get_all()],
        alerts=alert_store.system_statistics(),
    )
    return ok(report.model_dump())

@app.on_event("startup")
async def on_startup():
    global started_at
    config_store.load()
    alert_store.load()
    notification_service.validate()
    monitor_scheduler.restore()

    background_tasks.append(asyncio.create_task(inbound_worker.run(), name="inbound-worker"))
    background_tasks.append(
        asyncio.create_task(
            alert_store.run_maintenance(
                settings.ALERT_CLEANUP_INTERVAL,
                extra_jobs=[lambda: config_store.cleanup_old(settings.CONFIG_RETENTION_DAYS)],
            ),
            name="maintenance",
        )
    )
    started_at = time.monotonic()
    logger.info(
        "Bus proximity notifier started: %d monitors, channel=%s, interval=%ss",
        monitor_scheduler.active_count(), notification_service.channel, settings.CHECK_INTERVAL,
    )

@app.on_event("shutdown")
async def on_shutdown():
    logger.info("Shutting down...")
    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    background_tasks.clear()
    await monitor_scheduler.shutdown()
    await transit_client.aclose()
    logger.info("Shutdown complete")

if __name__ == "__main__":
    # Run with: python main.py for local dev
    uvicorn.run("main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
