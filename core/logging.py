"""
Logging setup and request logging middleware.

- configure_logging(): root logger format/level, optional rotating log file.
- Adds X-Request-ID header (UUID4) to each response and request.state.
- Logs method, path, status, latency and request-id.
"""
from logging.handlers import RotatingFileHandler
from pathlib import Path
from starlette.requests import Request
import logging
import time
import uuid
from typing import Callable

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Rotate at 10MB, keep 5 backups
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

logger = logging.getLogger("bus_notifier.request")


def configure_logging(level: str = "INFO", log_file: str | None = None):
    """Configure root logging once per process; safe to call again."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8")
        )
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)
    # httpx logs every request at INFO; the poll loop would flood the log
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def request_logging_middleware(request: Request, call_next: Callable):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.time()
    response = await call_next(request)
    latency = (time.time() - start) * 1000.0
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "[request] id=%s method=%s path=%s status=%s latency_ms=%.2f",
        request_id, request.method, request.url.path, response.status_code, latency,
    )
    return response
