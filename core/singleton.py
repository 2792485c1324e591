# core/singleton.py
import asyncio

from config.settings import ALERT_COOLDOWN_SECONDS, settings
from infra.redis_client import ResponseCache
from services.alert_store import AlertStore
from services.command_router import CommandRouter
from services.config_store import ConfigStore
from services.monitor_scheduler import MonitorScheduler
from services.notification_service import NotificationService
from services.route_catalog import RouteCatalog
from services.transit_client import TransitClient
from workers.inbound_worker import InboundMessageWorker

# Unified singleton registry. Nothing here touches disk or network;
# stores are loaded and monitors restored by the startup hook in main.py.
route_catalog = RouteCatalog(settings.ROUTE_CATALOG_PATH)
response_cache = ResponseCache(settings.REDIS_URL, ttl_seconds=settings.TRANSIT_CACHE_TTL)
transit_client = TransitClient(
    settings.TRANSIT_API_BASE_URL,
    timeout=settings.TRANSIT_API_TIMEOUT,
    auth=(settings.TRANSIT_API_USER, settings.TRANSIT_API_PASSWORD),
    cache=response_cache,
    catalog=route_catalog,
)
notification_service = NotificationService(settings.NOTIFIER_CHANNEL)
config_store = ConfigStore(settings.CONFIG_STORE_PATH)
alert_store = AlertStore(
    settings.ALERT_STORE_PATH,
    cooldown_seconds=ALERT_COOLDOWN_SECONDS,
    history_limit=settings.ALERT_HISTORY_LIMIT,
    retention_days=settings.ALERT_RETENTION_DAYS,
)
monitor_scheduler = MonitorScheduler(
    config_store,
    alert_store,
    transit_client,
    notification_service,
    interval_seconds=settings.CHECK_INTERVAL,
)
command_router = CommandRouter(
    monitor_scheduler,
    config_store,
    alert_store,
    transit_client,
    proximity_threshold_meters=settings.PROXIMITY_THRESHOLD_METERS,
    max_alerts_per_day=settings.MAX_ALERTS_PER_ROUTE,
)
inbound_queue: asyncio.Queue = asyncio.Queue()
inbound_worker = InboundMessageWorker(inbound_queue, command_router, notification_service)

__all__ = [
    "route_catalog",
    "response_cache",
    "transit_client",
    "notification_service",
    "config_store",
    "alert_store",
    "monitor_scheduler",
    "command_router",
    "inbound_queue",
    "inbound_worker",
]
