# services/monitor_scheduler.py
"""
Per-(chat, route) polling of vehicle positions and proximity alerts.

Each active monitor key owns one asyncio task that ticks at a fixed period:

    Stopped --start()--> Running --stop()/stop_all()/shutdown()--> Stopped

Guarantees:
- one task per key: start() on a running key stops the old task first;
- ticks of one key never overlap: the task awaits its tick before scheduling
  the next one (missed fires are skipped), and a per-key lock that outlives
  task replacement keeps an old in-flight tick from racing the new task;
- after stop() returns no new tick starts for the key; a tick already in
  flight may finish;
- a failing tick is logged and never kills the task or the process.

The task map is not authoritative: restore() rebuilds it from the active
configs in ConfigStore after a restart.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from models.monitor import MonitorConfig, local_now, monitor_key
from models.transit import VehiclePosition
from services.alert_store import AlertStore
from services.config_store import ConfigStore
from services.notification_service import NotificationService
from services.transit_client import TransitClient
from tools.geo import distance_meters, estimate_eta_seconds, is_valid_coordinate

logger = logging.getLogger(__name__)

MonitorKey = Tuple[str, str]


@dataclass
class _MonitorHandle:
    config: MonitorConfig
    task: Optional[asyncio.Task] = None
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    ticks: int = 0


def format_proximity_alert(config: MonitorConfig, vehicle: VehiclePosition, distance: float,
                           eta_seconds: int | None = None, now: datetime | None = None) -> str:
    now = now or local_now()
    lines = [
        "🔔 *Bus approaching!*",
        "",
        f"🚌 Route: {config.route_number}" + (f" - {config.route_name}" if config.route_name else ""),
        f"📍 Stop: {config.stop.name}",
        f"📏 Distance: {round(distance)}m",
        f"🚗 Vehicle: {vehicle.prefix or vehicle.vehicle_id}",
    ]
    if eta_seconds is not None:
        minutes = max(1, round(eta_seconds / 60))
        lines.append(f"⏱️ About {minutes} min away")
    lines += [f"⏰ {now.strftime('%H:%M:%S')}", "", "The bus is getting close to your stop!"]
    return "\n".join(lines)


class MonitorScheduler:
    def __init__(
        self,
        config_store: ConfigStore,
        alert_store: AlertStore,
        transit_client: TransitClient,
        notifier: NotificationService,
        interval_seconds: float = 60,
    ):
        self.config_store = config_store
        self.alert_store = alert_store
        self.transit = transit_client
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self._handles: Dict[MonitorKey, _MonitorHandle] = {}
        self._tick_locks: Dict[MonitorKey, asyncio.Lock] = {}

    # ------------- LIFECYCLE -------------
    def start(self, config: MonitorConfig) -> MonitorConfig:
        """
        Persist `config` as active and (re)start its polling task.

        Must be called from within the running event loop.
        """
        key = (config.chat_id, config.route_number)
        if self._halt(key):
            logger.info("Replacing running monitor %s", monitor_key(*key))
        config = config.model_copy(update={"is_active": True})
        saved = self.config_store.save(config.chat_id, config.route_number, config)
        self._spawn(saved)
        return saved

    def stop(self, chat_id: str, route_number: str) -> bool:
        """Stop one monitor and deactivate its config; True if a task was running."""
        found = self._halt((chat_id, route_number))
        self.config_store.deactivate(chat_id, route_number)
        if found:
            logger.info("Stopped monitoring for route %s (chat: %s)", route_number, chat_id)
        return found

    def stop_all(self, chat_id: str) -> int:
        """Stop every monitor of a chat; returns the number of tasks stopped."""
        stopped = sum(1 for key in list(self._handles) if key[0] == chat_id and self._halt(key))
        self.config_store.deactivate_all(chat_id)
        if stopped:
            logger.info("Stopped %d monitors for chat %s", stopped, chat_id)
        return stopped

    def restore(self) -> int:
        """Start a task for every active config on disk; returns how many."""
        restored = 0
        for config in self.config_store.get_all():
            if not config.is_active:
                continue
            self._halt((config.chat_id, config.route_number))
            self._spawn(config)
            restored += 1
        logger.info("Restored %d active monitors", restored)
        return restored

    async def shutdown(self, timeout: float = 10.0):
        """Stop all tasks, letting in-flight ticks finish up to `timeout`."""
        tasks = []
        for key in list(self._handles):
            handle = self._handles.pop(key)
            handle.stopped.set()
            if handle.task is not None:
                tasks.append(handle.task)
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Monitor scheduler stopped (%d tasks, %d cancelled)", len(tasks), len(pending))

    # ------------- VIEWS -------------
    def is_running(self, chat_id: str, route_number: str) -> bool:
        return (chat_id, route_number) in self._handles

    def active_count(self) -> int:
        return len(self._handles)

    def monitored_keys(self) -> List[str]:
        return [monitor_key(*key) for key in self._handles]

    def tick_count(self, chat_id: str, route_number: str) -> int:
        handle = self._handles.get((chat_id, route_number))
        return handle.ticks if handle else 0

    # ------------- INTERNALS -------------
    def _halt(self, key: MonitorKey) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.stopped.set()
        return True

    def _spawn(self, config: MonitorConfig):
        key = (config.chat_id, config.route_number)
        handle = _MonitorHandle(config=config)
        handle.task = asyncio.create_task(self._run(key, handle), name=f"monitor:{monitor_key(*key)}")
        self._handles[key] = handle
        logger.info(
            "Started monitoring for route %s (chat: %s) every %ss",
            config.route_number, config.chat_id, self.interval_seconds,
        )

    def _tick_lock(self, key: MonitorKey) -> asyncio.Lock:
        lock = self._tick_locks.get(key)
        if lock is None:
            lock = self._tick_locks[key] = asyncio.Lock()
        return lock

    async def _run(self, key: MonitorKey, handle: _MonitorHandle):
        try:
            await self._loop(key, handle)
        finally:
            # a replacement task or an in-flight tick still needs the lock
            lock = self._tick_locks.get(key)
            if key not in self._handles and lock is not None and not lock.locked():
                del self._tick_locks[key]

    async def _loop(self, key: MonitorKey, handle: _MonitorHandle):
        loop = asyncio.get_running_loop()
        next_fire = loop.time()
        while not handle.stopped.is_set():
            delay = next_fire - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(handle.stopped.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass

            async with self._tick_lock(key):
                if handle.stopped.is_set():
                    break
                config = self.config_store.get(*key)
                if config is None or not config.is_active:
                    logger.info("Monitor %s no longer active, ending task", monitor_key(*key))
                    if self._handles.get(key) is handle:
                        del self._handles[key]
                    break
                handle.config = config
                handle.ticks += 1
                try:
                    await self.tick(config)
                except Exception as e:
                    logger.exception("Monitoring error for %s: %s", monitor_key(*key), e)

            next_fire += self.interval_seconds
            now = loop.time()
            if next_fire <= now:
                skipped = int((now - next_fire) // self.interval_seconds) + 1
                next_fire += skipped * self.interval_seconds
                logger.warning("Monitor %s tick overran, skipped %d fire(s)", monitor_key(*key), skipped)

    async def _stop_coordinates(self, config: MonitorConfig) -> Optional[Tuple[float, float]]:
        stop = config.stop
        if is_valid_coordinate(stop.latitude, stop.longitude):
            return stop.latitude, stop.longitude
        located = await self.transit.get_stop_location(stop.id, route_id=config.route_id)
        if located is not None and is_valid_coordinate(located.latitude, located.longitude):
            return located.latitude, located.longitude
        return None

    async def tick(self, config: MonitorConfig) -> int:
        """
        One poll for one monitor. Returns the number of alerts delivered.

        Provider and notifier failures are logged and skipped; nothing here
        is surfaced to the chat.
        """
        try:
            vehicles = await self.transit.get_vehicle_positions(config.route_id, route_number=config.route_number)
        except Exception as e:
            logger.warning("Vehicle fetch failed for route %s: %s", config.route_number, e)
            return 0
        if not vehicles:
            logger.debug("No vehicles for route %s", config.route_number)
            return 0

        target = await self._stop_coordinates(config)
        if target is None:
            logger.warning(
                "Stop %s of %s has no valid location, skipping tick", config.stop.id, config.key
            )
            return 0

        sent = 0
        for vehicle in vehicles:
            distance = distance_meters(vehicle.latitude, vehicle.longitude, *target)
            if math.isnan(distance) or distance > config.proximity_threshold_meters:
                continue
            if not self.alert_store.should_alert(
                config.chat_id, config.route_id, vehicle.vehicle_id, config.max_alerts_per_day
            ):
                continue

            eta = estimate_eta_seconds(distance, config.average_speed_kmph)
            result = await self.notifier.send_message(
                config.chat_id, format_proximity_alert(config, vehicle, distance, eta)
            )
            if not result.get("delivered"):
                logger.warning(
                    "Proximity alert for %s vehicle %s not delivered: %s",
                    config.key, vehicle.vehicle_id, result.get("error"),
                )
                continue
            self.alert_store.record(
                config.chat_id, config.route_id, vehicle.vehicle_id, distance, config.stop.name
            )
            sent += 1
            logger.info(
                "Proximity alert sent to %s for route %s (vehicle %s at %dm)",
                config.chat_id, config.route_number, vehicle.vehicle_id, round(distance),
            )
        return sent
