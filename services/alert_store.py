# services/alert_store.py
"""
Alert eligibility and alert history.

Two policies gate a proximity alert:
- cooldown: one alert per (chat, route, vehicle) every `cooldown_seconds`,
  so a bus hovering around the threshold does not spam the chat;
- daily cap: at most `max_alerts_per_day` alerts per (chat, route) since local
  midnight, whatever the vehicle.

State is one JSON document:
    {"alerts": {"<chat>_<route>": [AlertRecord, ...]},
     "sentAlerts": {"<chat>_<route>_<vehicle>": SentAlertMark}}
"""
import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from config.settings import ALERT_COOLDOWN_SECONDS
from core.exceptions import PersistenceError, StartupError
from infra.json_file import ensure_parent_dir, read_document, write_document
from models.alert import AlertRecord, SentAlertMark
from models.monitor import local_midnight, local_now

logger = logging.getLogger(__name__)

HistoryKey = Tuple[str, str]
MarkKey = Tuple[str, str, str]


class AlertStore:
    def __init__(
        self,
        path: str,
        cooldown_seconds: int = ALERT_COOLDOWN_SECONDS,
        history_limit: int = 100,
        retention_days: int = 30,
        clock: Callable[[], datetime] = local_now,
    ):
        self.path = path
        self.cooldown_seconds = cooldown_seconds
        self.history_limit = history_limit
        self.retention_days = retention_days
        self._clock = clock
        self._alerts: Dict[HistoryKey, List[AlertRecord]] = {}
        self._sent: Dict[MarkKey, SentAlertMark] = {}
        self._lock = threading.RLock()
        self.loaded = False

    # ------------- LOAD / PERSIST -------------
    def load(self) -> int:
        """Read the document from disk. Raises StartupError if storage is unusable."""
        try:
            ensure_parent_dir(self.path)
            data = read_document(self.path) or {}
        except (OSError, PersistenceError) as e:
            raise StartupError(f"alert store unavailable: {e}") from e

        alerts: Dict[HistoryKey, List[AlertRecord]] = {}
        for key, raw_list in (data.get("alerts") or {}).items():
            for raw in raw_list or []:
                try:
                    record = AlertRecord.model_validate(raw)
                except ValidationError as e:
                    logger.warning("Skipping invalid alert record under %s: %s", key, e)
                    continue
                if record.chat_id is None or record.route_id is None:
                    # records written without identity: recover it from the key
                    chat_id, _, route_id = key.rpartition("_")
                    record.chat_id, record.route_id = chat_id, route_id
                alerts.setdefault((record.chat_id, record.route_id), []).append(record)

        sent: Dict[MarkKey, SentAlertMark] = {}
        for key, raw in (data.get("sentAlerts") or {}).items():
            try:
                mark = SentAlertMark.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping invalid sent-alert mark %s: %s", key, e)
                continue
            sent[(mark.chat_id, mark.route_id, mark.vehicle_id)] = mark

        for records in alerts.values():
            records.sort(key=lambda r: r.timestamp)

        with self._lock:
            self._alerts = alerts
            self._sent = sent
            self.loaded = True
        logger.info(
            "Loaded %d alert histories and %d sent-alert marks from %s", len(alerts), len(sent), self.path
        )
        return len(alerts)

    def _persist(self) -> bool:
        document = {
            "alerts": {
                f"{chat_id}_{route_id}": [r.model_dump(mode="json", by_alias=True) for r in records]
                for (chat_id, route_id), records in self._alerts.items()
            },
            "sentAlerts": {
                f"{chat_id}_{route_id}_{vehicle_id}": mark.model_dump(mode="json", by_alias=True)
                for (chat_id, route_id, vehicle_id), mark in self._sent.items()
            },
            "lastUpdated": self._clock().isoformat(),
        }
        try:
            write_document(self.path, document)
            return True
        except PersistenceError as e:
            logger.error("Failed to save alerts: %s", e)
            return False

    # ------------- POLICY -------------
    def should_alert(self, chat_id: str, route_id: str, vehicle_id: str, max_alerts_per_day: int = 5) -> bool:
        now = self._clock()
        with self._lock:
            mark = self._sent.get((chat_id, route_id, vehicle_id))
            if mark is not None:
                elapsed = (now - mark.last_sent_at).total_seconds()
                if elapsed < self.cooldown_seconds:
                    logger.debug(
                        "Alert cooldown active for %s_%s_%s (%ds ago)", chat_id, route_id, vehicle_id, elapsed
                    )
                    return False

            today = len(self._since(chat_id, route_id, local_midnight(now)))
            if today >= max_alerts_per_day:
                logger.debug(
                    "Maximum daily alerts reached for %s_%s (%d/%d)", chat_id, route_id, today, max_alerts_per_day
                )
                return False
        return True

    def record(
        self, chat_id: str, route_id: str, vehicle_id: str, distance: float, stop_name: str = ""
    ) -> AlertRecord:
        """Mark the vehicle as alerted and append to the history, in one write."""
        now = self._clock()
        record = AlertRecord(
            vehicle_id=vehicle_id,
            distance_meters=round(float(distance), 1),
            stop_name=stop_name,
            timestamp=now,
            chat_id=chat_id,
            route_id=route_id,
        )
        with self._lock:
            self._sent[(chat_id, route_id, vehicle_id)] = SentAlertMark(
                chat_id=chat_id,
                route_id=route_id,
                vehicle_id=vehicle_id,
                last_sent_at=now,
                last_distance=record.distance_meters,
                stop_name=stop_name,
            )
            history = self._alerts.setdefault((chat_id, route_id), [])
            history.append(record)
            if len(history) > self.history_limit:
                del history[: len(history) - self.history_limit]
            self._persist()
        logger.info(
            "Alert recorded: %s - Route %s - Vehicle %s - Distance %dm", chat_id, route_id, vehicle_id, round(distance)
        )
        return record.model_copy()

    # ------------- QUERIES -------------
    def _since(self, chat_id: str, route_id: str, boundary: datetime) -> List[AlertRecord]:
        return [r for r in self._alerts.get((chat_id, route_id), []) if r.timestamp >= boundary]

    def today_alerts(self, chat_id: str, route_id: str) -> List[AlertRecord]:
        with self._lock:
            return [r.model_copy() for r in self._since(chat_id, route_id, local_midnight(self._clock()))]

    def statistics(self, chat_id: str, route_id: Optional[str] = None) -> dict:
        """
        Alert counts for a chat: total, today (since local midnight) and
        thisWeek (since local midnight seven days ago).

        With `route_id` the result is scoped to that route; without it a
        per-route breakdown is added under "byRoute".
        """
        now = self._clock()
        today = local_midnight(now)
        week_ago = local_midnight(now - timedelta(days=7))

        def _counts(records: List[AlertRecord]) -> dict:
            return {
                "total": len(records),
                "today": sum(1 for r in records if r.timestamp >= today),
                "thisWeek": sum(1 for r in records if r.timestamp >= week_ago),
            }

        with self._lock:
            if route_id is not None:
                stats = _counts(self._alerts.get((chat_id, route_id), []))
                stats["routeId"] = route_id
                return stats

            by_route = {
                rid: _counts(records) for (cid, rid), records in self._alerts.items() if cid == chat_id
            }
        return {
            "total": sum(s["total"] for s in by_route.values()),
            "today": sum(s["today"] for s in by_route.values()),
            "thisWeek": sum(s["thisWeek"] for s in by_route.values()),
            "byRoute": by_route,
        }

    def history(self, chat_id: str, route_id: Optional[str] = None, limit: int = 50) -> List[AlertRecord]:
        """Most recent alerts of a chat (optionally one route), newest first."""
        with self._lock:
            records = [
                r.model_copy()
                for (cid, rid), history in self._alerts.items()
                if cid == chat_id and (route_id is None or rid == route_id)
                for r in history
            ]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:limit]

    def system_statistics(self) -> dict:
        today = local_midnight(self._clock())
        with self._lock:
            chats = {cid for cid, _ in self._alerts}
            routes = {rid for _, rid in self._alerts}
            total = sum(len(records) for records in self._alerts.values())
            today_count = sum(1 for records in self._alerts.values() for r in records if r.timestamp >= today)
            marks = len(self._sent)
        return {
            "totalChats": len(chats),
            "totalRoutes": len(routes),
            "totalAlerts": total,
            "todayAlerts": today_count,
            "activeAlerts": marks,
        }

    # ------------- MAINTENANCE -------------
    def cleanup(self) -> int:
        """Purge records and marks older than the retention window; returns how many went."""
        cutoff = self._clock() - timedelta(days=self.retention_days)
        cleaned = 0
        with self._lock:
            for key in list(self._alerts):
                records = self._alerts[key]
                kept = [r for r in records if r.timestamp > cutoff]
                cleaned += len(records) - len(kept)
                if kept:
                    self._alerts[key] = kept
                else:
                    del self._alerts[key]
            for key in [k for k, mark in self._sent.items() if mark.last_sent_at < cutoff]:
                del self._sent[key]
                cleaned += 1
            if cleaned:
                self._persist()
        if cleaned:
            logger.info("Cleaned up %d old alert records", cleaned)
        return cleaned

    def run_maintenance_once(self, extra_jobs: Sequence[Callable[[], int]] = ()) -> int:
        """Run cleanup() and then each of `extra_jobs`; a failing job does not stop the others."""
        cleaned = 0
        for job in (self.cleanup, *extra_jobs):
            try:
                cleaned += job()
            except Exception as e:
                logger.exception("Error during maintenance job %s: %s", getattr(job, "__qualname__", job), e)
        return cleaned

    async def run_maintenance(self, interval_seconds: int = 3600, extra_jobs: Sequence[Callable[[], int]] = ()):
        """Background loop: purge old alert data, plus `extra_jobs`, every `interval_seconds`."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.run_maintenance_once(extra_jobs)

    def clear_for_chat(self, chat_id: str) -> int:
        """Drop all history and cooldown marks of a chat; returns histories removed."""
        with self._lock:
            history_keys = [k for k in self._alerts if k[0] == chat_id]
            mark_keys = [k for k in self._sent if k[0] == chat_id]
            for key in history_keys:
                del self._alerts[key]
            for key in mark_keys:
                del self._sent[key]
            if history_keys or mark_keys:
                self._persist()
        if history_keys:
            logger.info("Cleared %d alert histories for chat %s", len(history_keys), chat_id)
        return len(history_keys)

    def clear_for_route(self, chat_id: str, route_id: str) -> bool:
        with self._lock:
            deleted = self._alerts.pop((chat_id, route_id), None) is not None
            mark_keys = [k for k in self._sent if k[0] == chat_id and k[1] == route_id]
            for key in mark_keys:
                del self._sent[key]
            if deleted or mark_keys:
                self._persist()
        if deleted:
            logger.info("Cleared alerts for chat %s route %s", chat_id, route_id)
        return deleted
