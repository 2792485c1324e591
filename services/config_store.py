# services/config_store.py
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from core.exceptions import PersistenceError, StartupError
from infra.json_file import ensure_parent_dir, read_document, write_document
from models.monitor import MonitorConfig, local_midnight, local_now, monitor_key

logger = logging.getLogger(__name__)

ConfigKey = Tuple[str, str]

class ConfigStore:
    """
    Durable map of (chat_id, route_number) -> MonitorConfig.

    Every mutation rewrites the whole JSON document before returning. A failed
    write is logged and the in-memory map stays ahead of disk until the next
    successful write. `is_active` is the filter for "what should be running";
    inactive configs are kept for history.
    """

    VERSION = "1.0.0"

    def __init__(self, path: str, clock: Callable[[], datetime] = local_now):
        self.path = path
        self._clock = clock
        self._configs: Dict[ConfigKey, MonitorConfig] = {}
        self._lock = threading.RLock()
        self.loaded = False

    # ------------- LOAD / PERSIST -------------
    def load(self) -> int:
        """Read the document from disk. Raises StartupError if storage is unusable."""
        try:
            ensure_parent_dir(self.path)
            data = read_document(self.path) or {}
        except (OSError, PersistenceError) as e:
            raise StartupError(f"configuration store unavailable: {e}") from e

        configs: Dict[ConfigKey, MonitorConfig] = {}
        for key, raw in (data.get("configurations") or {}).items():
            try:
                config = MonitorConfig.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping invalid configuration %s: %s", key, e)
                continue
            configs[(config.chat_id, config.route_number)] = config

        with self._lock:
            self._configs = configs
            self.loaded = True
        logger.info("Loaded %d monitoring configurations from %s", len(configs), self.path)
        return len(configs)

    def _persist(self) -> bool:
        document = {
            "configurations": {
                monitor_key(*key): config.to_json() for key, config in self._configs.items()
            },
            "lastUpdated": self._clock().isoformat(),
            "version": self.VERSION,
        }
        try:
            write_document(self.path, document)
            return True
        except PersistenceError as e:
            logger.error("Failed to save configurations: %s", e)
            return False

    # ------------- READ -------------
    def get(self, chat_id: str, route_number: str) -> Optional[MonitorConfig]:
        with self._lock:
            config = self._configs.get((chat_id, route_number))
            return config.model_copy(deep=True) if config else None

    def get_active(self, chat_id: str) -> List[MonitorConfig]:
        """Active configs of one chat, newest first."""
        with self._lock:
            configs = [
                c.model_copy(deep=True)
                for (cid, _), c in self._configs.items()
                if cid == chat_id and c.is_active
            ]
        configs.sort(key=lambda c: c.created_at, reverse=True)
        return configs

    def get_all(self) -> List[MonitorConfig]:
        with self._lock:
            return [c.model_copy(deep=True) for c in self._configs.values()]

    def get_by_route(self, route_id: str) -> List[MonitorConfig]:
        """Active configs watching `route_id`, across all chats."""
        with self._lock:
            return [
                c.model_copy(deep=True) for c in self._configs.values() if c.route_id == route_id and c.is_active
            ]

    def statistics(self) -> dict:
        today = local_midnight(self._clock())
        with self._lock:
            configs = list(self._configs.values())
        return {
            "totalConfigurations": len(configs),
            "activeConfigurations": sum(1 for c in configs if c.is_active),
            "uniqueChats": len({c.chat_id for c in configs}),
            "uniqueRoutes": len({c.route_id for c in configs}),
            "configurationsToday": sum(1 for c in configs if c.created_at >= today),
        }

    # ------------- WRITE -------------
    def save(self, chat_id: str, route_number: str, config: MonitorConfig) -> MonitorConfig:
        """Insert or overwrite the config for the key; stamps last_updated."""
        stored = config.model_copy(
            update={"chat_id": chat_id, "route_number": route_number, "last_updated": self._clock()},
            deep=True,
        )
        with self._lock:
            self._configs[(chat_id, route_number)] = stored
            self._persist()
        logger.info("Configuration saved: %s - Route %s", chat_id, route_number)
        return stored.model_copy(deep=True)

    def update(self, chat_id: str, route_number: str, /, **partial) -> Optional[MonitorConfig]:
        """
        Merge `partial` (field names) into an existing config.

        Identity fields cannot be changed this way. Returns None when the key is
        unknown; raises pydantic.ValidationError for invalid values.
        """
        partial.pop("chat_id", None)
        partial.pop("route_number", None)
        with self._lock:
            current = self._configs.get((chat_id, route_number))
            if current is None:
                return None
            merged = {**current.model_dump(), **partial, "last_updated": self._clock()}
            updated = MonitorConfig.model_validate(merged)
            self._configs[(chat_id, route_number)] = updated
            self._persist()
        logger.info("Configuration updated: %s - Route %s (%s)", chat_id, route_number, ", ".join(sorted(partial)))
        return updated.model_copy(deep=True)

    def deactivate(self, chat_id: str, route_number: str) -> bool:
        with self._lock:
            config = self._configs.get((chat_id, route_number))
            if config is None:
                return False
            config.is_active = False
            config.last_updated = self._clock()
            self._persist()
        logger.info("Configuration deactivated: %s - Route %s", chat_id, route_number)
        return True

    def deactivate_all(self, chat_id: str) -> int:
        count = 0
        with self._lock:
            now = self._clock()
            for (cid, _), config in self._configs.items():
                if cid == chat_id and config.is_active:
                    config.is_active = False
                    config.last_updated = now
                    count += 1
            if count:
                self._persist()
        if count:
            logger.info("Deactivated %d configurations for chat %s", count, chat_id)
        return count

    def delete(self, chat_id: str, route_number: str) -> bool:
        with self._lock:
            if self._configs.pop((chat_id, route_number), None) is None:
                return False
            self._persist()
        logger.info("Configuration deleted: %s - Route %s", chat_id, route_number)
        return True

    def delete_all(self, chat_id: str) -> int:
        with self._lock:
            keys = [key for key in self._configs if key[0] == chat_id]
            for key in keys:
                del self._configs[key]
            if keys:
                self._persist()
        if keys:
            logger.info("Deleted %d configurations for chat %s", len(keys), chat_id)
        return len(keys)

    # ------------- MAINTENANCE -------------
    def cleanup_old(self, days: int = 30) -> int:
        """Purge inactive configs not touched for `days`; returns how many went."""
        cutoff = self._clock() - timedelta(days=days)
        with self._lock:
            keys = [key for key, c in self._configs.items() if not c.is_active and c.last_updated < cutoff]
            for key in keys:
                del self._configs[key]
            if keys:
                self._persist()
        if keys:
            logger.info("Cleaned up %d old configurations", len(keys))
        return len(keys)
