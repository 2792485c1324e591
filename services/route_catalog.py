# services/route_catalog.py
import json
import os
import logging
from typing import List, Optional

from pydantic import ValidationError

from models.transit import Route, Stop

logger = logging.getLogger(__name__)

class RouteCatalog:
    """
    Static routes and stops read from a local JSON file.

    Used by TransitClient as the last fallback for route/stop lookups when the
    provider is unreachable and nothing is cached. Never a source of vehicle
    positions. Expected shape:

        {"routes": {"709": {"id": "1234", "number": "709", "name": "...",
                            "stops": {"outbound": [...], "inbound": [...]}}}}
    """

    def __init__(self, path: str | None = None):
        self.path = path
        self.routes: dict = {}

        if path and os.path.exists(path):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self.routes = data.get("routes", {}) if isinstance(data, dict) else {}
            except Exception as e:
                logger.error("Failed to load route catalog %s: %s", path, e)
                self.routes = {}

        if not isinstance(self.routes, dict):
            self.routes = {}
        if self.routes:
            logger.info("Route catalog loaded with %d routes", len(self.routes))

    def _route_model(self, number: str, raw: dict) -> Optional[Route]:
        try:
            return Route(
                id=str(raw.get("id", number)),
                number=str(raw.get("number", number)),
                name=raw.get("name", ""),
                average_speed_kmph=raw.get("averageSpeedKmph"),
            )
        except ValidationError as e:
            logger.warning("Invalid catalog route %s: %s", number, e)
            return None

    def _stops_of(self, raw: dict, direction: str | None = None) -> List[Stop]:
        stops = []
        for way, items in (raw.get("stops") or {}).items():
            if direction and way != direction:
                continue
            for item in items or []:
                try:
                    stops.append(Stop(**{**item, "id": str(item.get("id")), "direction": way}))
                except (ValidationError, TypeError) as e:
                    logger.warning("Invalid catalog stop %s: %s", item, e)
        return stops

    # ------------- ROUTE -------------
    def find_route(self, route_number: str) -> Optional[Route]:
        for number, raw in self.routes.items():
            if number.lower() == route_number.lower() and isinstance(raw, dict):
                return self._route_model(number, raw)
        return None

    def search_routes(self, term: str) -> List[Route]:
        term = term.lower()
        found = []
        for number, raw in self.routes.items():
            if not isinstance(raw, dict):
                continue
            if term in number.lower() or term in str(raw.get("name", "")).lower():
                route = self._route_model(number, raw)
                if route:
                    found.append(route)
        return found

    # ------------- STOP -------------
    def get_stops(self, route_id: str, direction: str | None = None) -> List[Stop]:
        for number, raw in self.routes.items():
            if isinstance(raw, dict) and str(raw.get("id", number)) == route_id:
                return self._stops_of(raw, direction)
        return []

    def all_stops(self) -> List[Stop]:
        return [s for raw in self.routes.values() if isinstance(raw, dict) for s in self._stops_of(raw)]

    def find_stop_by_id(self, stop_id: str) -> Optional[Stop]:
        for stop in self.all_stops():
            if stop.id == stop_id:
                return stop
        return None
