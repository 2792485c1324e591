# services/transit_client.py
"""
HTTP client for the transit provider (EMTU live bus portal).

Purpose:
- Fetch live vehicle positions for a line
- Resolve routes and stops for chat commands
- Normalize provider payloads into models.transit value types

The provider answers GET /portal?linha=<code> with
    {"linhas": [{"id", "codigo", "destino", "velocidadeMedia",
                 "veiculos": [{"idVeiculo", "latitude", "longitude", ...}],
                 "rotas": [{"sentido": "ida"|"volta", "pontos": [...]}]}]}
but field names vary between deployments, so every lookup goes through the
normalize_* helpers below and nothing else in the app sees raw payloads.

Failure policy: no public method raises. Vehicle positions degrade to an empty
list (stale positions would trigger false alerts); route/stop lookups degrade
to the last cached payload, then to the local RouteCatalog, then to None/[].
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from core.exceptions import TransitError
from infra.redis_client import ResponseCache
from models.monitor import Direction
from models.transit import Route, Stop, VehiclePosition
from services.route_catalog import RouteCatalog

logger = logging.getLogger(__name__)

USER_AGENT = "bus-proximity-notifier/1.0"
SEARCH_LIMIT = 10

VEHICLE_ID_FIELDS = ("idVeiculo", "vehicle_id", "vehicleId", "id", "codigo", "prefixo")
LAT_FIELDS = ("latitude", "lat", "coordenada_y")
LON_FIELDS = ("longitude", "lng", "lon", "coordenada_x")
TIMESTAMP_FIELDS = ("dataUltimaTransmissao", "timestamp", "data_hora", "lastUpdate")
DIRECTION_FIELDS = ("sentidoLinha", "sentido", "direction")
TIMESTAMP_FORMATS = ("%d/%m/%Y %H:%M:%S", "%d/%m/%Y %H:%M", "%Y-%m-%d %H:%M:%S")


# ------------- NORMALIZATION -------------
def _first(raw: dict, names: Iterable[str]) -> Any:
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None

def _to_float(value) -> Optional[float]:
    try:
        return float(str(value).replace(",", ".")) if value is not None else None
    except (TypeError, ValueError):
        return None

def _to_int(value) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None

def parse_timestamp(value) -> Optional[datetime]:
    """Provider timestamps come as ISO strings, dd/mm/yyyy strings or epoch (s or ms)."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = str(value).strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None

def normalize_direction(value) -> Optional[str]:
    direction = Direction.parse(str(value)) if value is not None else None
    return direction.value if direction else None

def normalize_vehicle(raw: dict) -> Optional[VehiclePosition]:
    if not isinstance(raw, dict):
        return None
    vehicle_id = _first(raw, VEHICLE_ID_FIELDS)
    lat = _to_float(_first(raw, LAT_FIELDS))
    lon = _to_float(_first(raw, LON_FIELDS))
    if vehicle_id is None or lat is None or lon is None:
        return None
    try:
        return VehiclePosition(
            vehicle_id=str(vehicle_id),
            latitude=lat,
            longitude=lon,
            timestamp=parse_timestamp(_first(raw, TIMESTAMP_FIELDS)),
            direction=normalize_direction(_first(raw, DIRECTION_FIELDS)),
            prefix=str(raw["prefixo"]) if raw.get("prefixo") else None,
        )
    except ValidationError as e:
        logger.debug("Dropping malformed vehicle %s: %s", raw, e)
        return None

def normalize_stop(raw: dict, direction: str | None = None) -> Optional[Stop]:
    if not isinstance(raw, dict):
        return None
    stop_id = _first(raw, ("id", "stop_id", "codigo"))
    if stop_id is None:
        return None
    try:
        return Stop(
            id=str(stop_id),
            name=str(_first(raw, ("endereco", "name", "nome", "denominacao", "address")) or ""),
            latitude=_to_float(_first(raw, LAT_FIELDS)),
            longitude=_to_float(_first(raw, LON_FIELDS)),
            sequence=_to_int(_first(raw, ("sequencia", "sequence"))),
            direction=direction,
        )
    except ValidationError as e:
        logger.debug("Dropping malformed stop %s: %s", raw, e)
        return None

def normalize_route(raw: dict) -> Optional[Route]:
    if not isinstance(raw, dict):
        return None
    route_id = _first(raw, ("id", "route_id", "codigo"))
    number = _first(raw, ("codigo", "number", "linha"))
    if route_id is None or number is None:
        return None
    try:
        return Route(
            id=str(route_id),
            number=str(number),
            name=str(_first(raw, ("destino", "name", "nome", "descricao")) or ""),
            average_speed_kmph=_to_float(_first(raw, ("velocidadeMedia", "average_speed"))),
        )
    except ValidationError as e:
        logger.debug("Dropping malformed route %s: %s", raw, e)
        return None


class TransitClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        auth: tuple[str, str] | None = None,
        cache: ResponseCache | None = None,
        catalog: RouteCatalog | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.auth = auth
        self.cache = cache or ResponseCache()
        self.catalog = catalog
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        # route id -> line code, learned from lookups; the provider is queried by code
        self._route_numbers: Dict[str, str] = {}
        self._stops_by_id: Dict[str, Stop] = {}

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                auth=httpx.BasicAuth(*self.auth) if self.auth else None,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        await self.cache.close()

    # ------------- RAW FETCH -------------
    async def _fetch_lines(self, code: str) -> List[dict]:
        """Fetch the provider's line list for `code`. Raises TransitError."""
        try:
            resp = await self._http().get("/portal", params={"linha": code})
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransitError(f"provider request for line {code} failed: {e}") from e
        lines = payload.get("linhas") if isinstance(payload, dict) else payload
        if not isinstance(lines, list):
            raise TransitError(f"unexpected provider payload for line {code}")
        return [line for line in lines if isinstance(line, dict)]

    async def _lines(self, code: str) -> List[dict]:
        """Line list for `code` from cache, provider, or stale cache, in that order."""
        key = f"lines:{code.lower()}"
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        try:
            lines = await self._fetch_lines(code)
        except TransitError as e:
            stale = self.cache.get_stale(key)
            if stale is not None:
                logger.warning("%s; using stale cached data", e)
                return stale
            logger.warning("%s", e)
            return []
        await self.cache.set(key, lines)
        return lines

    @staticmethod
    def _pick_line(lines: List[dict], route_id: str | None = None, route_number: str | None = None) -> Optional[dict]:
        if not lines:
            return None
        if route_id is not None:
            for line in lines:
                if str(_first(line, ("id", "route_id", "codigo"))) == route_id:
                    return line
        if route_number is not None:
            for line in lines:
                if str(_first(line, ("codigo", "number", "linha")) or "").lower() == route_number.lower():
                    return line
        return lines[0]

    def _code_for(self, route_id: str, route_number: str | None = None) -> str:
        return route_number or self._route_numbers.get(route_id) or route_id

    def _remember(self, route: Route) -> Route:
        self._route_numbers[route.id] = route.number
        return route

    def _stops_of_line(self, line: dict, direction: Direction | None = None) -> List[Stop]:
        stops = []
        for rota in line.get("rotas") or []:
            if not isinstance(rota, dict):
                continue
            way = normalize_direction(_first(rota, DIRECTION_FIELDS))
            if direction is not None and way is not None and way != direction.value:
                continue
            for raw in rota.get("pontos") or []:
                stop = normalize_stop(raw, way)
                if stop is not None:
                    self._stops_by_id[stop.id] = stop
                    stops.append(stop)
        return stops

    # ------------- VEHICLES -------------
    async def get_vehicle_positions(self, route_id: str, route_number: str | None = None) -> List[VehiclePosition]:
        """Live positions of the line's vehicles; [] when the provider fails."""
        code = self._code_for(route_id, route_number)
        try:
            lines = await self._fetch_lines(code)
        except TransitError as e:
            logger.warning("Failed to fetch vehicle positions for route %s: %s", route_id, e)
            return []
        await self.cache.set(f"lines:{code.lower()}", lines)

        line = self._pick_line(lines, route_id=route_id, route_number=code)
        if line is None:
            return []
        vehicles = [normalize_vehicle(raw) for raw in line.get("veiculos") or []]
        return [v for v in vehicles if v is not None]

    # ------------- ROUTES -------------
    async def find_route(self, route_number: str) -> Optional[Route]:
        lines = await self._lines(route_number)
        line = self._pick_line(lines, route_number=route_number)
        route = normalize_route(line) if line else None
        if route is None and self.catalog is not None:
            route = self.catalog.find_route(route_number)
        if route is None:
            logger.info("Route %s not found", route_number)
            return None
        return self._remember(route)

    async def search_routes(self, term: str) -> List[Route]:
        needle = term.strip().lower()
        found: Dict[str, Route] = {}
        for line in await self._lines(term.strip()):
            route = normalize_route(line)
            if route and (needle in route.number.lower() or needle in route.name.lower()):
                found.setdefault(route.id, self._remember(route))
        if self.catalog is not None:
            for route in self.catalog.search_routes(needle):
                found.setdefault(route.id, self._remember(route))
        return list(found.values())

    # ------------- STOPS -------------
    async def get_route_stops(self, route_id: str, direction: Direction | None = None) -> List[Stop]:
        lines = await self._lines(self._code_for(route_id))
        line = self._pick_line(lines, route_id=route_id)
        stops = self._stops_of_line(line, direction) if line else []
        if not stops and self.catalog is not None:
            stops = self.catalog.get_stops(route_id, direction.value if direction else None)
            for stop in stops:
                self._stops_by_id[stop.id] = stop
        return stops

    async def find_stop(self, name: str, route_id: str, direction: Direction | None = None) -> Optional[Stop]:
        """
        Stop on the route matching `name`: an exact stop id or sequence number
        wins, otherwise the first stop whose name contains it.
        """
        term = name.strip().lower()
        if not term:
            return None
        stops = await self.get_route_stops(route_id, direction)
        for stop in stops:
            if stop.id.lower() == term or (term.isdigit() and stop.sequence == int(term)):
                return stop
        for stop in stops:
            if term in stop.name.lower():
                return stop
        return None

    async def get_stop_location(self, stop_id: str, route_id: str | None = None) -> Optional[Stop]:
        """Stop with coordinates, from stops seen so far, the route, or the catalog."""
        stop = self._stops_by_id.get(stop_id)
        if stop is None and route_id is not None:
            await self.get_route_stops(route_id)
            stop = self._stops_by_id.get(stop_id)
        if stop is None and self.catalog is not None:
            stop = self.catalog.find_stop_by_id(stop_id)
        if stop is None:
            logger.warning("Stop %s location unknown", stop_id)
        return stop

    async def search_stops(self, term: str) -> List[Stop]:
        needle = term.strip().lower()
        if not needle:
            return []
        candidates: List[Stop] = []
        for line in await self._lines(term.strip()):
            candidates.extend(self._stops_of_line(line))
        candidates.extend(self._stops_by_id.values())
        if self.catalog is not None:
            candidates.extend(self.catalog.all_stops())

        found: Dict[str, Stop] = {}
        for stop in candidates:
            if needle in stop.name.lower():
                found.setdefault(stop.id, stop)
        return list(found.values())[:SEARCH_LIMIT]
