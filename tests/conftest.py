import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio


# Ensure project root is on sys.path so `services.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

# Settings are read at import time: point the app singletons at a scratch
# directory and the console channel before anything imports config.settings.
_DATA_DIR = tempfile.mkdtemp(prefix="bus-notifier-tests-")
os.environ["CONFIG_STORE_PATH"] = os.path.join(_DATA_DIR, "configurations.json")
os.environ["ALERT_STORE_PATH"] = os.path.join(_DATA_DIR, "alerts.json")
os.environ["ROUTE_CATALOG_PATH"] = os.path.join(_DATA_DIR, "routes.json")
os.environ["NOTIFIER_CHANNEL"] = "console"
os.environ["REDIS_URL"] = "disabled"
for _name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_WHATSAPP_FROM", "LOG_FILE", "TIMEZONE"):
    os.environ.pop(_name, None)


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from models.monitor import Direction, MonitorConfig
from models.transit import Route, Stop, VehiclePosition
from services.alert_store import AlertStore
from services.config_store import ConfigStore
from services.monitor_scheduler import MonitorScheduler

CHAT = "whatsapp:+5511999990000"
OTHER_CHAT = "whatsapp:+5511888880000"
STOP_LAT, STOP_LON = -23.5505, -46.6333
# meters per degree of latitude on the haversine sphere
METERS_PER_DEGREE = 6371000.0 * 3.141592653589793 / 180.0


def north_of_stop(meters: float) -> tuple[float, float]:
    return STOP_LAT + meters / METERS_PER_DEGREE, STOP_LON


class FakeClock:
    """Controllable replacement for models.monitor.local_now."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeTransit:
    """In-memory stand-in for TransitClient."""

    def __init__(self):
        self.routes = {"709": Route(id="R709", number="709", name="Terminal Centro", average_speed_kmph=18.0)}
        self.stops = {
            "R709": [
                Stop(id="S1", name="Av. Paulista, 1000", latitude=STOP_LAT, longitude=STOP_LON,
                     sequence=1, direction="outbound"),
                Stop(id="S2", name="Rua Augusta", latitude=None, longitude=None,
                     sequence=2, direction="outbound"),
            ]
        }
        self.vehicles: list[VehiclePosition] = []
        self.fail_positions = False
        self.position_calls = 0

    def put_vehicle(self, vehicle_id: str, meters: float):
        lat, lon = north_of_stop(meters)
        self.vehicles = [v for v in self.vehicles if v.vehicle_id != vehicle_id]
        self.vehicles.append(VehiclePosition(vehicle_id=vehicle_id, latitude=lat, longitude=lon, prefix=f"P{vehicle_id}"))

    async def get_vehicle_positions(self, route_id, route_number=None):
        self.position_calls += 1
        if self.fail_positions:
            raise RuntimeError("provider down")
        return list(self.vehicles)

    async def find_route(self, route_number):
        return self.routes.get(route_number)

    async def find_stop(self, name, route_id, direction=None):
        term = name.lower()
        for stop in self.stops.get(route_id, []):
            if term in stop.name.lower() or term == stop.id.lower():
                return stop
        return None

    async def get_stop_location(self, stop_id, route_id=None):
        for stops in self.stops.values():
            for stop in stops:
                if stop.id == stop_id:
                    return stop
        return None

    async def search_routes(self, term):
        return [r for r in self.routes.values() if term.lower() in r.number.lower() or term.lower() in r.name.lower()]

    async def search_stops(self, term):
        return [s for stops in self.stops.values() for s in stops if term.lower() in s.name.lower()]


class FakeNotifier:
    """Records messages instead of sending them."""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []
        self.deliver = True

    async def send_message(self, chat_id, text):
        self.messages.append((chat_id, text))
        if self.deliver:
            return {"chat_id": chat_id, "channel": "fake", "delivered": True, "error": None}
        return {"chat_id": chat_id, "channel": "fake", "delivered": False, "error": "unreachable"}


def make_config(chat_id: str = CHAT, route_number: str = "709", route_id: str | None = None, **overrides) -> MonitorConfig:
    fields = dict(
        chat_id=chat_id,
        route_id=route_id or f"R{route_number}",
        route_number=route_number,
        route_name="Terminal Centro",
        stop=Stop(id="S1", name="Av. Paulista, 1000", latitude=STOP_LAT, longitude=STOP_LON, sequence=1),
        way=Direction.OUTBOUND,
        proximity_threshold_meters=500,
        max_alerts_per_day=5,
    )
    fields.update(overrides)
    return MonitorConfig(**fields)


@pytest.fixture()
def clock():
    # 08:00 in a UTC-3 zone, like the service's home region
    return FakeClock(datetime(2024, 5, 10, 8, 0, 0, tzinfo=timezone(timedelta(hours=-3))))


@pytest.fixture()
def config_store(tmp_path, clock):
    store = ConfigStore(str(tmp_path / "configurations.json"), clock=clock)
    store.load()
    return store


@pytest.fixture()
def alert_store(tmp_path, clock):
    store = AlertStore(str(tmp_path / "alerts.json"), clock=clock)
    store.load()
    return store


@pytest.fixture()
def transit():
    return FakeTransit()


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest_asyncio.fixture()
async def scheduler(config_store, alert_store, transit, notifier):
    """Scheduler with a short period; all tasks are shut down after the test."""
    sched = MonitorScheduler(config_store, alert_store, transit, notifier, interval_seconds=0.05)
    yield sched
    await sched.shutdown(timeout=1.0)
