# services/command_router.py
"""
Chat command handling.

Every inbound text gets exactly one reply string: a confirmation, a
rejection saying what was wrong, or a generic apology when something
unexpected broke. Commands (Portuguese aliases in brackets):

    /help [/ajuda]
    /monitor <route> <stop words...> <direction>
    /stop [route]
    /list [/listar]
    /search <term> [/buscar]
    /status
    /history [route] [/historico]

`ajuda`, `listar` and `buscar <term>` also work without the slash.
"""
import logging
import time
from typing import Awaitable, Callable, Dict, List

from models.monitor import Direction, MonitorConfig
from services.alert_store import AlertStore
from services.config_store import ConfigStore
from services.monitor_scheduler import MonitorScheduler
from services.transit_client import TransitClient
from tools.geo import is_valid_coordinate

logger = logging.getLogger(__name__)

APOLOGY = "😕 Sorry, something went wrong while handling your message. Please try again in a moment."
UNKNOWN_HINT = "I didn't understand that. Send /help to see the available commands."
MONITOR_USAGE = (
    "Usage: /monitor <route> <stop> <direction>\n"
    "Example: /monitor 709 Paulista ida\n"
    "Direction: ida/outbound or volta/inbound"
)
HELP_TEXT = "\n".join([
    "🚌 *Bus Proximity Notifier*",
    "",
    "/monitor <route> <stop> <direction> - alert me when a bus is near my stop",
    "/stop [route] - stop one route, or all of them",
    "/list - show what I'm monitoring for you",
    "/search <term> - find routes and stops",
    "/status - alerts today and service uptime",
    "/history [route] - recent alerts",
    "/help - this message",
    "",
    "Direction: ida (outbound) or volta (inbound).",
])
# accepted without the leading slash
BARE_COMMANDS = {"ajuda", "listar", "buscar"}
HISTORY_LIMIT = 10
SEARCH_SHOWN = 5


def format_uptime(seconds: float) -> str:
    seconds = int(max(0, seconds))
    return f"{seconds // 3600}h {seconds % 3600 // 60}m"


class CommandRouter:
    def __init__(
        self,
        scheduler: MonitorScheduler,
        config_store: ConfigStore,
        alert_store: AlertStore,
        transit_client: TransitClient,
        proximity_threshold_meters: int = 500,
        max_alerts_per_day: int = 5,
    ):
        self.scheduler = scheduler
        self.config_store = config_store
        self.alert_store = alert_store
        self.transit = transit_client
        self.proximity_threshold_meters = proximity_threshold_meters
        self.max_alerts_per_day = max_alerts_per_day
        self.started_at = time.monotonic()
        self._commands: Dict[str, Callable[[str, List[str]], Awaitable[str]]] = {
            "help": self._help,
            "ajuda": self._help,
            "start": self._help,
            "monitor": self._monitor,
            "monitorar": self._monitor,
            "stop": self._stop,
            "parar": self._stop,
            "list": self._list,
            "listar": self._list,
            "search": self._search,
            "buscar": self._search,
            "status": self._status,
            "history": self._history,
            "historico": self._history,
        }

    async def handle(self, chat_id: str, text: str) -> str:
        words = (text or "").strip().split()
        if not words:
            return UNKNOWN_HINT
        if words[0].startswith("/"):
            command = words[0][1:].lower()
        elif words[0].lower() in BARE_COMMANDS:
            command = words[0].lower()
        else:
            return UNKNOWN_HINT
        handler = self._commands.get(command)
        if handler is None:
            return f"Unknown command /{command}. Send /help to see the available commands."
        try:
            return await handler(chat_id, words[1:])
        except Exception as e:
            logger.exception("Command /%s from %s failed: %s", command, chat_id, e)
            return APOLOGY

    # ------------- COMMANDS -------------
    async def _help(self, chat_id: str, args: List[str]) -> str:
        return HELP_TEXT

    async def _monitor(self, chat_id: str, args: List[str]) -> str:
        if len(args) < 3:
            return MONITOR_USAGE
        route_number, stop_words, direction_word = args[0], args[1:-1], args[-1]
        direction = Direction.parse(direction_word)
        if direction is None:
            return f"❌ Unknown direction '{direction_word}'.\n{MONITOR_USAGE}"

        route = await self.transit.find_route(route_number)
        if route is None:
            return f"❌ Route {route_number} not found. Try /search {route_number}."

        stop_name = " ".join(stop_words)
        stop = await self.transit.find_stop(stop_name, route.id, direction)
        if stop is None:
            return f"❌ Stop '{stop_name}' not found on route {route.number} ({direction.provider_name})."

        if not is_valid_coordinate(stop.latitude, stop.longitude):
            located = await self.transit.get_stop_location(stop.id, route_id=route.id)
            if located is None or not is_valid_coordinate(located.latitude, located.longitude):
                return f"❌ Stop '{stop.name}' has no known location, so it cannot be monitored."
            stop = stop.model_copy(update={"latitude": located.latitude, "longitude": located.longitude})

        config = self.scheduler.start(
            MonitorConfig(
                chat_id=chat_id,
                route_id=route.id,
                route_number=route.number,
                route_name=route.name or None,
                stop=stop,
                way=direction,
                proximity_threshold_meters=self.proximity_threshold_meters,
                max_alerts_per_day=self.max_alerts_per_day,
                average_speed_kmph=route.average_speed_kmph or None,
            )
        )
        logger.info("Monitor started by %s: route %s stop %s (%s)", chat_id, route.number, stop.id, direction.value)
        return "\n".join([
            "✅ *Monitoring started!*",
            "",
            f"🚌 Route: {config.route_number}" + (f" - {config.route_name}" if config.route_name else ""),
            f"📍 Stop: {config.stop.name}",
            f"↔️ Direction: {direction.provider_name}",
            f"📏 Alert distance: {config.proximity_threshold_meters}m",
            f"🔔 Up to {config.max_alerts_per_day} alerts per day",
            "",
            f"Send /stop {config.route_number} to stop.",
        ])

    def _resolve_route_number(self, chat_id: str, route_number: str) -> str:
        """Match the typed route against the chat's monitors, ignoring case."""
        for config in self.config_store.get_active(chat_id):
            if config.route_number.lower() == route_number.lower():
                return config.route_number
        return route_number

    async def _stop(self, chat_id: str, args: List[str]) -> str:
        if not args:
            count = self.scheduler.stop_all(chat_id)
            if count == 0:
                return "You have no active monitors."
            return f"🛑 Stopped {count} monitor{'s' if count != 1 else ''}."

        route_number = self._resolve_route_number(chat_id, args[0])
        config = self.config_store.get(chat_id, route_number)
        was_active = config is not None and config.is_active
        found = self.scheduler.stop(chat_id, route_number)
        if not (found or was_active):
            return f"You are not monitoring route {args[0]}."
        return f"🛑 Stopped monitoring route {route_number}."

    async def _list(self, chat_id: str, args: List[str]) -> str:
        configs = self.config_store.get_active(chat_id)
        if not configs:
            return "You have no active monitors. Start one with /monitor."
        lines = ["📋 *Your monitors:*", ""]
        for config in configs:
            today = len(self.alert_store.today_alerts(chat_id, config.route_id))
            state = "running" if self.scheduler.is_running(chat_id, config.route_number) else "paused"
            lines.append(
                f"🚌 {config.route_number} → {config.stop.name} ({config.way.provider_name}), "
                f"{config.proximity_threshold_meters}m, {today}/{config.max_alerts_per_day} alerts today, {state}"
            )
        return "\n".join(lines)

    async def _search(self, chat_id: str, args: List[str]) -> str:
        if not args:
            return "Usage: /search <route number or stop name>"
        term = " ".join(args)
        routes = await self.transit.search_routes(term)
        stops = await self.transit.search_stops(term)
        if not routes and not stops:
            return f"Nothing found for '{term}'."
        lines = [f"🔎 Results for '{term}':"]
        if routes:
            lines += ["", "*Routes:*"]
            lines += [f"🚌 {r.number}" + (f" - {r.name}" if r.name else "") for r in routes[:SEARCH_SHOWN]]
        if stops:
            lines += ["", "*Stops:*"]
            lines += [f"📍 {s.name} (id {s.id})" for s in stops[:SEARCH_SHOWN]]
        return "\n".join(lines)

    async def _status(self, chat_id: str, args: List[str]) -> str:
        configs = self.config_store.get_active(chat_id)
        stats = self.alert_store.statistics(chat_id)
        return "\n".join([
            "📊 *Status*",
            "",
            f"🚌 Active monitors: {len(configs)}",
            f"🔔 Alerts today: {stats['today']}",
            f"📅 Alerts this week: {stats['thisWeek']}",
            f"⏱️ Uptime: {format_uptime(time.monotonic() - self.started_at)}",
        ])

    async def _history(self, chat_id: str, args: List[str]) -> str:
        route_id = None
        if args:
            route_number = self._resolve_route_number(chat_id, args[0])
            config = self.config_store.get(chat_id, route_number)
            route_id = config.route_id if config else route_number
        records = self.alert_store.history(chat_id, route_id=route_id, limit=HISTORY_LIMIT)
        if not records:
            return "No alerts yet."
        lines = ["🕘 *Recent alerts:*", ""]
        for record in records:
            lines.append(
                f"{record.timestamp.strftime('%d/%m %H:%M')} - {record.stop_name or 'stop'}: "
                f"vehicle {record.vehicle_id} at {round(record.distance_meters)}m"
            )
        return "\n".join(lines)
