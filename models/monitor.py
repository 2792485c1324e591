# models/monitor.py
from datetime import datetime
from enum import Enum
from zoneinfo import ZoneInfo
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional

from config.settings import ALERT_COOLDOWN_SECONDS, settings
from models.transit import Stop


def local_now() -> datetime:
    """Timezone-aware 'now' in TIMEZONE, or the server's local zone when unset."""
    if settings.TIMEZONE:
        return datetime.now(ZoneInfo(settings.TIMEZONE))
    return datetime.now().astimezone()


def local_midnight(moment: datetime) -> datetime:
    """
    Start of `moment`'s calendar day in its own zone.

    A ZoneInfo picks the right offset for midnight by itself. A fixed offset
    from astimezone() carries the offset of `moment`, which is wrong for
    midnight on a DST-change day, so such midnights are re-localized in the
    server zone.
    """
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if isinstance(moment.tzinfo, ZoneInfo) or moment.tzinfo is None:
        return midnight
    if moment.utcoffset() != moment.astimezone().utcoffset():
        # not the server zone: nothing better than the fixed offset
        return midnight
    return midnight.replace(tzinfo=None).astimezone()


def monitor_key(chat_id: str, route_number: str) -> str:
    return f"{chat_id}_{route_number}"


class Direction(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"

    @classmethod
    def parse(cls, value: str | None) -> Optional["Direction"]:
        """Accept the English names plus the Portuguese chat words (ida/volta)."""
        if not value:
            return None
        return _DIRECTION_ALIASES.get(value.strip().lower())

    @property
    def provider_name(self) -> str:
        """Direction label used by the provider's route payloads."""
        return "ida" if self is Direction.OUTBOUND else "volta"


_DIRECTION_ALIASES = {
    "outbound": Direction.OUTBOUND,
    "out": Direction.OUTBOUND,
    "ida": Direction.OUTBOUND,
    "inbound": Direction.INBOUND,
    "in": Direction.INBOUND,
    "volta": Direction.INBOUND,
}


class MonitorConfig(BaseModel):
    """
    One watch of a route at a stop for a chat.

    Keyed by (chat_id, route_number); persisted in camelCase.
    """
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., min_length=1, alias="chatId")
    route_id: str = Field(..., min_length=1, alias="routeId")
    route_number: str = Field(..., min_length=1, alias="routeNumber")
    route_name: Optional[str] = Field(None, alias="routeName")
    average_speed_kmph: Optional[float] = Field(None, gt=0, alias="averageSpeedKmph")
    stop: Stop
    way: Direction = Direction.OUTBOUND
    proximity_threshold_meters: int = Field(500, gt=0, alias="proximityThresholdMeters")
    max_alerts_per_day: int = Field(5, gt=0, alias="maxAlertsPerDay")
    cooldown_seconds: int = Field(ALERT_COOLDOWN_SECONDS, alias="cooldownSeconds")
    created_at: datetime = Field(default_factory=local_now, alias="createdAt")
    last_updated: datetime = Field(default_factory=local_now, alias="lastUpdated")
    is_active: bool = Field(True, alias="isActive")

    @field_validator("created_at", "last_updated")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        # naive timestamps from older files are taken as server-local time
        return value if value.tzinfo else value.astimezone()

    @property
    def key(self) -> str:
        return monitor_key(self.chat_id, self.route_number)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
