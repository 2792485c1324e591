# models/alert.py
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional


class AlertRecord(BaseModel):
    """One delivered proximity alert, kept in the (chat, route) history."""
    model_config = ConfigDict(populate_by_name=True)

    vehicle_id: str = Field(..., alias="vehicleId")
    distance_meters: float = Field(..., alias="distanceMeters")
    stop_name: str = Field("", alias="stopName")
    timestamp: datetime
    chat_id: Optional[str] = Field(None, alias="chatId")
    route_id: Optional[str] = Field(None, alias="routeId")

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.astimezone()


class SentAlertMark(BaseModel):
    """Last alert sent for a (chat, route, vehicle); drives the cooldown."""
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId")
    route_id: str = Field(..., alias="routeId")
    vehicle_id: str = Field(..., alias="vehicleId")
    last_sent_at: datetime = Field(..., alias="lastSentAt")
    last_distance: float = Field(0.0, alias="lastDistance")
    stop_name: str = Field("", alias="stopName")

    @field_validator("last_sent_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.astimezone()
