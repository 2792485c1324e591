# models/transit.py
"""
Provider-independent transit value types.

TransitClient translates whatever the provider returns into these; nothing
outside services/transit_client.py sees raw provider payloads.
"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class Route(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    number: str
    name: str = ""
    average_speed_kmph: Optional[float] = Field(None, alias="averageSpeedKmph")


class Stop(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    sequence: Optional[int] = None
    direction: Optional[str] = None


class VehiclePosition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    vehicle_id: str = Field(..., alias="vehicleId")
    latitude: float
    longitude: float
    timestamp: Optional[datetime] = None
    direction: Optional[str] = None
    prefix: Optional[str] = None
