from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Dict, List

from models.monitor import local_now

class InboundMessage(BaseModel):
    """A chat message waiting on the inbound queue."""
    chat_id: str = Field(..., min_length=1)
    body: str = ""
    message_id: str | None = None
    received_at: datetime = Field(default_factory=local_now)

class HealthReport(BaseModel):
    status: str
    uptimeSeconds: float
    activeMonitorCount: int
    notifierReady: bool

class StatusReport(BaseModel):
    monitoredKeys: List[str]
    configurations: List[Dict[str, Any]]
    alerts: Dict[str, Any] = {}
