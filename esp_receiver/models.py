from enum import Enum
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field, Column, JSON

class Source(str, Enum):
    HTTP = "HTTP"
    MQTT = "MQTT"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(dt: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

class TelemetryRecord(SQLModel, table=True):
    id: str = Field(primary_key=True)
    received_at: datetime = Field(index=True)
    source: Source
    payload: dict = Field(sa_column=Column(JSON))

    def meta(self) -> dict:
        return {
            "id": self.id,
            "time": as_utc(self.received_at).isoformat().replace("+00:00", "Z"),
            "source": self.source.value,
        }

class PinState(SQLModel, table=True):
    name: str = Field(primary_key=True)
    state: int = 0
    updated_at: datetime = Field(default_factory=utcnow)
