"""
Audit trail data models.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from shared.persistence.base import Item
from shared.records import ensure_utc

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so the store's string sort key orders correctly."""
    return ensure_utc(value).strftime(TIMESTAMP_FORMAT)


class AuditAction(str, Enum):
    """Canonical audit actions."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    READ = "READ"
    CONSOLE_ACCESS = "CONSOLE_ACCESS"
    ROTATION_CHANGE = "ROTATION_CHANGE"


class TrailItem(BaseModel):
    timestamp: Optional[datetime] = Field(None, description="Sort key, stamped by the trail writer on append")
    ttl: Optional[int] = Field(None, description="Epoch seconds after which the store expires the row")

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value is not None else None

    def to_item(self) -> Item:
        return self.model_dump(mode="json")

    @classmethod
    def from_item(cls, item: Item):
        return cls.model_validate(item)


class AuditEntry(TrailItem):
    """One row of the legacy portal audit log."""
    record_key: str = Field(..., description="Record id when known, else the raw external ref")
    actor_id: str
    action: str
    ip: str = "unknown"
    user_agent: str = "unknown"
    success: bool = True
    details: Optional[str] = None


class ExternalChangeRecord(TrailItem):
    """One row of the external (direct vault) change trail."""
    external_ref: str
    record_name: str
    app: str
    env: str
    actor_id: str
    user_type: str
    action: str
    event_kind: str
    ip: str = "unknown"
    user_agent: str = "unknown"
    region: Optional[str] = None
    event_id: Optional[str] = None
    event_time: Optional[datetime] = Field(None, description="When the change happened, per the event source")

    @field_validator("event_time")
    @classmethod
    def _utc_event_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @field_serializer("event_time")
    def _serialize_event_time(self, value: Optional[datetime]) -> Optional[str]:
        return format_timestamp(value) if value is not None else None
