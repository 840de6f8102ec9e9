"""
External change events delivered from the vault's audit stream.
"""

from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from shared.errors import ValidationError
from shared.records import ensure_utc

UNKNOWN_ACTOR = "Unknown"


class ActorIdentity(BaseModel):
    """Who made the change, as reported by the vault's audit stream."""
    type: str = "Unknown"
    name: Optional[str] = None
    session_issuer_name: Optional[str] = None
    arn: Optional[str] = None
    principal_id: Optional[str] = None
    account_id: Optional[str] = None

    def actor_id(self) -> str:
        """Best available identifier, most specific first."""
        if self.name:
            return self.name
        if self.session_issuer_name:
            return self.session_issuer_name
        if self.arn:
            return self.arn.split("/")[-1]
        return self.principal_id or UNKNOWN_ACTOR


class ExternalChangeEvent(BaseModel):
    """One change event; consumed once and never persisted verbatim."""
    external_ref: str = Field(..., min_length=1)
    event_kind: str = Field(..., min_length=1)
    actor: ActorIdentity = Field(default_factory=ActorIdentity)
    source_ip: str = "unknown"
    user_agent: str = "unknown"
    region: Optional[str] = None
    timestamp: datetime
    event_id: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @classmethod
    def from_eventbridge(cls, payload: Mapping[str, Any]) -> "ExternalChangeEvent":
        """Build an event from an EventBridge envelope around a CloudTrail record."""
        detail = payload.get("detail")
        if not isinstance(detail, Mapping):
            raise ValidationError("Event has no detail section")

        event_name = detail.get("eventName")
        if not event_name:
            raise ValidationError("Event has no eventName")

        request = detail.get("requestParameters") or {}
        response = detail.get("responseElements") or {}
        external_ref = request.get("secretId") or response.get("arn")
        if not external_ref:
            raise ValidationError("No secretId in event", {"event_kind": event_name})

        identity: Dict[str, Any] = detail.get("userIdentity") or {}
        issuer = ((identity.get("sessionContext") or {}).get("sessionIssuer") or {})
        timestamp = detail.get("eventTime") or payload.get("time")
        if not timestamp:
            raise ValidationError("Event has no timestamp", {"event_kind": event_name})

        return cls(
            external_ref=external_ref,
            event_kind=event_name,
            actor=ActorIdentity(
                type=identity.get("type") or "Unknown",
                name=identity.get("userName"),
                session_issuer_name=issuer.get("userName"),
                arn=identity.get("arn"),
                principal_id=identity.get("principalId"),
                account_id=identity.get("accountId") or payload.get("account"),
            ),
            source_ip=detail.get("sourceIPAddress") or "unknown",
            user_agent=detail.get("userAgent") or "unknown",
            region=detail.get("awsRegion") or payload.get("region"),
            timestamp=timestamp,
            event_id=detail.get("eventID") or payload.get("id"),
        )
