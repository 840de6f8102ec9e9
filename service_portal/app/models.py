"""
Request and response models for the portal API.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class CreateSecretRequest(BaseModel):
    """Request body for creating a secret."""
    name: str = ""
    app: str = ""
    env: str = ""
    rotation_period_days: int = 0
    value: str = ""
    description: Optional[str] = None
    owner: Optional[str] = None


class UpdateSecretRequest(BaseModel):
    """Request body for updating a secret value."""
    value: str = ""


class UpdateRotationPeriodRequest(BaseModel):
    """Request body for changing the rotation period."""
    rotation_period_days: int


class SecretView(BaseModel):
    """Secret as shown in listings."""
    id: str
    name: str
    app: str
    env: str
    rotation_period_days: int
    last_modified_at: datetime
    days_since_rotation: int
    region: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)


class SecretDetailView(SecretView):
    """Secret detail including vault reference and provenance."""
    external_ref: str
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None


class SecretListResponse(BaseModel):
    secrets: List[SecretView]
    next_token: Optional[str] = None


class ConsoleUrlResponse(BaseModel):
    url: str


class AuditEntryView(BaseModel):
    record_key: str
    timestamp: datetime
    actor_id: str
    action: str
    ip: str
    user_agent: str
    success: bool
    details: Optional[str] = None


class AuditHistoryResponse(BaseModel):
    entries: List[AuditEntryView]
    next_token: Optional[str] = None


class AccessReportEntry(AuditEntryView):
    """Audit row with the secret it refers to, or an External placeholder."""
    record_name: str
    app: str
    env: str


class AccessReportResponse(BaseModel):
    entries: List[AccessReportEntry]
    total: int
    next_token: Optional[str] = None


class ExternalChangeView(BaseModel):
    external_ref: str
    timestamp: datetime
    record_name: str
    app: str
    env: str
    actor_id: str
    user_type: str
    action: str
    event_kind: str
    ip: str
    user_agent: str
    region: Optional[str] = None
    event_time: Optional[datetime] = None


class ExternalChangesResponse(BaseModel):
    changes: List[ExternalChangeView]
    next_token: Optional[str] = None


class SuccessResponse(BaseModel):
    success: bool = True


class GrantView(BaseModel):
    app: str
    env: str
    level: str


class PermissionsResponse(BaseModel):
    """Effective grants of the calling user."""
    user_id: str
    is_admin: bool
    grants: List[GrantView]
