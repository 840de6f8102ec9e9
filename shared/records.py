"""
Secret record schema and repository.

SecretRecord is the single canonical (v2) schema for portal-known secret
metadata. Items written under the legacy camelCase field names are converted
once by ``migrate_record_store``; reads never fall back to alternate names.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ConditionFailed, NotFound, ValidationError
from shared.logging import InvocationContext, get_logger
from shared.persistence.base import Item, RecordStore, Token
from shared.retry import RetryingOperationExecutor

SCHEMA_VERSION = 2
ROTATION_PERIODS = (45, 60, 90)

_JSON = TypeAdapter(Any)


class Environment(str, Enum):
    """Deployment tiers, lowest to highest sensitivity."""
    NP = "NP"
    PP = "PP"
    PROD = "Prod"


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dump_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Serialise a partial field mapping the same way full items are serialised."""
    return _JSON.dump_python(dict(fields), mode="json")


class SecretRecord(BaseModel):
    """Portal-known metadata describing one externally vaulted secret."""
    id: str
    external_ref: str = Field(..., description="Vault identifier (ARN)")
    name: str
    app: str
    env: Environment
    rotation_period_days: int
    last_modified_at: datetime
    notification_sent: bool = False
    last_notification_at: Optional[datetime] = None
    region: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION

    @field_validator("rotation_period_days")
    @classmethod
    def _check_period(cls, value: int) -> int:
        if value not in ROTATION_PERIODS:
            raise ValueError("Rotation period must be 45, 60, or 90 days")
        return value

    @field_validator("last_modified_at", "last_notification_at", "created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    def to_item(self) -> Item:
        return self.model_dump(mode="json")

    @classmethod
    def from_item(cls, item: Item) -> "SecretRecord":
        if is_legacy_item(item):
            raise ValidationError(
                "Record item uses the legacy schema; run the record schema migration",
                {"keys": sorted(item)},
            )
        try:
            return cls.model_validate(item)
        except PydanticValidationError as e:
            raise ValidationError("Malformed record item", {"errors": e.errors(include_url=False)}) from e


# Legacy camelCase attribute -> canonical attribute.
LEGACY_FIELD_MAP: Dict[str, str] = {
    "secretId": "id",
    "secretArn": "external_ref",
    "awsSecretArn": "external_ref",
    "secretName": "name",
    "application": "app",
    "environment": "env",
    "rotationPeriod": "rotation_period_days",
    "lastModified": "last_modified_at",
    "notificationSent": "notification_sent",
    "lastNotificationDate": "last_notification_at",
    "awsRegion": "region",
    "createdAt": "created_at",
    "createdBy": "created_by",
    "lastModifiedBy": "last_modified_by",
}


def is_legacy_item(item: Mapping[str, Any]) -> bool:
    return item.get("schema_version") != SCHEMA_VERSION or any(key in item for key in LEGACY_FIELD_MAP)


def migrate_legacy_item(item: Mapping[str, Any]) -> Item:
    """Convert one legacy item to the canonical schema."""
    if not is_legacy_item(item):
        return dict(item)

    converted: Dict[str, Any] = {}
    for key, value in item.items():
        target = LEGACY_FIELD_MAP.get(key, key)
        # secretArn wins over the older awsSecretArn spelling
        if target == "external_ref" and key == "awsSecretArn" and item.get("secretArn"):
            continue
        converted[target] = value
    converted["schema_version"] = SCHEMA_VERSION
    return SecretRecord.from_item(converted).to_item()


@dataclass
class MigrationReport:
    scanned: int = 0
    migrated: int = 0
    failed: int = 0


async def migrate_record_store(store: RecordStore,
                               executor: RetryingOperationExecutor,
                               ctx: InvocationContext,
                               page_size: int = 100) -> MigrationReport:
    """Rewrite every legacy item in ``store`` under the canonical schema."""
    logger = ctx.bind(get_logger("records.migration"))
    report = MigrationReport()
    pending: List[Item] = []
    token: Token = None

    while True:
        page = await executor.execute(lambda: store.list(page_size, token), "records.list", ctx)
        for item in page.items:
            report.scanned += 1
            if is_legacy_item(item):
                pending.append(item)
        token = page.next_token
        if not token:
            break

    for item in pending:
        try:
            canonical = migrate_legacy_item(item)
        except ValidationError as e:
            report.failed += 1
            logger.error("Legacy record could not be migrated", error=e.message, details=e.details)
            continue
        await executor.execute(lambda: store.put(canonical), "records.put", ctx)
        report.migrated += 1

    logger.info("Record schema migration finished", scanned=report.scanned,
                migrated=report.migrated, failed=report.failed)
    return report


class SecretRecordRepository:
    """Typed access to the record store through the retrying executor."""

    def __init__(self, store: RecordStore, executor: RetryingOperationExecutor, page_size: int = 100):
        self.store = store
        self.executor = executor
        self.page_size = page_size
        self.logger = get_logger("records.repository")

    async def get(self, record_id: str, ctx: InvocationContext) -> Optional[SecretRecord]:
        item = await self.executor.execute(lambda: self.store.get(record_id), "records.get", ctx)
        return SecretRecord.from_item(item) if item is not None else None

    async def require(self, record_id: str, ctx: InvocationContext) -> SecretRecord:
        record = await self.get(record_id, ctx)
        if record is None:
            raise NotFound("Secret not found", {"id": record_id})
        return record

    async def create(self, record: SecretRecord, ctx: InvocationContext) -> None:
        item = record.to_item()
        await self.executor.execute(lambda: self.store.create(item), "records.create", ctx)

    async def update(self, record_id: str, fields: Mapping[str, Any], ctx: InvocationContext) -> None:
        if not fields:
            return
        if "id" in fields:
            raise ValidationError("The record id cannot be updated", {"id": record_id})
        payload = dump_fields(fields)
        try:
            await self.executor.execute(lambda: self.store.update(record_id, payload), "records.update", ctx)
        except ConditionFailed as e:
            raise NotFound(f"Secret with ID {record_id} not found", {"id": record_id}) from e

    async def list_page(self, ctx: InvocationContext, page_size: Optional[int] = None,
                        token: Token = None) -> Tuple[List[SecretRecord], Token]:
        size = page_size or self.page_size
        page = await self.executor.execute(lambda: self.store.list(size, token), "records.list", ctx)
        return [SecretRecord.from_item(item) for item in page.items], page.next_token

    async def list_all(self, ctx: InvocationContext, page_size: Optional[int] = None) -> List[SecretRecord]:
        """Read every record, following continuation tokens until exhausted."""
        records: List[SecretRecord] = []
        token: Token = None
        while True:
            page, token = await self.list_page(ctx, page_size=page_size, token=token)
            records.extend(page)
            if not token:
                return records

    async def query_by_application(self, app: str, ctx: InvocationContext, env: Optional[str] = None,
                                   page_size: Optional[int] = None,
                                   token: Token = None) -> Tuple[List[SecretRecord], Token]:
        key_values: Dict[str, Any] = {"app": app}
        if env is not None:
            key_values["env"] = env
        size = page_size or self.page_size
        page = await self.executor.execute(
            lambda: self.store.query_by_index("app-env-index", key_values, size, token),
            "records.query_by_application",
            ctx,
        )
        return [SecretRecord.from_item(item) for item in page.items], page.next_token

    async def query_by_environment(self, env: str, ctx: InvocationContext,
                                   page_size: Optional[int] = None,
                                   token: Token = None) -> Tuple[List[SecretRecord], Token]:
        size = page_size or self.page_size
        page = await self.executor.execute(
            lambda: self.store.query_by_index("env-index", {"env": env}, size, token),
            "records.query_by_environment",
            ctx,
        )
        return [SecretRecord.from_item(item) for item in page.items], page.next_token

    async def find_by_external_ref(self, external_ref: str, ctx: InvocationContext,
                                   page_size: Optional[int] = None) -> Optional[SecretRecord]:
        """Linear lookup over the full record set; first match wins."""
        for record in await self.list_all(ctx, page_size=page_size):
            if record.external_ref == external_ref:
                return record
        return None

    async def mark_notified(self, record_id: str, at: datetime, ctx: InvocationContext) -> None:
        await self.update(record_id, {"notification_sent": True, "last_notification_at": at}, ctx)

    async def record_value_update(self, record_id: str, actor_id: str, at: datetime,
                                  ctx: InvocationContext) -> None:
        """Advance last_modified_at and reset the rotation notification state."""
        await self.update(record_id, {
            "last_modified_at": at,
            "last_modified_by": actor_id,
            "notification_sent": False,
            "last_notification_at": None,
        }, ctx)
