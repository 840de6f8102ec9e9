"""
Secrets CRUD service.

Every operation checks the caller's grants against the record's app and
environment before touching the vault or the store. Value updates advance
``last_modified_at`` and reset the rotation notification state so the next
compliance scan re-evaluates the secret.
"""

import base64
import binascii
import json
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, FrozenSet, List, Optional, Tuple
from urllib.parse import quote

from service_audit.app.models import AuditAction, AuditEntry
from service_audit.app.reconciler import EXTERNAL_APP, SECRET_MARKER, UNKNOWN_ENV, display_name_for
from service_audit.app.trail import AuditTrailWriter, ExternalChangeTrail
from service_entitlements.app.grants import AccessLevel, Grant, PermissionResolver, describe_grants, is_admin
from service_rotation.app.policy import days_since_rotation
from shared.errors import ValidationError
from shared.logging import InvocationContext, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.notifications import NotificationDispatcher, NotificationPayload, Severity, dispatch_best_effort
from shared.persistence.base import SecretVault, Token
from shared.records import (
    ROTATION_PERIODS,
    Environment,
    SecretRecord,
    SecretRecordRepository,
    utcnow,
)

from .models import (
    AccessReportEntry,
    AccessReportResponse,
    AuditEntryView,
    AuditHistoryResponse,
    ConsoleUrlResponse,
    CreateSecretRequest,
    ExternalChangesResponse,
    ExternalChangeView,
    GrantView,
    PermissionsResponse,
    SecretDetailView,
    SecretListResponse,
    SecretView,
    UpdateRotationPeriodRequest,
    UpdateSecretRequest,
)

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9-]+$")
MANAGED_BY = "SecretsPortal"
MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50

PROD_SECRET_CHANGE_KIND = "prod_secret_change"
PROD_CHANGE_TITLES = {
    AuditAction.UPDATE: "Secret Value Updated",
    AuditAction.ROTATION_CHANGE: "Rotation Period Changed",
}
ARN_SUFFIX = re.compile(r"-[A-Za-z0-9]{6}$")


@dataclass(frozen=True)
class Principal:
    """Verified caller identity with its resolved grants."""
    user_id: str
    grants: FrozenSet[Grant]
    ip: str = "unknown"
    user_agent: str = "unknown"
    email: Optional[str] = None


def encode_token(token: Token) -> Optional[str]:
    if not token:
        return None
    return base64.urlsafe_b64encode(json.dumps(token, sort_keys=True).encode()).decode()


def decode_token(token: Optional[str]) -> Token:
    if not token:
        return None
    try:
        decoded = json.loads(base64.urlsafe_b64decode(token.encode()).decode())
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ValidationError("Invalid nextToken") from e
    if not isinstance(decoded, dict):
        raise ValidationError("Invalid nextToken")
    return decoded


def _check_page_size(limit: int) -> int:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
    return limit


def _check_env(env: str) -> Environment:
    try:
        return Environment(env)
    except ValueError as e:
        raise ValidationError("Environment must be NP, PP, or Prod", {"env": env}) from e


def _check_period(period: int) -> int:
    if period not in ROTATION_PERIODS:
        raise ValidationError("Rotation period must be 45, 60, or 90 days", {"rotation_period_days": period})
    return period


def region_from_arn(arn: str) -> Optional[str]:
    parts = arn.split(":")
    return parts[3] if len(parts) > 3 and parts[3] else None


def external_display_name(record_key: str) -> str:
    """Report label for an audit row whose key is not a portal record."""
    name = display_name_for(record_key)
    if SECRET_MARKER in record_key:
        name = ARN_SUFFIX.sub("", name)
    return f"{name} (Not in Portal)"


class SecretsService:
    """Portal-side secret management."""

    def __init__(self,
                 repository: SecretRecordRepository,
                 vault: SecretVault,
                 audit_trail: AuditTrailWriter,
                 change_trail: ExternalChangeTrail,
                 resolver: PermissionResolver,
                 clock: Callable[[], datetime] = utcnow,
                 default_region: Optional[str] = None,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 metrics: Optional[MetricsCollector] = None,
                 portal_url: Optional[str] = None):
        self.repository = repository
        self.vault = vault
        self.audit_trail = audit_trail
        self.change_trail = change_trail
        self.resolver = resolver
        self.clock = clock
        self.default_region = default_region
        self.dispatcher = dispatcher
        self.metrics = metrics or get_metrics_collector()
        self.portal_url = portal_url
        self.logger = get_logger("portal.secrets")

    def _view(self, record: SecretRecord) -> SecretView:
        return SecretView(
            id=record.id,
            name=record.name,
            app=record.app,
            env=record.env.value,
            rotation_period_days=record.rotation_period_days,
            last_modified_at=record.last_modified_at,
            days_since_rotation=days_since_rotation(record.last_modified_at, self.clock()),
            region=record.region,
            tags=record.tags,
        )

    def _visible(self, principal: Principal, records: List[SecretRecord]) -> List[SecretView]:
        readable = self.resolver.filter_by_access(
            principal.grants, records, lambda r: r.app, lambda r: r.env, AccessLevel.READ,
        )
        return [self._view(record) for record in readable]

    async def list_secrets(self, principal: Principal, ctx: InvocationContext,
                           app: Optional[str] = None, env: Optional[str] = None,
                           limit: int = DEFAULT_PAGE_SIZE,
                           next_token: Optional[str] = None) -> SecretListResponse:
        """One page of secrets the caller can read, optionally filtered."""
        size = _check_page_size(limit)
        env_value = _check_env(env).value if env else None
        token = decode_token(next_token)

        if app:
            records, token = await self.repository.query_by_application(app, ctx, env_value, size, token)
        elif env_value:
            records, token = await self.repository.query_by_environment(env_value, ctx, size, token)
        else:
            records, token = await self.repository.list_page(ctx, size, token)

        return SecretListResponse(secrets=self._visible(principal, records), next_token=encode_token(token))

    async def search_secrets(self, principal: Principal, query: str, ctx: InvocationContext,
                             limit: int = DEFAULT_PAGE_SIZE,
                             next_token: Optional[str] = None) -> SecretListResponse:
        """Case-insensitive substring search over name, app and environment.

        Each call scans ``limit`` records and returns every visible match among
        them, so a page can be short or empty while ``next_token`` is still set.
        Callers follow the token until it is null.
        """
        if not query or not query.strip():
            raise ValidationError("Search query is required")
        size = _check_page_size(limit)
        needle = query.strip().lower()

        records, token = await self.repository.list_page(ctx, size, decode_token(next_token))
        matching = [
            r for r in records
            if needle in r.name.lower() or needle in r.app.lower() or needle in r.env.value.lower()
        ]
        return SecretListResponse(secrets=self._visible(principal, matching), next_token=encode_token(token))

    async def get_secret(self, principal: Principal, record_id: str,
                         ctx: InvocationContext) -> SecretDetailView:
        record = await self.repository.require(record_id, ctx)
        self.resolver.require_access(principal.grants, record.app, record.env, AccessLevel.READ, ctx)

        described = await self.vault.describe(record.external_ref)
        view = self._view(record)
        return SecretDetailView(
            **view.model_dump(exclude={"tags"}),
            tags={**record.tags, **described.tags},
            external_ref=record.external_ref,
            created_at=record.created_at,
            created_by=record.created_by,
            last_modified_by=record.last_modified_by,
        )

    async def get_console_url(self, principal: Principal, record_id: str,
                              ctx: InvocationContext) -> ConsoleUrlResponse:
        """Vault console deep link; the access itself is audited best effort."""
        record = await self.repository.require(record_id, ctx)
        self.resolver.require_access(principal.grants, record.app, record.env, AccessLevel.READ, ctx)

        name_with_suffix = record.external_ref.split(":")[-1]
        region = record.region or self.default_region or ""
        url = (
            "https://console.aws.amazon.com/secretsmanager/secret"
            f"?name={quote(name_with_suffix, safe='')}&region={region}"
        )
        await self._audit_best_effort(record.id, principal, AuditAction.CONSOLE_ACCESS, ctx)
        return ConsoleUrlResponse(url=url)

    async def create_secret(self, principal: Principal, request: CreateSecretRequest,
                            ctx: InvocationContext) -> SecretView:
        if not (request.name and request.app and request.env and request.rotation_period_days and request.value):
            raise ValidationError("Missing required fields: name, app, env, rotation_period_days, value")
        env = _check_env(request.env)
        period = _check_period(request.rotation_period_days)
        if not NAME_PATTERN.match(request.name):
            raise ValidationError("Secret name must contain only alphanumeric characters and hyphens")

        self.resolver.require_access(principal.grants, request.app, env, AccessLevel.WRITE, ctx)

        secret_name = f"{request.app}-{env.value}-{request.name}"
        tags = {
            "Application": request.app,
            "Environment": env.value,
            "ManagedBy": MANAGED_BY,
            "RotationPeriod": str(period),
        }
        value = json.dumps({
            "value": request.value,
            "metadata": {
                "description": request.description or "",
                "owner": request.owner or principal.email or "",
            },
        })
        vaulted = await self.vault.create(secret_name, value, tags)

        now = self.clock()
        record = SecretRecord(
            id=uuid.uuid4().hex,
            external_ref=vaulted.external_ref,
            name=secret_name,
            app=request.app,
            env=env,
            rotation_period_days=period,
            last_modified_at=now,
            notification_sent=False,
            region=vaulted.region or region_from_arn(vaulted.external_ref),
            created_at=now,
            created_by=principal.user_id,
            last_modified_by=principal.user_id,
            tags=tags,
        )
        await self.repository.create(record, ctx)
        ctx.bind(self.logger).info("Secret created", record_id=record.id, app=record.app, env=env.value)

        await self._audit_best_effort(record.id, principal, AuditAction.CREATE, ctx)
        return self._view(record)

    async def update_secret_value(self, principal: Principal, record_id: str, request: UpdateSecretRequest,
                                  ctx: InvocationContext) -> None:
        if not request.value:
            raise ValidationError("Secret value is required")

        record = await self.repository.require(record_id, ctx)
        self.resolver.require_access(principal.grants, record.app, record.env, AccessLevel.WRITE, ctx)

        await self.vault.put_value(record.external_ref, request.value)
        await self.repository.record_value_update(record.id, principal.user_id, self.clock(), ctx)
        ctx.bind(self.logger).info("Secret value updated", record_id=record.id)

        details = "Secret value updated"
        await self._audit_best_effort(record.id, principal, AuditAction.UPDATE, ctx, details)
        if record.env == Environment.PROD:
            await self._notify_prod_change(record, principal, AuditAction.UPDATE, details, ctx)

    async def update_rotation_period(self, principal: Principal, record_id: str,
                                     request: UpdateRotationPeriodRequest, ctx: InvocationContext) -> None:
        period = _check_period(request.rotation_period_days)

        record = await self.repository.require(record_id, ctx)
        self.resolver.require_access(principal.grants, record.app, record.env, AccessLevel.WRITE, ctx)
        previous = record.rotation_period_days

        await self.vault.tag(record.external_ref, {"RotationPeriod": str(period)})
        await self.repository.update(record.id, {
            "rotation_period_days": period,
            "tags": {**record.tags, "RotationPeriod": str(period)},
        }, ctx)
        ctx.bind(self.logger).info("Rotation period updated", record_id=record.id,
                                   previous_days=previous, rotation_period_days=period)

        details = f"Rotation period changed from {previous} to {period} days"
        await self._audit_best_effort(record.id, principal, AuditAction.UPDATE, ctx, details)
        if record.env == Environment.PROD:
            await self._notify_prod_change(record, principal, AuditAction.ROTATION_CHANGE, details, ctx)

    async def get_audit_history(self, principal: Principal, record_id: str, ctx: InvocationContext,
                                limit: int = DEFAULT_PAGE_SIZE,
                                next_token: Optional[str] = None) -> AuditHistoryResponse:
        size = _check_page_size(limit)
        record = await self.repository.require(record_id, ctx)
        self.resolver.require_access(principal.grants, record.app, record.env, AccessLevel.READ, ctx)

        entries, token = await self.audit_trail.query_by_record(record.id, size, decode_token(next_token), ctx)
        return AuditHistoryResponse(
            entries=[AuditEntryView(**entry.model_dump(exclude={"ttl"})) for entry in entries],
            next_token=encode_token(token),
        )

    async def list_external_changes(self, principal: Principal, ctx: InvocationContext,
                                    limit: int = DEFAULT_PAGE_SIZE,
                                    next_token: Optional[str] = None) -> ExternalChangesResponse:
        """Direct vault changes report; administrators only."""
        self.resolver.require_admin(principal.grants, ctx)
        size = _check_page_size(limit)

        changes, token = await self.change_trail.scan_all(size, decode_token(next_token), ctx)
        return ExternalChangesResponse(
            changes=[ExternalChangeView(**change.model_dump(exclude={"ttl", "event_id"})) for change in changes],
            next_token=encode_token(token),
        )

    async def get_external_changes(self, principal: Principal, record_id: str, ctx: InvocationContext,
                                   limit: int = DEFAULT_PAGE_SIZE,
                                   next_token: Optional[str] = None) -> ExternalChangesResponse:
        """Direct vault changes to one secret, most recent first."""
        size = _check_page_size(limit)
        record = await self.repository.require(record_id, ctx)
        self.resolver.require_access(principal.grants, record.app, record.env, AccessLevel.READ, ctx)

        changes, token = await self.change_trail.query_by_external_ref(
            record.external_ref, size, decode_token(next_token), ctx)
        return ExternalChangesResponse(
            changes=[ExternalChangeView(**change.model_dump(exclude={"ttl", "event_id"})) for change in changes],
            next_token=encode_token(token),
        )

    def describe_permissions(self, principal: Principal) -> PermissionsResponse:
        return PermissionsResponse(
            user_id=principal.user_id,
            is_admin=is_admin(principal.grants),
            grants=[GrantView(**grant) for grant in describe_grants(principal.grants)],
        )

    async def get_access_report(self, principal: Principal, ctx: InvocationContext,
                                limit: int = DEFAULT_PAGE_SIZE,
                                next_token: Optional[str] = None) -> AccessReportResponse:
        """Audit log scan enriched with record name, app and environment; administrators only.

        Rows keyed by something other than a portal record (direct vault changes
        to unmanaged secrets) are reported under the External app.
        """
        self.resolver.require_admin(principal.grants, ctx)
        size = _check_page_size(limit)

        entries, token = await self.audit_trail.scan_all(size, decode_token(next_token), ctx)
        records = {record.id: record for record in await self.repository.list_all(ctx)}

        rows = []
        for entry in entries:
            record = records.get(entry.record_key)
            if record:
                name, app, env = record.name, record.app, record.env.value
            else:
                name, app, env = external_display_name(entry.record_key), EXTERNAL_APP, UNKNOWN_ENV
            rows.append(AccessReportEntry(
                **entry.model_dump(exclude={"ttl"}),
                record_name=name,
                app=app,
                env=env,
            ))
        return AccessReportResponse(entries=rows, total=len(rows), next_token=encode_token(token))

    async def _audit_best_effort(self, record_id: str, principal: Principal, action: AuditAction,
                                 ctx: InvocationContext, details: Optional[str] = None) -> None:
        try:
            await self.audit_trail.append(AuditEntry(
                record_key=record_id,
                actor_id=principal.user_id,
                action=action.value,
                ip=principal.ip,
                user_agent=principal.user_agent,
                success=True,
                details=details,
            ), ctx)
        except Exception as e:
            ctx.bind(self.logger).error("Failed to write audit entry", record_id=record_id,
                                        action=action.value, error=str(e))

    async def _notify_prod_change(self, record: SecretRecord, principal: Principal, action: AuditAction,
                                  details: str, ctx: InvocationContext) -> None:
        if self.dispatcher is None:
            return
        payload = NotificationPayload(
            kind=PROD_SECRET_CHANGE_KIND,
            title=f"[PROD] {PROD_CHANGE_TITLES[action]} - {record.name}",
            message=f"A production secret has been modified. {details}",
            app=record.app,
            env=record.env.value,
            action=action.value,
            actor_id=principal.email or principal.user_id,
            timestamp=self.clock(),
            severity=Severity.HIGH,
            secret_name=record.name,
            portal_url=self.portal_url,
        )
        await dispatch_best_effort(self.dispatcher, payload, self.metrics,
                                   ctx.bind(self.logger).bind(record_id=record.id))


def resolve_principal(resolver: PermissionResolver, user_id: str, groups: List[str],
                      ip: str = "unknown", user_agent: str = "unknown",
                      email: Optional[str] = None) -> Principal:
    return Principal(
        user_id=user_id,
        grants=resolver.resolve(groups),
        ip=ip,
        user_agent=user_agent,
        email=email,
    )


def split_groups(header: Optional[str]) -> Tuple[str, ...]:
    if not header:
        return ()
    return tuple(group.strip() for group in header.split(",") if group.strip())
