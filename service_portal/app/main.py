"""
Secrets Portal service: composition root and HTTP routes.

Stores, vault and dispatcher are constructed once per process (or handed in
by the caller) and injected into every component. Nothing below reaches for
a module-level client.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Body, FastAPI, Header, Query, Request

from service_audit.app.reconciler import ChangeReconciler
from service_audit.app.trail import AuditTrailWriter, ExternalChangeTrail
from service_entitlements.app.grants import PermissionResolver
from service_rotation.app.scanner import RotationComplianceScanner
from shared.base_service import BaseService, request_correlation_id
from shared.config import PortalConfig, get_config
from shared.errors import Unauthenticated
from shared.logging import InvocationContext
from shared.metrics import MetricsCollector
from shared.notifications import NotificationDispatcher, build_dispatcher
from shared.persistence import (
    AuditStore,
    InMemoryAuditStore,
    InMemoryRecordStore,
    InMemoryVault,
    RecordStore,
    SecretVault,
)
from shared.records import SecretRecordRepository, utcnow
from shared.retry import RetryConfig, RetryingOperationExecutor

from .models import (
    AccessReportResponse,
    AuditHistoryResponse,
    ConsoleUrlResponse,
    CreateSecretRequest,
    ExternalChangesResponse,
    PermissionsResponse,
    SecretDetailView,
    SecretListResponse,
    SecretView,
    SuccessResponse,
    UpdateRotationPeriodRequest,
    UpdateSecretRequest,
)
from .secrets import Principal, SecretsService, resolve_principal, split_groups


@dataclass
class PortalDependencies:
    """External collaborators, built once at process start."""
    record_store: RecordStore
    audit_store: AuditStore
    change_store: AuditStore
    vault: SecretVault
    dispatcher: NotificationDispatcher
    clock: Callable[[], datetime] = utcnow
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep)


def build_dependencies(config: PortalConfig) -> PortalDependencies:
    """Local wiring with in-memory stores and the configured dispatcher."""
    return PortalDependencies(
        record_store=InMemoryRecordStore(),
        audit_store=InMemoryAuditStore(partition_key="record_key"),
        change_store=InMemoryAuditStore(partition_key="external_ref"),
        vault=InMemoryVault(region=config.aws_region),
        dispatcher=build_dispatcher(config),
    )


class PortalService(BaseService):
    """Secrets Portal HTTP service."""

    def __init__(self, config: Optional[PortalConfig] = None,
                 dependencies: Optional[PortalDependencies] = None,
                 metrics: Optional[MetricsCollector] = None):
        config = config or get_config()
        self.dependencies = dependencies or build_dependencies(config)
        super().__init__(config.service_name, config, metrics)

        deps = self.dependencies
        self.executor = RetryingOperationExecutor(
            RetryConfig.from_milliseconds(config.retry_max_attempts, config.retry_delays_ms),
            sleep=deps.sleep,
            metrics=self.metrics,
        )
        self.resolver = PermissionResolver(metrics=self.metrics)
        self.repository = SecretRecordRepository(deps.record_store, self.executor, page_size=config.scan_page_size)
        self.audit_trail = AuditTrailWriter(
            deps.audit_store, self.executor,
            retention_days=config.audit_retention_days,
            clock=deps.clock,
            metrics=self.metrics,
        )
        self.change_trail = ExternalChangeTrail(
            deps.change_store, self.executor,
            retention_days=config.external_change_retention_days,
            clock=deps.clock,
            metrics=self.metrics,
        )
        self.secrets = SecretsService(
            self.repository, deps.vault, self.audit_trail, self.change_trail, self.resolver,
            clock=deps.clock,
            default_region=config.aws_region,
            dispatcher=deps.dispatcher,
            metrics=self.metrics,
            portal_url=config.portal_url,
        )
        self.reconciler = ChangeReconciler(
            self.repository, self.audit_trail, self.change_trail, deps.dispatcher,
            metrics=self.metrics,
            page_size=config.reconcile_page_size,
            portal_url=config.portal_url,
        )
        self.scanner = RotationComplianceScanner(
            self.repository, deps.dispatcher,
            clock=deps.clock,
            reminder_days=config.rotation_reminder_days,
            page_size=config.scan_page_size,
            metrics=self.metrics,
            portal_url=config.portal_url,
        )

        self._setup_portal_routes()

    async def _check_dependencies(self) -> Dict[str, Any]:
        deps = self.dependencies
        return {
            "record_store": type(deps.record_store).__name__,
            "audit_store": type(deps.audit_store).__name__,
            "change_store": type(deps.change_store).__name__,
            "vault": type(deps.vault).__name__,
            "dispatcher": type(deps.dispatcher).__name__,
        }

    def _principal(self, request: Request, user_id: Optional[str], groups: Optional[str],
                   email: Optional[str]) -> Principal:
        if not user_id:
            raise Unauthenticated()
        return resolve_principal(
            self.resolver,
            user_id,
            list(split_groups(groups)),
            ip=request.client.host if request.client else "unknown",
            user_agent=request.headers.get("user-agent", "unknown"),
            email=email,
        )

    @staticmethod
    def _context(request: Request, source: str, principal: Optional[Principal] = None,
                 **extra: Any) -> InvocationContext:
        """Invocation context carrying the id the request middleware assigned."""
        return InvocationContext.new(
            source,
            correlation_id=request_correlation_id(request),
            actor_id=principal.user_id if principal else None,
            **extra,
        )

    def _setup_portal_routes(self):
        """Set up portal-specific routes."""

        @self.app.get("/secrets", response_model=SecretListResponse)
        async def list_secrets(
            request: Request,
            app: Optional[str] = Query(None, description="Filter by application"),
            env: Optional[str] = Query(None, description="Filter by environment"),
            limit: int = Query(50, description="Items per page"),
            next_token: Optional[str] = Query(None, alias="nextToken"),
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            """List secrets the caller can read."""
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.list_secrets(principal, ctx, app=app, env=env,
                                                   limit=limit, next_token=next_token)

        @self.app.get("/secrets/search", response_model=SecretListResponse)
        async def search_secrets(
            request: Request,
            q: str = Query("", description="Search text"),
            limit: int = Query(50, description="Items per page"),
            next_token: Optional[str] = Query(None, alias="nextToken"),
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.search_secrets(principal, q, ctx, limit=limit, next_token=next_token)

        @self.app.get("/secrets/{record_id}", response_model=SecretDetailView)
        async def get_secret(
            record_id: str,
            request: Request,
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.get_secret(principal, record_id, ctx)

        @self.app.get("/secrets/{record_id}/console-url", response_model=ConsoleUrlResponse)
        async def get_console_url(
            record_id: str,
            request: Request,
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.get_console_url(principal, record_id, ctx)

        @self.app.post("/secrets", response_model=SecretView, status_code=201)
        async def create_secret(
            body: CreateSecretRequest,
            request: Request,
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            """Create a secret in the vault and register its metadata."""
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.create_secret(principal, body, ctx)

        @self.app.put("/secrets/{record_id}", response_model=SuccessResponse)
        async def update_secret(
            record_id: str,
            body: UpdateSecretRequest,
            request: Request,
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            """Rotate a secret value."""
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            await self.secrets.update_secret_value(principal, record_id, body, ctx)
            return SuccessResponse()

        @self.app.put("/secrets/{record_id}/rotation", response_model=SuccessResponse)
        async def update_rotation_period(
            record_id: str,
            body: UpdateRotationPeriodRequest,
            request: Request,
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            await self.secrets.update_rotation_period(principal, record_id, body, ctx)
            return SuccessResponse()

        @self.app.get("/secrets/{record_id}/audit", response_model=AuditHistoryResponse)
        async def get_audit_history(
            record_id: str,
            request: Request,
            limit: int = Query(50, description="Items per page"),
            next_token: Optional[str] = Query(None, alias="nextToken"),
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            """Portal audit history for one secret, most recent first."""
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.get_audit_history(principal, record_id, ctx,
                                                        limit=limit, next_token=next_token)

        @self.app.get("/secrets/{record_id}/external-changes", response_model=ExternalChangesResponse)
        async def get_external_changes(
            record_id: str,
            request: Request,
            limit: int = Query(50, description="Items per page"),
            next_token: Optional[str] = Query(None, alias="nextToken"),
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            """Direct vault changes to one secret, most recent first."""
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.get_external_changes(principal, record_id, ctx,
                                                           limit=limit, next_token=next_token)

        @self.app.get("/reports/console-changes", response_model=ExternalChangesResponse)
        async def console_changes_report(
            request: Request,
            limit: int = Query(50, description="Items per page"),
            next_token: Optional[str] = Query(None, alias="nextToken"),
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            """Direct vault changes, most recent first."""
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.list_external_changes(principal, ctx, limit=limit, next_token=next_token)

        @self.app.get("/reports/access", response_model=AccessReportResponse)
        async def access_report(
            request: Request,
            limit: int = Query(50, description="Items per page"),
            next_token: Optional[str] = Query(None, alias="nextToken"),
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            """Portal audit log across all secrets, with secret names resolved."""
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            ctx = self._context(request, "http", principal)
            return await self.secrets.get_access_report(principal, ctx, limit=limit, next_token=next_token)

        @self.app.get("/me/permissions", response_model=PermissionsResponse)
        async def my_permissions(
            request: Request,
            x_user_id: Optional[str] = Header(None),
            x_user_groups: Optional[str] = Header(None),
            x_user_email: Optional[str] = Header(None),
        ):
            principal = self._principal(request, x_user_id, x_user_groups, x_user_email)
            return self.secrets.describe_permissions(principal)

        @self.app.post("/events/secrets-manager")
        async def secrets_manager_event(
            request: Request,
            payload: Dict[str, Any] = Body(...),
        ):
            """EventBridge delivery of a vault change event."""
            ctx = self._context(request, "eventbridge", delivery_id=payload.get("id"))
            outcome = await self.reconciler.handle_eventbridge(payload, ctx)
            return {"outcome": outcome.value}

        @self.app.post("/rotation/scan")
        async def rotation_scan(request: Request):
            """Scheduler tick for the rotation compliance scan."""
            ctx = self._context(request, "scheduler")
            result = await self.scanner.run_scan(ctx)
            return asdict(result)


def create_app(config: Optional[PortalConfig] = None,
               dependencies: Optional[PortalDependencies] = None,
               metrics: Optional[MetricsCollector] = None) -> FastAPI:
    """Build the portal application."""
    return PortalService(config, dependencies, metrics).app


if __name__ == "__main__":
    PortalService().run()
