"""
Reconciliation of direct vault changes against portal-known records.

Each change event is resolved to a record (or not), then written to both the
external-change trail and the legacy audit log. Direct changes to Prod
secrets also raise a high-severity notification, best effort.
"""

from enum import Enum
from typing import Any, Mapping, Optional

from shared.logging import InvocationContext, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.notifications import NotificationDispatcher, NotificationPayload, Severity, dispatch_best_effort
from shared.records import Environment, SecretRecord, SecretRecordRepository
from shared.tracing import add_span_attributes, trace_operation

from .events import ExternalChangeEvent
from .models import AuditAction, AuditEntry, ExternalChangeRecord
from .trail import AuditTrailWriter, ExternalChangeTrail

READ_ONLY_KINDS = frozenset({"GetSecretValue", "DescribeSecret"})

ACTION_MAP = {
    "PutSecretValue": AuditAction.UPDATE.value,
    "UpdateSecret": AuditAction.UPDATE.value,
    "CreateSecret": AuditAction.CREATE.value,
    "DeleteSecret": AuditAction.DELETE.value,
    "GetSecretValue": AuditAction.READ.value,
    "DescribeSecret": AuditAction.READ.value,
}

EXTERNAL_APP = "External"
UNKNOWN_ENV = "Unknown"
SECRET_MARKER = ":secret:"

PROD_CHANGE_KIND = "prod_direct_change"


class ReconcileOutcome(str, Enum):
    """What happened to one change event."""
    SKIPPED = "skipped"
    KNOWN = "known"
    UNKNOWN = "unknown"


def map_action(event_kind: str) -> str:
    return ACTION_MAP.get(event_kind, event_kind)


def display_name_for(external_ref: str) -> str:
    """Secret name from a vault ARN, or the raw ref when it is not an ARN."""
    if SECRET_MARKER in external_ref:
        return external_ref.split(SECRET_MARKER, 1)[1]
    return external_ref


class ChangeReconciler:
    """Consumes external change events and drives both audit trails."""

    def __init__(self,
                 repository: SecretRecordRepository,
                 audit_trail: AuditTrailWriter,
                 change_trail: ExternalChangeTrail,
                 dispatcher: NotificationDispatcher,
                 metrics: Optional[MetricsCollector] = None,
                 page_size: int = 1000,
                 portal_url: Optional[str] = None):
        self.repository = repository
        self.audit_trail = audit_trail
        self.change_trail = change_trail
        self.dispatcher = dispatcher
        self.metrics = metrics or get_metrics_collector()
        self.page_size = page_size
        self.portal_url = portal_url
        self.logger = get_logger("audit.reconciler")

    async def handle_eventbridge(self, payload: Mapping[str, Any], ctx: InvocationContext) -> ReconcileOutcome:
        """Parse an EventBridge delivery and process it."""
        event = ExternalChangeEvent.from_eventbridge(payload)
        return await self.process(event, ctx)

    async def process(self, event: ExternalChangeEvent, ctx: InvocationContext) -> ReconcileOutcome:
        logger = ctx.bind(self.logger).bind(event_kind=event.event_kind, external_ref=event.external_ref)

        with trace_operation("reconciler.process", event_kind=event.event_kind):
            if event.event_kind in READ_ONLY_KINDS:
                logger.debug("Skipping read-only event")
                self.metrics.increment_counter("change_events_total", outcome=ReconcileOutcome.SKIPPED.value)
                return ReconcileOutcome.SKIPPED

            record = await self.repository.find_by_external_ref(event.external_ref, ctx, page_size=self.page_size)
            actor_id = event.actor.actor_id()
            action = map_action(event.event_kind)
            details = f"Direct AWS change: {event.event_kind} by {event.actor.type}"

            if record is not None:
                outcome = ReconcileOutcome.KNOWN
                await self._write_trails(event, ctx,
                                         record_key=record.id,
                                         record_name=record.name,
                                         app=record.app,
                                         env=record.env.value,
                                         actor_id=actor_id,
                                         action=action,
                                         details=details)
            else:
                outcome = ReconcileOutcome.UNKNOWN
                await self._write_trails(event, ctx,
                                         record_key=event.external_ref,
                                         record_name=display_name_for(event.external_ref),
                                         app=EXTERNAL_APP,
                                         env=UNKNOWN_ENV,
                                         actor_id=actor_id,
                                         action=action,
                                         details=f"{details} (Secret not in portal)")

            add_span_attributes(outcome=outcome.value)
            self.metrics.increment_counter("change_events_total", outcome=outcome.value)
            logger.info("Direct change recorded", outcome=outcome.value, actor_id=actor_id, action=action)

            if record is not None and record.env == Environment.PROD:
                await self._notify_prod_change(record, event, actor_id, action, ctx)

            return outcome

    async def _write_trails(self, event: ExternalChangeEvent, ctx: InvocationContext, *,
                            record_key: str, record_name: str, app: str, env: str,
                            actor_id: str, action: str, details: str) -> None:
        await self.change_trail.append(ExternalChangeRecord(
            external_ref=event.external_ref,
            record_name=record_name,
            app=app,
            env=env,
            actor_id=actor_id,
            user_type=event.actor.type,
            action=action,
            event_kind=event.event_kind,
            ip=event.source_ip,
            user_agent=event.user_agent,
            region=event.region,
            event_id=event.event_id,
            event_time=event.timestamp,
        ), ctx)

        await self.audit_trail.append(AuditEntry(
            record_key=record_key,
            actor_id=actor_id,
            action=action,
            ip=event.source_ip,
            user_agent=event.user_agent,
            success=True,
            details=details,
        ), ctx)

    async def _notify_prod_change(self, record: SecretRecord, event: ExternalChangeEvent,
                                  actor_id: str, action: str, ctx: InvocationContext) -> None:
        payload = NotificationPayload(
            kind=PROD_CHANGE_KIND,
            title=f"[PROD] Direct AWS Change - {record.name}",
            message=(
                f"Secret '{record.name}' in {record.app} {record.env.value} was changed "
                f"directly in AWS ({event.event_kind}) by {actor_id}."
            ),
            app=record.app,
            env=record.env.value,
            action=action,
            actor_id=actor_id,
            timestamp=event.timestamp,
            severity=Severity.HIGH,
            secret_name=record.name,
            portal_url=self.portal_url,
        )
        await dispatch_best_effort(self.dispatcher, payload, self.metrics,
                                   ctx.bind(self.logger).bind(record_id=record.id))
