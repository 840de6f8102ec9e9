"""
Integration tests for direct-change tracking across the portal components.
"""

import pytest
from prometheus_client import CollectorRegistry

from service_audit.app.reconciler import ReconcileOutcome
from service_portal.app.main import PortalDependencies, PortalService
from service_portal.app.models import CreateSecretRequest
from service_portal.app.secrets import resolve_principal
from shared.logging import InvocationContext
from shared.metrics import MetricsCollector
from shared.persistence import InMemoryAuditStore, InMemoryRecordStore, InMemoryVault
from shared.test_helpers import FixedClock, RecordingDispatcher, SleepRecorder, TestDataFactory, TestEnvironment


class TestChangeTrackingFlow:
    """Portal-created secrets changed directly in the vault."""

    @pytest.fixture
    def service(self):
        dependencies = PortalDependencies(
            record_store=InMemoryRecordStore(),
            audit_store=InMemoryAuditStore(partition_key="record_key"),
            change_store=InMemoryAuditStore(partition_key="external_ref"),
            vault=InMemoryVault(),
            dispatcher=RecordingDispatcher(),
            clock=FixedClock(),
            sleep=SleepRecorder(),
        )
        return PortalService(
            TestEnvironment.get_mock_config(),
            dependencies,
            MetricsCollector("test", registry=CollectorRegistry()),
        )

    @pytest.fixture
    def ctx(self):
        return InvocationContext.new("integration")

    @pytest.mark.asyncio
    async def test_prod_change_reaches_both_trails_and_admin_report(self, service, ctx):
        admin = resolve_principal(service.resolver, "root", ["secrets-admin"])
        viewer = resolve_principal(service.resolver, "vic", ["payments-prod-viewer"])
        created = await service.secrets.create_secret(admin, CreateSecretRequest(
            name="db-password", app="payments", env="Prod", rotation_period_days=60, value="v1",
        ), ctx)
        detail = await service.secrets.get_secret(viewer, created.id, ctx)

        outcome = await service.reconciler.handle_eventbridge(
            TestDataFactory.create_eventbridge_event(secret_id=detail.external_ref, user_name="mallory"),
            ctx,
        )

        assert outcome == ReconcileOutcome.KNOWN
        history = await service.secrets.get_audit_history(viewer, created.id, ctx)
        assert [(e.action, e.actor_id) for e in history.entries] == [("UPDATE", "mallory"), ("CREATE", "root")]

        report = await service.secrets.list_external_changes(admin, ctx)
        assert [(c.app, c.env, c.record_name) for c in report.changes] == [
            ("payments", "Prod", "payments-Prod-db-password"),
        ]

        payloads = service.dependencies.dispatcher.payloads
        assert len(payloads) == 1
        assert payloads[0].title == "[PROD] Direct AWS Change - payments-Prod-db-password"
        assert payloads[0].portal_url == "https://portal.example.com"

        access = await service.secrets.get_access_report(admin, ctx)
        assert [(e.action, e.actor_id, e.record_name) for e in access.entries] == [
            ("UPDATE", "mallory", "payments-Prod-db-password"),
            ("CREATE", "root", "payments-Prod-db-password"),
        ]

    @pytest.mark.asyncio
    async def test_unknown_and_read_events(self, service, ctx):
        admin = resolve_principal(service.resolver, "root", ["secrets-admin"])
        ref = "arn:aws:secretsmanager:us-east-1:123456789012:secret:shadow-secret-Zx81aQ"

        skipped = await service.reconciler.handle_eventbridge(
            TestDataFactory.create_eventbridge_event(secret_id=ref, event_name="GetSecretValue"), ctx)
        unknown = await service.reconciler.handle_eventbridge(
            TestDataFactory.create_eventbridge_event(secret_id=ref, event_name="DeleteSecret"), ctx)

        assert skipped == ReconcileOutcome.SKIPPED
        assert unknown == ReconcileOutcome.UNKNOWN
        report = await service.secrets.list_external_changes(admin, ctx)
        assert [(c.app, c.env, c.action, c.record_name) for c in report.changes] == [
            ("External", "Unknown", "DELETE", "shadow-secret-Zx81aQ"),
        ]
        assert service.dependencies.dispatcher.payloads == []
