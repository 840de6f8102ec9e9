"""
Tests for the portal HTTP routes.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from service_portal.app.main import PortalDependencies, PortalService, create_app
from service_portal.app.models import SecretListResponse
from shared.metrics import MetricsCollector
from shared.persistence import InMemoryAuditStore, InMemoryRecordStore, InMemoryVault
from shared.test_helpers import FixedClock, RecordingDispatcher, SleepRecorder, TestDataFactory, TestEnvironment

ADMIN = {"X-User-Id": "root", "X-User-Groups": "secrets-admin"}
DEVELOPER = {"X-User-Id": "alice", "X-User-Groups": "payments-developer,billing-prod-viewer"}
VIEWER = {"X-User-Id": "vic", "X-User-Groups": "payments-prod-viewer"}


class TestPortalRoutes:
    """Test cases for the portal API."""

    @pytest.fixture
    def dependencies(self):
        return PortalDependencies(
            record_store=InMemoryRecordStore(),
            audit_store=InMemoryAuditStore(partition_key="record_key"),
            change_store=InMemoryAuditStore(partition_key="external_ref"),
            vault=InMemoryVault(),
            dispatcher=RecordingDispatcher(),
            clock=FixedClock(),
            sleep=SleepRecorder(),
        )

    @pytest.fixture
    def service(self, dependencies):
        return PortalService(
            TestEnvironment.get_mock_config(),
            dependencies,
            MetricsCollector("test", registry=CollectorRegistry()),
        )

    @pytest.fixture
    def client(self, service):
        return TestClient(service.app)

    def test_create_app(self, dependencies):
        app = create_app(TestEnvironment.get_mock_config(), dependencies,
                         MetricsCollector("test", registry=CollectorRegistry()))

        assert TestClient(app).get("/health").status_code == 200

    def create(self, client, headers=DEVELOPER, **overrides):
        body = {"name": "db-password", "app": "payments", "env": "NP", "rotation_period_days": 45, "value": "v1"}
        body.update(overrides)
        return client.post("/secrets", json=body, headers=headers)

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["dependencies"]["dispatcher"] == "RecordingDispatcher"

    def test_correlation_id_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-Id": "corr-42"})

        assert response.headers["X-Correlation-Id"] == "corr-42"

    @pytest.mark.parametrize("headers", [{"X-Correlation-Id": "corr-42"}, {}])
    def test_route_context_uses_request_correlation_id(self, service, client, headers):
        service.secrets.list_secrets = AsyncMock(return_value=SecretListResponse(secrets=[]))

        response = client.get("/secrets", headers={**DEVELOPER, **headers})

        ctx = service.secrets.list_secrets.call_args.args[1]
        assert ctx.correlation_id == response.headers["X-Correlation-Id"]
        assert ctx.actor_id == "alice"

    def test_metrics_exposition(self, client):
        self.create(client)
        client.post("/secrets", json={"name": "x", "app": "payments", "env": "Prod",
                                      "rotation_period_days": 45, "value": "v"}, headers=VIEWER)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'portal_access_denied_total{level="write"} 1.0' in response.text

    def test_missing_identity(self, client):
        response = client.get("/secrets")

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_create_and_read(self, client):
        created = self.create(client)

        assert created.status_code == 201
        secret_id = created.json()["id"]
        assert created.json()["name"] == "payments-NP-db-password"

        listing = client.get("/secrets", headers=DEVELOPER)
        assert [s["id"] for s in listing.json()["secrets"]] == [secret_id]

        detail = client.get(f"/secrets/{secret_id}", headers=DEVELOPER)
        assert detail.status_code == 200
        assert detail.json()["tags"]["ManagedBy"] == "SecretsPortal"

    def test_create_validation_error(self, client):
        response = self.create(client, name="no spaces allowed")

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_create_forbidden(self, client):
        response = self.create(client, headers=VIEWER, env="Prod")

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "FORBIDDEN"
        assert body["details"] == {"app": "payments", "env": "Prod", "required_level": "write"}

    def test_unknown_secret(self, client):
        response = client.get("/secrets/missing", headers=ADMIN)

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_update_value_and_history(self, client):
        secret_id = self.create(client).json()["id"]

        response = client.put(f"/secrets/{secret_id}", json={"value": "v2"}, headers=DEVELOPER)
        history = client.get(f"/secrets/{secret_id}/audit", headers=DEVELOPER)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert [e["action"] for e in history.json()["entries"]] == ["UPDATE", "CREATE"]
        assert history.json()["entries"][0]["actor_id"] == "alice"

    def test_update_rotation_period(self, client):
        secret_id = self.create(client).json()["id"]

        response = client.put(f"/secrets/{secret_id}/rotation", json={"rotation_period_days": 90},
                              headers=DEVELOPER)
        detail = client.get(f"/secrets/{secret_id}", headers=DEVELOPER)

        assert response.status_code == 200
        assert detail.json()["rotation_period_days"] == 90

    def test_prod_changes_notify(self, client, dependencies):
        secret_id = self.create(client, headers=ADMIN, env="Prod").json()["id"]

        client.put(f"/secrets/{secret_id}", json={"value": "v2"}, headers=ADMIN)
        client.put(f"/secrets/{secret_id}/rotation", json={"rotation_period_days": 60}, headers=ADMIN)

        assert [p.action for p in dependencies.dispatcher.payloads] == ["UPDATE", "ROTATION_CHANGE"]
        assert all(p.kind == "prod_secret_change" for p in dependencies.dispatcher.payloads)

    def test_search_pages(self, client):
        for i in range(4):
            self.create(client, name=f"key-{i}")
        self.create(client, headers=ADMIN, app="billing")

        names, token = [], None
        while True:
            params = {"q": "payments", "limit": 2, **({"nextToken": token} if token else {})}
            body = client.get("/secrets/search", params=params, headers=DEVELOPER).json()
            names.extend(s["name"] for s in body["secrets"])
            token = body["next_token"]
            if not token:
                break

        assert sorted(names) == [f"payments-NP-key-{i}" for i in range(4)]

    def test_access_report(self, client):
        secret_id = self.create(client).json()["id"]
        client.post("/events/secrets-manager",
                    json=TestDataFactory.create_eventbridge_event(
                        secret_id="arn:aws:secretsmanager:us-east-1:1:secret:legacy-AbCdEf"))

        assert client.get("/reports/access", headers=DEVELOPER).status_code == 403
        report = client.get("/reports/access", headers=ADMIN).json()

        assert report["total"] == 2
        rows = {e["record_key"]: (e["record_name"], e["app"], e["env"]) for e in report["entries"]}
        assert rows[secret_id] == ("payments-NP-db-password", "payments", "NP")
        assert rows["arn:aws:secretsmanager:us-east-1:1:secret:legacy-AbCdEf"] == (
            "legacy (Not in Portal)", "External", "Unknown")

    def test_secret_external_changes(self, client):
        secret_id = self.create(client).json()["id"]
        detail = client.get(f"/secrets/{secret_id}", headers=DEVELOPER).json()
        for ref in (detail["external_ref"], "arn:aws:secretsmanager:us-east-1:1:secret:other-AbCdEf"):
            client.post("/events/secrets-manager", json=TestDataFactory.create_eventbridge_event(secret_id=ref))

        response = client.get(f"/secrets/{secret_id}/external-changes", headers=DEVELOPER)

        assert response.status_code == 200
        changes = response.json()["changes"]
        assert [c["external_ref"] for c in changes] == [detail["external_ref"]]
        assert changes[0]["event_time"] == "2024-06-01T11:59:00Z"
        assert client.get(f"/secrets/{secret_id}/external-changes", headers=VIEWER).status_code == 403

    def test_my_permissions(self, client):
        response = client.get("/me/permissions", headers=VIEWER)

        assert response.json() == {
            "user_id": "vic",
            "is_admin": False,
            "grants": [{"app": "payments", "env": "Prod", "level": "read"}],
        }
        assert client.get("/me/permissions").status_code == 401

    def test_console_changes_report(self, client):
        assert client.get("/reports/console-changes", headers=DEVELOPER).status_code == 403

        client.post("/events/secrets-manager",
                    json=TestDataFactory.create_eventbridge_event(secret_id="arn:aws:secretsmanager:x:1:secret:y"))
        report = client.get("/reports/console-changes", headers=ADMIN)

        assert report.status_code == 200
        assert [c["app"] for c in report.json()["changes"]] == ["External"]

    def test_event_for_prod_secret_notifies(self, client, dependencies):
        secret_id = self.create(client, headers=ADMIN, env="Prod").json()["id"]
        detail = client.get(f"/secrets/{secret_id}", headers=ADMIN).json()

        response = client.post("/events/secrets-manager",
                               json=TestDataFactory.create_eventbridge_event(secret_id=detail["external_ref"]))

        assert response.status_code == 200
        assert response.json() == {"outcome": "known"}
        assert len(dependencies.dispatcher.payloads) == 1
        assert dependencies.dispatcher.payloads[0].severity.value == "high"

    def test_read_only_event_skipped(self, client):
        response = client.post("/events/secrets-manager",
                               json=TestDataFactory.create_eventbridge_event(secret_id="arn:x",
                                                                             event_name="GetSecretValue"))

        assert response.json() == {"outcome": "skipped"}

    def test_malformed_event(self, client):
        response = client.post("/events/secrets-manager", json={"detail": {"eventName": "PutSecretValue"}})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_rotation_scan(self, client, dependencies):
        secret_id = self.create(client).json()["id"]
        dependencies.clock.advance(days=40)

        first = client.post("/rotation/scan")
        second = client.post("/rotation/scan")

        assert first.json()["qualifying"] == [secret_id]
        assert first.json()["flagged"] == [secret_id]
        assert second.json()["qualifying"] == []
        assert len(dependencies.dispatcher.payloads) == 1

    def test_value_update_rearms_rotation_reminder(self, client, dependencies):
        secret_id = self.create(client).json()["id"]
        dependencies.clock.advance(days=40)
        client.post("/rotation/scan")

        client.put(f"/secrets/{secret_id}", json={"value": "rotated"}, headers=DEVELOPER)
        dependencies.clock.advance(days=40)
        result = client.post("/rotation/scan").json()

        assert result["qualifying"] == [secret_id]
