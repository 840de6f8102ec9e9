"""
Unit tests for the audit trail writers.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from service_audit.app.models import AuditEntry, ExternalChangeRecord, format_timestamp
from service_audit.app.trail import AuditTrailWriter, ExternalChangeTrail
from shared.errors import OperationFailed, Throttled
from shared.logging import InvocationContext
from shared.metrics import MetricsCollector
from shared.persistence import InMemoryAuditStore
from shared.retry import RetryingOperationExecutor
from shared.test_helpers import NOW, FixedClock, SleepRecorder


def make_entry(record_key="r1", action="UPDATE"):
    return AuditEntry(
        record_key=record_key,
        actor_id="alice",
        action=action,
        ip="10.0.0.1",
        user_agent="pytest",
    )


@pytest.fixture
def ctx():
    return InvocationContext.new("test")


@pytest.fixture
def metrics():
    return MetricsCollector("test", registry=CollectorRegistry())


@pytest.fixture
def executor(metrics):
    return RetryingOperationExecutor(sleep=SleepRecorder(), metrics=metrics)


@pytest.fixture
def clock():
    return FixedClock()


class TestAuditTrailWriter:
    """Test cases for AuditTrailWriter."""

    @pytest.fixture
    def store(self):
        return InMemoryAuditStore(partition_key="record_key")

    @pytest.fixture
    def writer(self, store, executor, clock, metrics):
        return AuditTrailWriter(store, executor, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_append_stamps_time_and_ttl(self, writer, store, ctx):
        stored = await writer.append(make_entry(), ctx)

        assert stored.timestamp == NOW
        assert stored.ttl == int((NOW + timedelta(days=90)).timestamp())
        page = await store.query_by_partition("r1", 10)
        assert page.items[0]["ttl"] == stored.ttl
        assert page.items[0]["timestamp"] == format_timestamp(NOW)

    @pytest.mark.asyncio
    async def test_caller_timestamp_is_replaced(self, writer, ctx):
        entry = make_entry().model_copy(update={"timestamp": NOW - timedelta(days=3)})

        stored = await writer.append(entry, ctx)

        assert stored.timestamp == NOW

    @pytest.mark.asyncio
    async def test_retention_is_configurable(self, store, executor, clock, metrics, ctx):
        writer = AuditTrailWriter(store, executor, retention_days=30, clock=clock, metrics=metrics)

        stored = await writer.append(make_entry(), ctx)

        assert stored.ttl == int((NOW + timedelta(days=30)).timestamp())

    @pytest.mark.asyncio
    async def test_append_twice_writes_twice(self, writer, ctx, metrics):
        entry = make_entry()

        first = await writer.append(entry, ctx)
        second = await writer.append(entry, ctx)

        entries, _ = await writer.query_by_record("r1", 10, None, ctx)
        assert len(entries) == 2
        assert second.timestamp == first.timestamp + timedelta(microseconds=1)
        assert metrics.get_value("audit_writes_total", trail="audit_log") == 2

    @pytest.mark.asyncio
    async def test_stamps_never_go_backwards(self, writer, clock, ctx):
        first = await writer.append(make_entry(), ctx)
        clock.advance(seconds=-5)

        second = await writer.append(make_entry(), ctx)

        assert second.timestamp > first.timestamp

    @pytest.mark.asyncio
    async def test_query_most_recent_first(self, writer, clock, ctx):
        await writer.append(make_entry(action="CREATE"), ctx)
        clock.advance(minutes=5)
        await writer.append(make_entry(action="CONSOLE_ACCESS"), ctx)
        clock.advance(minutes=5)
        await writer.append(make_entry(action="UPDATE"), ctx)
        await writer.append(make_entry(record_key="r2"), ctx)

        entries, token = await writer.query_by_record("r1", 10, None, ctx)

        assert [e.action for e in entries] == ["UPDATE", "CONSOLE_ACCESS", "CREATE"]
        assert token is None

    @pytest.mark.asyncio
    async def test_query_pages(self, writer, clock, ctx):
        for _ in range(3):
            await writer.append(make_entry(), ctx)
            clock.advance(minutes=1)

        first, token = await writer.query_by_record("r1", 2, None, ctx)
        second, token = await writer.query_by_record("r1", 2, token, ctx)

        assert len(first) == 2 and len(second) == 1
        assert first[0].timestamp > first[1].timestamp > second[0].timestamp
        assert token is None

    @pytest.mark.asyncio
    async def test_query_does_not_resort(self, executor, clock, metrics, ctx):
        """Per-key order comes from the store; the writer passes it through."""
        store = InMemoryAuditStore(partition_key="record_key")
        writer = AuditTrailWriter(store, executor, clock=clock, metrics=metrics)
        await writer.append(make_entry(action="OLDER"), ctx)
        clock.advance(minutes=5)
        await writer.append(make_entry(action="NEWER"), ctx)
        original = store.query_by_partition

        async def reversed_query(key, page_size, token=None, descending=True):
            page = await original(key, page_size, token, descending)
            page.items.reverse()
            return page

        store.query_by_partition = reversed_query

        entries, _ = await writer.query_by_record("r1", 10, None, ctx)

        assert [e.action for e in entries] == ["OLDER", "NEWER"]

    @pytest.mark.asyncio
    async def test_scan_all_sorts_page(self, writer, store, ctx):
        for key, stamp in (("a", "2024-06-01T11:30:00.000000Z"),
                           ("b", "2024-06-01T12:00:00.000000Z"),
                           ("c", "2024-06-01T11:45:00.000000Z")):
            await store.put(make_entry(record_key=key).to_item() | {"timestamp": stamp})

        entries, token = await writer.scan_all(10, None, ctx)

        assert [e.record_key for e in entries] == ["b", "c", "a"]
        assert token is None

    @pytest.mark.asyncio
    async def test_round_trip_most_recent_first(self, writer, clock, ctx):
        await writer.append(make_entry(), ctx)
        clock.advance(hours=1)

        latest = await writer.append(make_entry(action="DELETE"), ctx)
        entries, _ = await writer.query_by_record(latest.record_key, 1, None, ctx)

        assert entries[0].action == "DELETE"
        assert entries[0].timestamp == latest.timestamp

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, executor, clock, metrics, ctx):
        store = InMemoryAuditStore(partition_key="record_key")
        store.put = AsyncMock(side_effect=Throttled())
        writer = AuditTrailWriter(store, executor, clock=clock, metrics=metrics)

        with pytest.raises(OperationFailed) as exc_info:
            await writer.append(make_entry(), ctx)

        assert exc_info.value.label == "audit_log.append"
        assert store.put.await_count == 3


class TestExternalChangeTrail:
    """Test cases for ExternalChangeTrail."""

    @pytest.mark.asyncio
    async def test_keyed_by_external_ref(self, executor, clock, metrics, ctx):
        store = InMemoryAuditStore(partition_key="external_ref")
        trail = ExternalChangeTrail(store, executor, retention_days=7, clock=clock, metrics=metrics)
        record = ExternalChangeRecord(
            external_ref="arn:x",
            record_name="x",
            app="External",
            env="Unknown",
            actor_id="bob",
            user_type="IAMUser",
            action="UPDATE",
            event_kind="PutSecretValue",
            event_time=NOW - timedelta(seconds=30),
        )

        stored = await trail.append(record, ctx)
        changes, _ = await trail.query_by_external_ref("arn:x", 10, None, ctx)

        assert stored.ttl == int((NOW + timedelta(days=7)).timestamp())
        assert changes == [stored]
        assert changes[0].event_time == NOW - timedelta(seconds=30)
        assert metrics.get_value("audit_writes_total", trail="external_changes") == 1
