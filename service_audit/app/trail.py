"""
Append-only audit trail writers.

Both trails share the same contract: rows are written once with a TTL and a
processing timestamp stamped by the writer. Stamps are strictly increasing per
writer, so two rows never share a sort key. Per-key queries come back most
recent first straight from the store's sort key, and full scans are sorted
client side because scan order is undefined.
"""

from datetime import datetime, timedelta
from typing import Callable, Generic, List, Optional, Tuple, Type, TypeVar

from shared.logging import InvocationContext, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.persistence.base import AuditStore, Token
from shared.records import ensure_utc, utcnow
from shared.retry import RetryingOperationExecutor

from .models import AuditEntry, ExternalChangeRecord, TrailItem

M = TypeVar("M", bound=TrailItem)

DEFAULT_RETENTION_DAYS = 90


class _TrailWriter(Generic[M]):
    model: Type[M]
    trail_name: str
    partition_attribute: str

    def __init__(self,
                 store: AuditStore,
                 executor: RetryingOperationExecutor,
                 retention_days: int = DEFAULT_RETENTION_DAYS,
                 clock: Callable[[], datetime] = utcnow,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.executor = executor
        self.retention_days = retention_days
        self.clock = clock
        self.metrics = metrics or get_metrics_collector()
        self.logger = get_logger(f"audit.{self.trail_name}")
        self._last_stamp: Optional[datetime] = None

    def _stamp(self) -> datetime:
        now = ensure_utc(self.clock())
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    async def append(self, entry: M, ctx: InvocationContext) -> M:
        """Write one row stamped with the processing time. Calling twice writes twice."""
        stamp = self._stamp()
        ttl = int((stamp + timedelta(days=self.retention_days)).timestamp())
        stored = entry.model_copy(update={"timestamp": stamp, "ttl": ttl})
        item = stored.to_item()
        await self.executor.execute(lambda: self.store.put(item), f"{self.trail_name}.append", ctx)
        self.metrics.increment_counter("audit_writes_total", trail=self.trail_name)
        ctx.bind(self.logger).info(
            "Audit row written",
            key=item[self.partition_attribute],
            action=item.get("action"),
        )
        return stored

    async def _query(self, key: str, page_size: int, token: Token,
                     ctx: InvocationContext) -> Tuple[List[M], Token]:
        page = await self.executor.execute(
            lambda: self.store.query_by_partition(key, page_size, token, descending=True),
            f"{self.trail_name}.query",
            ctx,
        )
        return [self.model.from_item(item) for item in page.items], page.next_token

    async def scan_all(self, page_size: int, token: Token,
                       ctx: InvocationContext) -> Tuple[List[M], Token]:
        """One page of a full-table scan, sorted most recent first."""
        page = await self.executor.execute(
            lambda: self.store.scan(page_size, token),
            f"{self.trail_name}.scan",
            ctx,
        )
        entries = [self.model.from_item(item) for item in page.items]
        entries.sort(key=lambda entry: entry.timestamp, reverse=True)
        return entries, page.next_token


class AuditTrailWriter(_TrailWriter[AuditEntry]):
    """Legacy portal audit log, partitioned by record key."""

    model = AuditEntry
    trail_name = "audit_log"
    partition_attribute = "record_key"

    async def query_by_record(self, record_key: str, page_size: int, token: Token,
                              ctx: InvocationContext) -> Tuple[List[AuditEntry], Token]:
        return await self._query(record_key, page_size, token, ctx)


class ExternalChangeTrail(_TrailWriter[ExternalChangeRecord]):
    """Direct vault change trail, partitioned by external ref."""

    model = ExternalChangeRecord
    trail_name = "external_changes"
    partition_attribute = "external_ref"

    async def query_by_external_ref(self, external_ref: str, page_size: int, token: Token,
                                    ctx: InvocationContext) -> Tuple[List[ExternalChangeRecord], Token]:
        return await self._query(external_ref, page_size, token, ctx)
