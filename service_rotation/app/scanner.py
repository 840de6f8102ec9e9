"""
Scheduled rotation compliance scan.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from shared.logging import InvocationContext, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.notifications import NotificationDispatcher
from shared.records import SecretRecordRepository, utcnow
from shared.tracing import add_span_attributes, trace_operation

from .digest import DIGEST_KIND, build_digest, group_by_app_env
from .policy import (
    DEFAULT_REMINDER_DAYS,
    RotationStatus,
    days_since_rotation,
    evaluate_record,
    is_overdue,
    needs_notification,
)

__all__ = [
    "RotationComplianceScanner",
    "RotationStatus",
    "ScanResult",
    "days_since_rotation",
    "evaluate_record",
    "is_overdue",
    "needs_notification",
]


@dataclass
class ScanResult:
    """Outcome of one scan tick."""
    scanned: int = 0
    qualifying: List[str] = field(default_factory=list)
    dispatched: bool = False
    flagged: List[str] = field(default_factory=list)
    flag_failures: List[str] = field(default_factory=list)


class RotationComplianceScanner:
    """Finds secrets due for rotation and sends one reminder digest."""

    def __init__(self,
                 repository: SecretRecordRepository,
                 dispatcher: NotificationDispatcher,
                 clock: Callable[[], datetime] = utcnow,
                 reminder_days: int = DEFAULT_REMINDER_DAYS,
                 page_size: int = 100,
                 metrics: Optional[MetricsCollector] = None,
                 portal_url: Optional[str] = None):
        self.repository = repository
        self.dispatcher = dispatcher
        self.clock = clock
        self.reminder_days = reminder_days
        self.page_size = page_size
        self.metrics = metrics or get_metrics_collector()
        self.portal_url = portal_url
        self.logger = get_logger("rotation.scanner")

    async def run_scan(self, ctx: InvocationContext) -> ScanResult:
        logger = ctx.bind(self.logger)

        with trace_operation("rotation.run_scan"):
            now = self.clock()
            records = await self.repository.list_all(ctx, page_size=self.page_size)
            statuses = [evaluate_record(record, now, self.reminder_days) for record in records]
            qualifying = [status for status in statuses if status.needs_notification]

            result = ScanResult(scanned=len(records), qualifying=[s.record.id for s in qualifying])
            add_span_attributes(scanned=result.scanned, qualifying=len(qualifying))

            if not qualifying:
                logger.info("No secrets require rotation notification", scanned=result.scanned)
                return result

            payload = build_digest(group_by_app_env(qualifying), now, self.portal_url)

            try:
                await self.dispatcher.dispatch(payload)
            except Exception as e:
                self.metrics.increment_counter("notifications_total", kind=DIGEST_KIND, status="failed")
                logger.error("Failed to send rotation digest", qualifying=len(qualifying), error=str(e))
                return result

            result.dispatched = True
            self.metrics.increment_counter("notifications_total", kind=DIGEST_KIND, status="sent")

            for status in qualifying:
                record_id = status.record.id
                try:
                    await self.repository.mark_notified(record_id, now, ctx)
                except Exception as e:
                    result.flag_failures.append(record_id)
                    self.metrics.increment_counter("rotation_flag_updates_total", status="failed")
                    logger.error("Failed to update notification status", record_id=record_id, error=str(e))
                    continue
                result.flagged.append(record_id)
                self.metrics.increment_counter("rotation_flag_updates_total", status="updated")

            logger.info(
                "Rotation scan complete",
                scanned=result.scanned,
                notified=len(result.flagged),
                failed=len(result.flag_failures),
            )
            return result
