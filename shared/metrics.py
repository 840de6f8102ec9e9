"""
Shared metrics configuration for the Secrets Portal core.
"""

import threading
from typing import Any, Dict, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Info


class MetricsCollector:
    """Centralized metrics collector for the core components."""

    def __init__(self, service_name: str, registry: CollectorRegistry = REGISTRY):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up the counters every component reports into."""

        self._metrics["service_info"] = Info(
            "portal_service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["store_retries_total"] = Counter(
            "portal_store_retries_total",
            "Store operations retried after throttling",
            ["label"],
            registry=self.registry
        )

        self._metrics["audit_writes_total"] = Counter(
            "portal_audit_writes_total",
            "Audit rows appended",
            ["trail"],
            registry=self.registry
        )

        self._metrics["change_events_total"] = Counter(
            "portal_change_events_total",
            "External change events processed",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["notifications_total"] = Counter(
            "portal_notifications_total",
            "Notification dispatch attempts",
            ["kind", "status"],
            registry=self.registry
        )

        self._metrics["rotation_flag_updates_total"] = Counter(
            "portal_rotation_flag_updates_total",
            "Notification flag updates written by the rotation scanner",
            ["status"],
            registry=self.registry
        )

        self._metrics["access_denied_total"] = Counter(
            "portal_access_denied_total",
            "Permission checks that failed",
            ["level"],
            registry=self.registry
        )

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def get_value(self, metric_name: str, **labels) -> float:
        """Read the current value of a labelled counter."""
        if metric_name not in self._metrics:
            return 0.0
        return self._metrics[metric_name].labels(**labels)._value.get()


_collector: Optional[MetricsCollector] = None
_collector_lock = threading.Lock()


def get_metrics_collector(service_name: str = "secrets-portal") -> MetricsCollector:
    """Get the process metrics collector, registered on the default registry."""
    global _collector
    with _collector_lock:
        if _collector is None:
            _collector = MetricsCollector(service_name)
        return _collector
