"""
Shared logging configuration for the Secrets Portal core.

Correlation ids are not held in process-wide state. Each invocation (an
access check, a change event, a scan tick) creates an InvocationContext and
passes it explicitly down the call chain; loggers are bound from it.
"""

import logging
import sys
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace


@dataclass(frozen=True)
class InvocationContext:
    """Per-invocation context threaded through every call."""

    correlation_id: str
    source: str = "unknown"
    actor_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, source: str, correlation_id: Optional[str] = None, actor_id: Optional[str] = None,
            **extra: Any) -> "InvocationContext":
        """Create a context, generating a correlation id when none is supplied."""
        return cls(
            correlation_id=correlation_id or str(uuid.uuid4()),
            source=source,
            actor_id=actor_id,
            extra=dict(extra),
        )

    def bind(self, logger: Any) -> Any:
        """Bind this context onto a structlog logger."""
        values: Dict[str, Any] = {"correlation_id": self.correlation_id, "source": self.source}
        if self.actor_id:
            values["actor_id"] = self.actor_id
        values.update(self.extra)
        return logger.bind(**values)


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _service_context(service_name),
            add_trace_context,
            add_timestamp,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


def _service_context(service_name: str):
    def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service_context


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"

    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add high-precision timestamp to log events."""
    event_dict["epoch"] = time.time()
    return event_dict


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
