"""
Retrying executor for store operations.

Only throttling is treated as transient. Everything else, including missing
items and failed write conditions, surfaces on the first attempt.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from shared.errors import ConditionFailed, NotFound, OperationFailed, Throttled
from shared.logging import InvocationContext, get_logger
from shared.metrics import MetricsCollector, get_metrics_collector

T = TypeVar("T")

THROTTLING_CODES = frozenset({
    "ThrottlingException",
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
})


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self, max_attempts: int = 3, delays: Sequence[float] = (0.1, 0.2)):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if max_attempts > 1 and not delays:
            raise ValueError("delays are required when retrying")
        self.max_attempts = max_attempts
        self.delays = tuple(delays)

    @classmethod
    def from_milliseconds(cls, max_attempts: int, delays_ms: Sequence[int]) -> "RetryConfig":
        return cls(max_attempts=max_attempts, delays=[d / 1000.0 for d in delays_ms])

    def delay_before(self, attempt: int) -> float:
        """Delay in seconds to wait before the given (2-based) attempt."""
        index = min(attempt - 2, len(self.delays) - 1)
        return self.delays[index]


def _error_code(exc: BaseException) -> Optional[str]:
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    # botocore ClientError shape
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        error = response.get("Error") or {}
        if isinstance(error, dict) and isinstance(error.get("Code"), str):
            return error["Code"]
    return None


def is_throttling_error(exc: BaseException) -> bool:
    """True when the error belongs to the provisioned-throughput/rate-limit class."""
    if isinstance(exc, Throttled):
        return True
    if isinstance(exc, (NotFound, ConditionFailed)):
        return False
    return _error_code(exc) in THROTTLING_CODES or type(exc).__name__ in THROTTLING_CODES


class RetryingOperationExecutor:
    """Runs one idempotent store call with a fixed retry schedule."""

    def __init__(self,
                 config: Optional[RetryConfig] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 metrics: Optional[MetricsCollector] = None):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self.metrics = metrics or get_metrics_collector()
        self.logger = get_logger("retry.executor")

    async def execute(self,
                      op: Callable[[], Awaitable[T]],
                      label: str,
                      ctx: Optional[InvocationContext] = None) -> T:
        """Invoke ``op`` until it succeeds, fails permanently, or the budget runs out."""
        logger = ctx.bind(self.logger) if ctx else self.logger

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return await op()
            except Exception as e:
                if not is_throttling_error(e):
                    raise

                if attempt == self.config.max_attempts:
                    logger.error(
                        "All retry attempts exhausted",
                        label=label,
                        attempts=attempt,
                        error=str(e)
                    )
                    raise OperationFailed(label, attempt, last_error=e) from e

                delay = self.config.delay_before(attempt + 1)
                logger.warning(
                    "Store operation throttled, retrying",
                    label=label,
                    attempt=attempt + 1,
                    max_attempts=self.config.max_attempts,
                    delay_ms=int(delay * 1000),
                    error=str(e)
                )
                self.metrics.increment_counter("store_retries_total", label=label)
                await self._sleep(delay)

        # max_attempts >= 1 guarantees the loop returns or raises
        raise OperationFailed(label, self.config.max_attempts)
