"""
Circuit breaker for the advisory provider and the email API.

After ``failure_threshold`` consecutive counted failures the circuit opens and
every call is rejected with CircuitBreakerError until ``recovery_timeout``
seconds have passed. The first call after that is a trial: success closes the
circuit, failure opens it for another full window.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from teamspend.observability.logging import get_logger


logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Call rejected without reaching the collaborator."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit '{name}' is open, retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Consecutive-failure breaker around one outbound collaborator.

    Only exceptions matching ``expected_exception`` count as failures; anything
    else propagates without touching the breaker state.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        expected_exception: type | tuple = Exception
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    @property
    def retry_after(self) -> float:
        """Seconds left in the current open window."""
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self.opened_at))

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run ``func`` unless the circuit is open.

        Raises:
            CircuitBreakerError: Circuit is open and the window has not elapsed
        """
        await self._admit()
        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            await self._record_failure()
            raise
        await self._record_success()
        return result

    async def _admit(self) -> None:
        async with self._lock:
            if self.state is not CircuitState.OPEN:
                return
            remaining = self.retry_after
            if remaining > 0:
                raise CircuitBreakerError(self.name, remaining)
            self.state = CircuitState.HALF_OPEN
            logger.info("Circuit half-open, allowing trial call", circuit=self.name)

    async def _record_success(self) -> None:
        async with self._lock:
            if self.state is CircuitState.HALF_OPEN:
                logger.info("Circuit closed after successful trial", circuit=self.name)
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.opened_at = None

    async def _record_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            trial_failed = self.state is CircuitState.HALF_OPEN
            if trial_failed or self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                self.opened_at = time.monotonic()
                logger.warning(
                    "Circuit opened",
                    circuit=self.name,
                    failure_count=self.failure_count,
                    trial_failed=trial_failed,
                    recovery_timeout=self.recovery_timeout
                )

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "retry_after_seconds": round(self.retry_after, 1),
        }
