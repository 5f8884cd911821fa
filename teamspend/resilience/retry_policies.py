"""Retry policies for ledger writes and outbound provider calls."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential
)

from teamspend.settings import settings
from teamspend.observability.logging import get_logger
from teamspend.observability.metrics import retry_attempts_total, retry_failures_total
from teamspend.services.errors import AdvisoryTransientError, LedgerConflictError


logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry with full-jitter exponential backoff.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised
    once ``max_attempts`` calls have failed.
    """
    service: str
    max_attempts: int
    base_delay: float
    max_delay: float
    retry_on: Tuple[Type[BaseException], ...]

    def retrying(self, operation_name: str) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(self.retry_on),
            reraise=True,
            before_sleep=self._on_retry(operation_name),
        )

    def _on_retry(self, operation_name: str) -> Callable[[RetryCallState], None]:
        def callback(retry_state: RetryCallState) -> None:
            retry_attempts_total.labels(
                service=self.service,
                operation=operation_name,
                attempt=str(retry_state.attempt_number)
            ).inc()
            logger.debug(
                "Retrying after failure",
                service=self.service,
                operation=operation_name,
                attempt=retry_state.attempt_number,
                error=repr(retry_state.outcome.exception())
            )

        return callback


# ==== POLICIES ==== #


def create_ledger_retry_policy() -> RetryPolicy:
    """Compare-and-set conflicts on a team aggregate."""
    return RetryPolicy(
        service="ledger",
        max_attempts=settings.LEDGER_MAX_RETRIES,
        base_delay=settings.LEDGER_RETRY_BASE_DELAY,
        max_delay=settings.LEDGER_RETRY_MAX_DELAY,
        retry_on=(LedgerConflictError,),
    )


def create_advisory_retry_policy() -> RetryPolicy:
    """Transient advisory provider failures; rate limits are handled by the cooldown gate."""
    return RetryPolicy(
        service="advisory",
        max_attempts=settings.AI_RETRY_MAX_ATTEMPTS,
        base_delay=settings.AI_RETRY_BASE_DELAY,
        max_delay=settings.AI_RETRY_MAX_DELAY,
        retry_on=(AdvisoryTransientError, httpx.TransportError, asyncio.TimeoutError),
    )


def create_http_retry_policy(service: str) -> RetryPolicy:
    """Connection-level failures of a plain HTTP API."""
    return RetryPolicy(
        service=service,
        max_attempts=3,
        base_delay=0.5,
        max_delay=5.0,
        retry_on=(
            httpx.ConnectTimeout,
            httpx.ReadTimeout,
            httpx.ConnectError,
            httpx.RemoteProtocolError,
        ),
    )


async def retry_async_operation(
    operation: Callable[..., Awaitable[Any]],
    policy: RetryPolicy,
    operation_name: str = "unknown",
    *args,
    **kwargs
) -> Any:
    """
    Call ``operation`` under ``policy``.

    Raises:
        Exception: The last retryable error once attempts are exhausted, or
            the first non-retryable one
    """
    try:
        async for attempt in policy.retrying(operation_name):
            with attempt:
                return await operation(*args, **kwargs)
    except policy.retry_on as e:
        retry_failures_total.labels(
            service=policy.service,
            operation=operation_name,
            error_type=type(e).__name__
        ).inc()
        raise
