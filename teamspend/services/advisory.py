# ==== ADVISORY INTEGRATION ADAPTER ==== #

"""
Advisory AI integration for TeamSpend.

AdvisoryClient speaks the OpenAI-compatible chat completions protocol.
AdvisoryAdapter wraps it so that callers only ever see an answer or None:
outbound calls are serialized with a minimum spacing, a rate-limit answer
opens a cooldown window that short-circuits later calls, transient failures
are retried with jittered exponential backoff, each attempt has a timeout,
and a circuit breaker stops hammering a provider that keeps failing.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

import httpx
from pydantic import ValidationError

from teamspend.settings import settings
from teamspend.observability.logging import get_logger
from teamspend.observability.metrics import (
    advisory_failures_total,
    advisory_latency_seconds,
    advisory_requests_total
)
from teamspend.observability.tracing import get_tracer
from teamspend.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerError
from teamspend.resilience.rate_limiter import CooldownGate, RequestSpacer
from teamspend.resilience.retry_policies import (
    RetryPolicy,
    create_advisory_retry_policy,
    retry_async_operation
)
from teamspend.schemas.advisory import (
    CategoryVerdict,
    DuplicateVerdict,
    ForecastNarrative,
    InsightsNarrative
)
from teamspend.schemas.expense import ExpenseCategory
from teamspend.services.errors import (
    AdvisoryRateLimitedError,
    AdvisoryTransientError,
    AdvisoryUnavailableError
)
from teamspend.services.json_extractor import extract_json
from teamspend.services.prompt_loader import PromptLoader, get_prompt_loader


# ==== MODULE INITIALIZATION ==== #

logger = get_logger(__name__)
tracer = get_tracer(__name__)


@dataclass
class DuplicateCandidate:
    """Recent expense offered to the model for duplicate comparison."""
    description: str
    amount: float
    date: datetime


# ==== PROVIDER CLIENT ==== #


class AdvisoryClient:
    """Thin OpenAI-compatible chat completions client."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.base_url = (base_url or settings.AI_PROVIDER_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.AI_API_KEY
        self.model = model or settings.AI_MODEL
        self.timeout = timeout or settings.AI_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.api_key) and self.base_url != "disabled"

    async def complete(self, prompt: str, system_prompt: str) -> str:
        """
        Send one chat completion request.

        Args:
            prompt (str): User message
            system_prompt (str): System message

        Returns:
            str: Content of the first choice

        Raises:
            AdvisoryRateLimitedError: Provider answered 429
            AdvisoryTransientError: Provider answered 5xx
            AdvisoryUnavailableError: Any other unusable answer
            httpx.TransportError: Connection-level failure
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json"
        }
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.2,
            "max_tokens": 800,
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=headers
            )

        if response.status_code == 429:
            raise AdvisoryRateLimitedError("Provider rate limit reached")
        if response.status_code >= 500:
            raise AdvisoryTransientError(f"Provider returned {response.status_code}")
        if response.status_code >= 400:
            raise AdvisoryUnavailableError(f"Provider rejected request: {response.status_code}")

        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AdvisoryUnavailableError(f"Malformed provider response: {e}") from e


# ==== ADAPTER ==== #


class AdvisoryAdapter:
    """
    Soft-failing facade over the advisory provider.

    Every public method returns None instead of raising when the provider is
    disabled, cooling down, unreachable, slow, or answers something unusable.
    """

    def __init__(
        self,
        client: Optional[AdvisoryClient] = None,
        prompt_loader: Optional[PromptLoader] = None,
        spacer: Optional[RequestSpacer] = None,
        cooldown: Optional[CooldownGate] = None,
        breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None
    ):
        self.client = client or AdvisoryClient()
        self.prompt_loader = prompt_loader or get_prompt_loader()
        self.spacer = spacer or RequestSpacer(settings.AI_MIN_REQUEST_INTERVAL_SECONDS)
        self.cooldown = cooldown or CooldownGate(settings.AI_RATE_LIMIT_COOLDOWN_SECONDS)
        self.breaker = breaker or CircuitBreaker(
            "advisory",
            failure_threshold=settings.AI_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.AI_CIRCUIT_RECOVERY_SECONDS,
            expected_exception=(AdvisoryTransientError, httpx.TransportError, asyncio.TimeoutError)
        )
        self.retry_policy = retry_policy or create_advisory_retry_policy()
        self.timeout = timeout or settings.AI_TIMEOUT_SECONDS

    # --► CAPABILITIES

    async def suggest_category(self, description: str, amount: float) -> Optional[ExpenseCategory]:
        """Suggest a category for an expense, or None."""
        prompt = self.prompt_loader.render_prompt(
            "category_suggestion",
            description=description,
            amount=amount,
            categories=[c.value for c in ExpenseCategory]
        )
        raw = await self._ask(
            "suggest_category",
            prompt,
            "You are an expert at categorizing business expenses. Always respond with valid JSON."
        )
        if raw is None:
            return None

        extracted = await extract_json(raw)
        if extracted.success:
            try:
                return CategoryVerdict.model_validate(extracted.data).category
            except ValidationError:
                pass

        # Plain-text answers like "Travel" are accepted too
        answer = raw.strip().strip('"\'.').lower()
        for category in ExpenseCategory:
            if category.value.lower() == answer:
                return category

        advisory_failures_total.labels(operation="suggest_category", reason="unparseable").inc()
        logger.warning("Unusable category suggestion", preview=raw[:200])
        return None

    async def detect_duplicate(
        self,
        description: str,
        amount: float,
        candidates: Sequence[DuplicateCandidate]
    ) -> Optional[DuplicateVerdict]:
        """Judge whether an expense duplicates one of ``candidates``, or None."""
        if not candidates:
            return DuplicateVerdict(is_duplicate=False, confidence=0.0, reason=None)

        prompt = self.prompt_loader.render_prompt(
            "duplicate_detection",
            description=description,
            amount=amount,
            candidates=[
                {
                    "description": c.description,
                    "amount": c.amount,
                    "date": c.date.strftime("%Y-%m-%d"),
                }
                for c in candidates
            ],
            lookback_days=settings.DUPLICATE_LOOKBACK_DAYS
        )
        data = await self._ask_json(
            "detect_duplicate",
            prompt,
            "You are an expert at detecting duplicate expenses. Always respond with valid JSON format."
        )
        return self._validate("detect_duplicate", DuplicateVerdict, data)

    async def spending_insights(self, context: Dict[str, Any]) -> Optional[InsightsNarrative]:
        """Narrative insights over a team's approved spending, or None."""
        prompt = self.prompt_loader.render_prompt("spending_insights", **context)
        data = await self._ask_json(
            "spending_insights",
            prompt,
            "You are a financial analyst expert at providing spending insights. Always respond with valid JSON format."
        )
        return self._validate("spending_insights", InsightsNarrative, data)

    async def budget_forecast(self, context: Dict[str, Any]) -> Optional[ForecastNarrative]:
        """Forecast whether a team will exceed its budget, or None."""
        prompt = self.prompt_loader.render_prompt("budget_forecast", **context)
        data = await self._ask_json(
            "budget_forecast",
            prompt,
            "You are a financial forecasting expert. Always respond with valid JSON format."
        )
        return self._validate("budget_forecast", ForecastNarrative, data)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.client.enabled,
            "circuit_breaker": self.breaker.get_stats(),
            "cooldown": self.cooldown.get_stats(),
            "spacer": self.spacer.get_stats(),
        }

    # ==== INTERNAL HELPER METHODS ==== #

    async def _ask_json(self, operation: str, prompt: str, system_prompt: str) -> Optional[Dict[str, Any]]:
        raw = await self._ask(operation, prompt, system_prompt)
        if raw is None:
            return None

        extracted = await extract_json(raw)
        if not extracted.success:
            advisory_failures_total.labels(operation=operation, reason="unparseable").inc()
            logger.warning("Unparseable advisory answer", operation=operation, error=extracted.error)
            return None
        return extracted.data

    def _validate(self, operation: str, model, data: Optional[Dict[str, Any]]):
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            advisory_failures_total.labels(operation=operation, reason="invalid_shape").inc()
            logger.warning("Advisory answer failed validation", operation=operation, error=str(e))
            return None

    async def _ask(self, operation: str, prompt: str, system_prompt: str) -> Optional[str]:
        """
        Run one advisory call through cooldown, breaker, retries and timeout.

        Returns:
            Optional[str]: Raw model output, or None on any soft failure
        """
        if not self.client.enabled:
            advisory_failures_total.labels(operation=operation, reason="disabled").inc()
            return None

        if self.cooldown.is_open:
            advisory_failures_total.labels(operation=operation, reason="cooldown").inc()
            logger.info(
                "Advisory call skipped during cooldown",
                operation=operation,
                remaining_seconds=round(self.cooldown.remaining, 1)
            )
            return None

        with tracer.start_as_current_span(f"advisory_{operation}") as span:
            start_time = time.perf_counter()
            reason = None
            try:
                return await self.breaker.call(
                    retry_async_operation,
                    self._attempt,
                    self.retry_policy,
                    operation,
                    operation,
                    prompt,
                    system_prompt
                )
            except AdvisoryRateLimitedError:
                self.cooldown.trip()
                reason = "rate_limited"
            except CircuitBreakerError:
                reason = "circuit_open"
            except asyncio.TimeoutError:
                reason = "timeout"
            except (AdvisoryUnavailableError, httpx.HTTPError) as e:
                reason = type(e).__name__
            finally:
                advisory_latency_seconds.labels(operation=operation).observe(
                    time.perf_counter() - start_time
                )

            span.set_attribute("failure_reason", reason)
            advisory_failures_total.labels(operation=operation, reason=reason).inc()
            logger.warning("Advisory call degraded to no suggestion", operation=operation, reason=reason)
            return None

    async def _attempt(self, operation: str, prompt: str, system_prompt: str) -> str:
        async with self.spacer.slot():
            # A cooldown may have opened while this call waited for the slot
            if self.cooldown.is_open:
                raise AdvisoryUnavailableError("Cooldown opened while queued")

            advisory_requests_total.labels(operation=operation).inc()
            return await asyncio.wait_for(
                self.client.complete(prompt, system_prompt),
                timeout=self.timeout
            )


# ==== GLOBAL INSTANCE ==== #

_advisory_adapter: Optional[AdvisoryAdapter] = None


def get_advisory_adapter() -> AdvisoryAdapter:
    """Get the shared advisory adapter instance."""
    global _advisory_adapter
    if _advisory_adapter is None:
        _advisory_adapter = AdvisoryAdapter()
    return _advisory_adapter
