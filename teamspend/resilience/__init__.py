"""
Resilience patterns for calls that leave the process.

This package provides:
- Circuit Breaker: stops calling a failing provider for a recovery window
- Request spacing and cooldown: serialized outbound calls with a minimum interval
- Retry: exponential backoff with jitter through tenacity
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitState
from .rate_limiter import CooldownGate, RequestSpacer

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitState",
    "CooldownGate",
    "RequestSpacer",
]
