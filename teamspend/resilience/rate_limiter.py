"""
Outbound rate control for third-party providers.

RequestSpacer serializes calls and keeps a minimum interval between their
starts. CooldownGate short-circuits every call for a fixed window after the
provider signalled a rate limit.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional


class RequestSpacer:
    """
    Serialized request spacing.

    Only one caller holds the spacer at a time, and a caller entering it
    waits until at least ``min_interval`` seconds have passed since the
    previous caller entered.
    """

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self._last_start: Optional[float] = None
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold the single outbound slot for the duration of one request."""
        async with self._lock:
            if self._last_start is not None:
                wait = self.min_interval - (time.monotonic() - self._last_start)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_start = time.monotonic()
            yield

    def get_stats(self) -> dict:
        return {
            "min_interval": self.min_interval,
            "busy": self._lock.locked(),
        }


class CooldownGate:
    """
    Cooldown window opened on a provider rate-limit signal.

    While the window is open ``is_open`` is True and callers are expected to
    skip the provider entirely.
    """

    def __init__(self, cooldown_seconds: float):
        self.cooldown_seconds = cooldown_seconds
        self._until: float = 0.0

    def trip(self) -> None:
        """Open (or extend) the cooldown window starting now."""
        self._until = time.monotonic() + self.cooldown_seconds

    def reset(self) -> None:
        self._until = 0.0

    @property
    def is_open(self) -> bool:
        return time.monotonic() < self._until

    @property
    def remaining(self) -> float:
        return max(0.0, self._until - time.monotonic())

    def get_stats(self) -> dict:
        return {
            "cooldown_seconds": self.cooldown_seconds,
            "is_open": self.is_open,
            "remaining_seconds": round(self.remaining, 3),
        }
