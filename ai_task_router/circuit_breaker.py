from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any

from ai_task_router.enums import ProviderId


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class BreakerSettings:
    enabled: bool = True
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0
    half_open_max_requests: int = 1


@dataclass(slots=True)
class _ProviderBreaker:
    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    opened_at: float = 0.0
    probes_in_flight: int = 0


class ProviderCircuitBreakers:
    """Consecutive-failure breakers, one per provider.

    An open breaker rejects attempts until ``recovery_timeout_seconds`` pass,
    then admits up to ``half_open_max_requests`` probes. A probe success
    closes the breaker and a probe failure reopens it.
    """

    def __init__(
        self,
        settings: BreakerSettings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or BreakerSettings()
        self._clock = clock
        self._lock = Lock()
        self._breakers: dict[ProviderId, _ProviderBreaker] = {
            provider: _ProviderBreaker() for provider in ProviderId
        }

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    def allow(self, provider: ProviderId) -> bool:
        if not self._settings.enabled:
            return True
        with self._lock:
            breaker = self._breakers[provider]
            if breaker.state == BreakerState.OPEN:
                elapsed = self._clock() - breaker.opened_at
                if elapsed < self._settings.recovery_timeout_seconds:
                    return False
                breaker.state = BreakerState.HALF_OPEN
                breaker.probes_in_flight = 0
            if breaker.state == BreakerState.HALF_OPEN:
                if breaker.probes_in_flight >= self._settings.half_open_max_requests:
                    return False
                breaker.probes_in_flight += 1
            return True

    def record_success(self, provider: ProviderId) -> None:
        if not self._settings.enabled:
            return
        with self._lock:
            breaker = self._breakers[provider]
            breaker.state = BreakerState.CLOSED
            breaker.consecutive_failures = 0
            breaker.opened_at = 0.0
            breaker.probes_in_flight = 0

    def record_failure(self, provider: ProviderId) -> None:
        if not self._settings.enabled:
            return
        with self._lock:
            breaker = self._breakers[provider]
            now = self._clock()
            if breaker.state == BreakerState.HALF_OPEN:
                breaker.probes_in_flight = max(0, breaker.probes_in_flight - 1)
                breaker.state = BreakerState.OPEN
                breaker.opened_at = now
                breaker.consecutive_failures = self._settings.failure_threshold
                return
            breaker.consecutive_failures += 1
            if breaker.consecutive_failures >= self._settings.failure_threshold:
                breaker.state = BreakerState.OPEN
                breaker.opened_at = now

    def state(self, provider: ProviderId) -> BreakerState:
        with self._lock:
            return self._breakers[provider].state

    def reset(self) -> None:
        with self._lock:
            for provider in ProviderId:
                self._breakers[provider] = _ProviderBreaker()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                provider.value: {
                    "state": breaker.state.value,
                    "consecutive_failures": breaker.consecutive_failures,
                    "probes_in_flight": breaker.probes_in_flight,
                }
                for provider, breaker in self._breakers.items()
            }
