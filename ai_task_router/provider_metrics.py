from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Any

from ai_task_router.enums import ProviderId


@dataclass(slots=True, frozen=True)
class ProviderBaseline:
    success_rate: float
    avg_latency_ms: float


DEFAULT_PROVIDER_BASELINES: dict[ProviderId, ProviderBaseline] = {
    ProviderId.FAST_CLOUD: ProviderBaseline(success_rate=0.95, avg_latency_ms=1200.0),
    ProviderId.COST_EFFICIENT_CLOUD: ProviderBaseline(
        success_rate=0.92, avg_latency_ms=2500.0
    ),
    ProviderId.LOCAL_DEVICE: ProviderBaseline(success_rate=0.98, avg_latency_ms=800.0),
}


@dataclass(slots=True, frozen=True)
class ProviderMetrics:
    provider: ProviderId
    success_rate: float
    avg_latency_ms: float
    total_calls: int
    failed_calls: int
    total_cost: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "success_rate": round(self.success_rate, 6),
            "avg_latency_ms": round(self.avg_latency_ms, 3),
            "total_calls": self.total_calls,
            "failed_calls": self.failed_calls,
            "total_cost": round(self.total_cost, 8),
        }


@dataclass(slots=True)
class _ProviderMetricsState:
    provider: ProviderId
    success_rate: float
    avg_latency_ms: float
    total_calls: int = 0
    failed_calls: int = 0
    total_cost: float = 0.0

    @classmethod
    def from_baseline(
        cls, provider: ProviderId, baseline: ProviderBaseline
    ) -> _ProviderMetricsState:
        return cls(
            provider=provider,
            success_rate=baseline.success_rate,
            avg_latency_ms=baseline.avg_latency_ms,
        )

    def to_snapshot(self) -> ProviderMetrics:
        return ProviderMetrics(
            provider=self.provider,
            success_rate=self.success_rate,
            avg_latency_ms=self.avg_latency_ms,
            total_calls=self.total_calls,
            failed_calls=self.failed_calls,
            total_cost=self.total_cost,
        )


class ProviderMetricsStore:
    """Rolling per-provider success rate, latency and cost.

    Every provider is seeded at construction, so the record mapping is never
    resized afterwards and each record is guarded by its own lock. Updates to
    the same provider are linearized; updates to different providers proceed
    independently.
    """

    def __init__(
        self,
        baselines: Mapping[ProviderId, ProviderBaseline] | None = None,
    ) -> None:
        merged = dict(DEFAULT_PROVIDER_BASELINES)
        if baselines:
            merged.update(baselines)
        self._baselines = merged
        self._locks: dict[ProviderId, Lock] = {provider: Lock() for provider in ProviderId}
        self._states: dict[ProviderId, _ProviderMetricsState] = {
            provider: _ProviderMetricsState.from_baseline(provider, merged[provider])
            for provider in ProviderId
        }

    def record(
        self,
        provider: ProviderId,
        *,
        success: bool,
        latency_ms: float,
        cost: float = 0.0,
    ) -> ProviderMetrics:
        latency = max(0.0, float(latency_ms))
        accrued = max(0.0, float(cost))
        outcome = 1.0 if success else 0.0
        with self._locks[provider]:
            state = self._states[provider]
            n = state.total_calls
            state.avg_latency_ms = (state.avg_latency_ms * n + latency) / (n + 1)
            state.success_rate = (state.success_rate * n + outcome) / (n + 1)
            state.total_calls = n + 1
            if not success:
                state.failed_calls += 1
            state.total_cost += accrued
            return state.to_snapshot()

    def get(self, provider: ProviderId) -> ProviderMetrics:
        with self._locks[provider]:
            return self._states[provider].to_snapshot()

    def snapshot(self) -> dict[ProviderId, ProviderMetrics]:
        return {provider: self.get(provider) for provider in ProviderId}

    def reset(self) -> None:
        # Acquire in enum order so concurrent resets cannot deadlock.
        locks = [self._locks[provider] for provider in ProviderId]
        for lock in locks:
            lock.acquire()
        try:
            for provider in ProviderId:
                self._states[provider] = _ProviderMetricsState.from_baseline(
                    provider, self._baselines[provider]
                )
        finally:
            for lock in reversed(locks):
                lock.release()

    def load_balancing_distribution(self) -> dict[ProviderId, float]:
        snapshot = self.snapshot()
        total = sum(item.total_calls for item in snapshot.values())
        if total <= 0:
            return {provider: 0.0 for provider in snapshot}
        return {
            provider: round(100.0 * item.total_calls / total, 4)
            for provider, item in snapshot.items()
        }


def metrics_to_dict(
    snapshot: Mapping[ProviderId, ProviderMetrics],
) -> dict[str, dict[str, Any]]:
    return {
        provider.value: value.as_dict()
        for provider, value in sorted(snapshot.items(), key=lambda item: item[0].value)
    }
