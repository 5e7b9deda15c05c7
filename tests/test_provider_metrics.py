from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from ai_task_router.enums import ProviderId
from ai_task_router.provider_metrics import (
    ProviderBaseline,
    ProviderMetricsStore,
    metrics_to_dict,
)


def test_store_is_seeded_with_baselines_for_every_provider() -> None:
    snapshot = ProviderMetricsStore().snapshot()

    assert set(snapshot) == set(ProviderId)
    assert snapshot[ProviderId.FAST_CLOUD].success_rate == pytest.approx(0.95)
    assert snapshot[ProviderId.FAST_CLOUD].avg_latency_ms == pytest.approx(1200.0)
    assert snapshot[ProviderId.COST_EFFICIENT_CLOUD].avg_latency_ms == pytest.approx(2500.0)
    assert snapshot[ProviderId.LOCAL_DEVICE].success_rate == pytest.approx(0.98)
    assert all(item.total_calls == 0 for item in snapshot.values())


def test_record_applies_incremental_means() -> None:
    store = ProviderMetricsStore()

    store.record(ProviderId.LOCAL_DEVICE, success=True, latency_ms=100.0)
    store.record(ProviderId.LOCAL_DEVICE, success=False, latency_ms=300.0)
    metrics = store.record(ProviderId.LOCAL_DEVICE, success=True, latency_ms=200.0, cost=0.5)

    assert metrics.total_calls == 3
    assert metrics.failed_calls == 1
    assert metrics.avg_latency_ms == pytest.approx(200.0)
    assert metrics.success_rate == pytest.approx(2 / 3)
    assert metrics.total_cost == pytest.approx(0.5)


def test_negative_latency_and_cost_are_clamped() -> None:
    store = ProviderMetricsStore()

    metrics = store.record(ProviderId.FAST_CLOUD, success=True, latency_ms=-5.0, cost=-1.0)

    assert metrics.avg_latency_ms == 0.0
    assert metrics.total_cost == 0.0


def test_concurrent_records_are_linearized() -> None:
    store = ProviderMetricsStore()
    workers = 8
    per_worker = 500

    def _hammer(worker: int) -> None:
        for index in range(per_worker):
            store.record(
                ProviderId.FAST_CLOUD,
                success=(index % 4 != 0),
                latency_ms=100.0 + worker,
                cost=0.001,
            )
            store.record(ProviderId.LOCAL_DEVICE, success=True, latency_ms=50.0)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        list(pool.map(_hammer, range(workers)))

    fast = store.get(ProviderId.FAST_CLOUD)
    local = store.get(ProviderId.LOCAL_DEVICE)
    total = workers * per_worker
    assert fast.total_calls == total
    assert fast.failed_calls == total // 4
    assert fast.success_rate == pytest.approx(0.75)
    assert fast.avg_latency_ms == pytest.approx(103.5)
    assert fast.total_cost == pytest.approx(total * 0.001)
    assert local.total_calls == total
    assert local.avg_latency_ms == pytest.approx(50.0)


def test_reset_restores_configured_baselines() -> None:
    store = ProviderMetricsStore(
        {ProviderId.FAST_CLOUD: ProviderBaseline(success_rate=0.5, avg_latency_ms=10.0)}
    )
    store.record(ProviderId.FAST_CLOUD, success=True, latency_ms=999.0)

    store.reset()

    metrics = store.get(ProviderId.FAST_CLOUD)
    assert metrics.total_calls == 0
    assert metrics.success_rate == pytest.approx(0.5)
    assert metrics.avg_latency_ms == pytest.approx(10.0)


def test_load_balancing_distribution_counts_every_recorded_call() -> None:
    store = ProviderMetricsStore()
    assert store.load_balancing_distribution() == {provider: 0.0 for provider in ProviderId}

    for _ in range(3):
        store.record(ProviderId.FAST_CLOUD, success=True, latency_ms=10.0)
    store.record(ProviderId.LOCAL_DEVICE, success=True, latency_ms=10.0)
    store.record(ProviderId.COST_EFFICIENT_CLOUD, success=False, latency_ms=10.0)

    distribution = store.load_balancing_distribution()
    assert distribution[ProviderId.FAST_CLOUD] == pytest.approx(60.0)
    assert distribution[ProviderId.LOCAL_DEVICE] == pytest.approx(20.0)
    assert distribution[ProviderId.COST_EFFICIENT_CLOUD] == pytest.approx(20.0)


def test_metrics_to_dict_uses_provider_values() -> None:
    payload = metrics_to_dict(ProviderMetricsStore().snapshot())

    assert sorted(payload) == ["cost-efficient-cloud", "fast-cloud", "local-device"]
    assert payload["fast-cloud"]["total_calls"] == 0
