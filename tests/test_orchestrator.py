from __future__ import annotations

import asyncio
from typing import Any

import pytest

from ai_task_router.ab_testing import ExperimentTracker, VariantTarget
from ai_task_router.circuit_breaker import BreakerSettings, ProviderCircuitBreakers
from ai_task_router.config import default_routing_config
from ai_task_router.cost_alerts import CostAlertMonitor
from ai_task_router.enums import AlertPeriod, Priority, ProviderId, TaskType, Variant
from ai_task_router.orchestrator import (
    ExecutionOrchestrator,
    NoFallbackAvailableError,
    ProviderInvocationError,
    ProvidersExhaustedError,
)
from ai_task_router.preferences import (
    InMemoryPreferencesRepository,
    PreferencesStore,
    RouterPreferences,
)
from ai_task_router.provider_metrics import ProviderMetricsStore
from ai_task_router.router_engine import RouteOptions, RoutePolicyEngine


class ScriptedInvoker:
    def __init__(self, failing: set[ProviderId] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[ProviderId, str]] = []

    async def invoke(
        self, provider: ProviderId, model: str, task: TaskType, payload: Any
    ) -> Any:
        self.calls.append((provider, model))
        if provider in self.failing:
            raise ProviderInvocationError(provider, model, f"{provider.value} unavailable")
        return {"provider": provider.value, "model": model, "echo": payload}


class GatedInvoker:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def invoke(
        self, provider: ProviderId, model: str, task: TaskType, payload: Any
    ) -> Any:
        self.started.set()
        await self.release.wait()
        return {"ok": True}


class SlowFailingInvoker(ScriptedInvoker):
    async def invoke(
        self, provider: ProviderId, model: str, task: TaskType, payload: Any
    ) -> Any:
        if provider in self.failing:
            await asyncio.sleep(0.02)
        return await super().invoke(provider, model, task, payload)


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def log(self, event: dict[str, Any]) -> None:
        self.events.append(event)


class ExplodingSink:
    def log(self, event: dict[str, Any]) -> None:
        raise RuntimeError("disk full")


def _orchestrator(invoker: Any, **kwargs: Any) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(
        engine=RoutePolicyEngine(default_routing_config()),
        metrics=kwargs.pop("metrics", ProviderMetricsStore()),
        invoker=invoker,
        **kwargs,
    )


def test_execute_success_records_metrics_and_analytics() -> None:
    sink = RecordingSink()
    orchestrator = _orchestrator(ScriptedInvoker(), analytics=sink)

    result = asyncio.run(
        orchestrator.execute(
            TaskType.CHAT, {"prompt": "hi"}, RouteOptions(priority=Priority.QUALITY)
        )
    )

    assert result.provider == ProviderId.FAST_CLOUD
    assert result.model == "google/gemini-2.5-pro"
    assert result.fallback_used is False
    assert result.cost == pytest.approx(0.0005)
    assert result.result["echo"] == {"prompt": "hi"}
    metrics = orchestrator.metrics.get(ProviderId.FAST_CLOUD)
    assert metrics.total_calls == 1
    assert metrics.failed_calls == 0
    assert metrics.total_cost == pytest.approx(0.0005)
    assert len(sink.events) == 1
    assert sink.events[0]["success"] is True
    assert sink.events[0]["attempted_providers"] == ["fast-cloud"]


def test_primary_failure_walks_to_fallback_with_speed_model() -> None:
    invoker = ScriptedInvoker(failing={ProviderId.FAST_CLOUD})
    orchestrator = _orchestrator(invoker)

    result = asyncio.run(
        orchestrator.execute(TaskType.CHAT, "hi", RouteOptions(priority=Priority.QUALITY))
    )

    assert result.provider == ProviderId.COST_EFFICIENT_CLOUD
    assert result.model == "meta-llama/Llama-3.2-3B-Instruct"
    assert result.fallback_used is True
    assert [item.success for item in result.attempts] == [False, True]
    failed = orchestrator.metrics.get(ProviderId.FAST_CLOUD)
    assert failed.failed_calls == 1
    assert failed.total_cost == 0.0


def test_total_latency_spans_the_whole_fallback_walk() -> None:
    invoker = SlowFailingInvoker(failing={ProviderId.FAST_CLOUD})
    orchestrator = _orchestrator(invoker)

    result = asyncio.run(
        orchestrator.execute(TaskType.CHAT, "hi", RouteOptions(priority=Priority.QUALITY))
    )

    assert result.fallback_used is True
    assert result.latency_ms == pytest.approx(result.attempts[-1].latency_ms)
    assert result.total_latency_ms > result.latency_ms
    assert result.total_latency_ms >= sum(item.latency_ms for item in result.attempts) - 1e-6
    assert result.as_dict()["total_latency_ms"] == round(result.total_latency_ms, 3)


def test_exhausted_chain_records_one_failure_per_provider() -> None:
    invoker = ScriptedInvoker(failing=set(ProviderId))
    sink = RecordingSink()
    orchestrator = _orchestrator(invoker, analytics=sink)

    with pytest.raises(ProvidersExhaustedError) as exc_info:
        asyncio.run(
            orchestrator.execute(
                TaskType.EMBEDDING, "text", RouteOptions(priority=Priority.COST)
            )
        )

    attempts = exc_info.value.attempts
    assert [item.provider for item in attempts] == [
        ProviderId.LOCAL_DEVICE,
        ProviderId.COST_EFFICIENT_CLOUD,
        ProviderId.FAST_CLOUD,
    ]
    snapshot = orchestrator.metrics.snapshot()
    assert sum(item.failed_calls for item in snapshot.values()) == 3
    for provider in ProviderId:
        assert snapshot[provider].total_calls == 1
        assert snapshot[provider].failed_calls == 1
    assert len(sink.events) == 1
    assert sink.events[0]["success"] is False


def test_single_provider_task_reports_no_fallback() -> None:
    orchestrator = _orchestrator(ScriptedInvoker(failing={ProviderId.LOCAL_DEVICE}))

    with pytest.raises(NoFallbackAvailableError) as exc_info:
        asyncio.run(orchestrator.execute(TaskType.OBJECT_DETECTION, {"image": "..."}))

    assert exc_info.value.reason == "single_provider"
    assert orchestrator.metrics.get(ProviderId.LOCAL_DEVICE).failed_calls == 1


def test_constraint_excluded_fallbacks_report_distinct_reason() -> None:
    orchestrator = _orchestrator(ScriptedInvoker(failing={ProviderId.FAST_CLOUD}))

    with pytest.raises(NoFallbackAvailableError) as exc_info:
        asyncio.run(
            orchestrator.execute(
                TaskType.CHAT,
                "hi",
                RouteOptions(priority=Priority.QUALITY, max_cost=0.00005),
            )
        )

    assert exc_info.value.reason == "constraints_excluded"


def test_caller_cancellation_still_records_metrics() -> None:
    async def scenario() -> ExecutionOrchestrator:
        invoker = GatedInvoker()
        orchestrator = _orchestrator(invoker)
        caller = asyncio.create_task(
            orchestrator.execute(TaskType.CHAT, "hi", RouteOptions(priority=Priority.SPEED))
        )
        await invoker.started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        assert orchestrator.in_flight == 1
        invoker.release.set()
        await orchestrator.aclose()
        return orchestrator

    orchestrator = asyncio.run(scenario())

    assert orchestrator.in_flight == 0
    metrics = orchestrator.metrics.get(ProviderId.FAST_CLOUD)
    assert metrics.total_calls == 1
    assert metrics.failed_calls == 0


def test_open_circuit_skips_provider_without_recording_metrics() -> None:
    breakers = ProviderCircuitBreakers(
        BreakerSettings(failure_threshold=1, recovery_timeout_seconds=300.0)
    )
    invoker = ScriptedInvoker(failing={ProviderId.FAST_CLOUD})
    orchestrator = _orchestrator(invoker, circuit_breakers=breakers)
    options = RouteOptions(priority=Priority.QUALITY)

    asyncio.run(orchestrator.execute(TaskType.CHAT, "first", options))
    second = asyncio.run(orchestrator.execute(TaskType.CHAT, "second", options))

    assert second.provider == ProviderId.COST_EFFICIENT_CLOUD
    assert [provider for provider, _ in invoker.calls].count(ProviderId.FAST_CLOUD) == 1
    assert orchestrator.metrics.get(ProviderId.FAST_CLOUD).total_calls == 1


def test_open_circuit_on_sole_provider_reports_circuit_open() -> None:
    breakers = ProviderCircuitBreakers(
        BreakerSettings(failure_threshold=1, recovery_timeout_seconds=300.0)
    )
    invoker = ScriptedInvoker(failing={ProviderId.LOCAL_DEVICE})
    orchestrator = _orchestrator(invoker, circuit_breakers=breakers)

    with pytest.raises(NoFallbackAvailableError) as first:
        asyncio.run(orchestrator.execute(TaskType.OBJECT_DETECTION, {"image": "..."}))
    with pytest.raises(NoFallbackAvailableError) as second:
        asyncio.run(orchestrator.execute(TaskType.OBJECT_DETECTION, {"image": "..."}))

    assert first.value.reason == "single_provider"
    assert second.value.reason == "circuit_open"
    assert second.value.attempts == []
    assert second.value.skipped_circuit_open == [ProviderId.LOCAL_DEVICE]
    assert "skipped with its circuit open" in str(second.value)
    assert len(invoker.calls) == 1


def test_successful_spend_accrues_to_caller_and_global_alerts() -> None:
    monitor = CostAlertMonitor()
    global_alert = monitor.create_alert("budget", 0.0004, AlertPeriod.DAILY)
    caller_alert = monitor.create_alert("budget", 1.0, AlertPeriod.DAILY, owner="team-a")
    other_alert = monitor.create_alert("budget", 1.0, AlertPeriod.DAILY, owner="team-b")
    orchestrator = _orchestrator(ScriptedInvoker(), cost_monitor=monitor)

    asyncio.run(
        orchestrator.execute(
            TaskType.CHAT,
            "hi",
            RouteOptions(priority=Priority.QUALITY),
            caller_id="team-a",
        )
    )

    assert monitor.get(global_alert.id).triggered_at is not None
    assert monitor.get(caller_alert.id).current == pytest.approx(0.0005)
    assert monitor.get(other_alert.id).current == 0.0


def test_caller_preferences_threshold_creates_alert() -> None:
    store = PreferencesStore(InMemoryPreferencesRepository())
    store.save("team-a", RouterPreferences(cost_alert_threshold=0.0001))
    monitor = CostAlertMonitor()
    orchestrator = _orchestrator(ScriptedInvoker(), cost_monitor=monitor, preferences=store)

    asyncio.run(orchestrator.execute(TaskType.CHAT, "hi", caller_id="team-a"))

    alerts = monitor.list_alerts(owner="team-a")
    assert len(alerts) == 1
    assert alerts[0].alert_type == "preferences_threshold"
    assert alerts[0].triggered_at is not None


def test_decide_leaves_cost_alerts_untouched() -> None:
    store = PreferencesStore(InMemoryPreferencesRepository())
    store.save("team-a", RouterPreferences(cost_alert_threshold=5.0))
    monitor = CostAlertMonitor()
    orchestrator = _orchestrator(ScriptedInvoker(), cost_monitor=monitor, preferences=store)

    decision = orchestrator.decide(TaskType.CHAT, caller_id="team-a")

    assert decision.provider == ProviderId.FAST_CLOUD
    assert monitor.list_alerts() == []
    assert orchestrator.metrics.get(ProviderId.FAST_CLOUD).total_calls == 0


def test_experiment_variant_forces_route_and_records_outcome() -> None:
    experiments = ExperimentTracker()
    experiment = experiments.create(
        "embedding-backends",
        VariantTarget(ProviderId.LOCAL_DEVICE, "mixedbread-ai/mxbai-embed-xsmall-v1"),
        VariantTarget(ProviderId.COST_EFFICIENT_CLOUD, "BAAI/bge-small-en-v1.5"),
        task_type=TaskType.EMBEDDING,
    )
    sink = RecordingSink()
    orchestrator = _orchestrator(ScriptedInvoker(), experiments=experiments, analytics=sink)

    result = asyncio.run(
        orchestrator.execute(
            TaskType.EMBEDDING,
            "text",
            experiment_id=experiment.id,
            variant=Variant.B,
        )
    )

    assert result.provider == ProviderId.COST_EFFICIENT_CLOUD
    assert result.model == "BAAI/bge-small-en-v1.5"
    summary = experiments.summary(experiment.id)
    assert summary["results"]["b"]["calls"] == 1
    assert summary["results"]["a"]["calls"] == 0
    assert sink.events[0]["experiment_id"] == experiment.id


def test_experiment_out_of_scope_task_is_not_steered() -> None:
    experiments = ExperimentTracker()
    experiment = experiments.create(
        "embedding-only",
        VariantTarget(ProviderId.LOCAL_DEVICE, "a"),
        VariantTarget(ProviderId.COST_EFFICIENT_CLOUD, "b"),
        task_type=TaskType.EMBEDDING,
    )
    orchestrator = _orchestrator(ScriptedInvoker(), experiments=experiments)

    result = asyncio.run(
        orchestrator.execute(
            TaskType.CHAT,
            "hi",
            RouteOptions(priority=Priority.QUALITY),
            experiment_id=experiment.id,
            variant=Variant.B,
        )
    )

    assert result.provider == ProviderId.FAST_CLOUD
    assert experiments.summary(experiment.id)["results"]["b"]["calls"] == 0


def test_bookkeeping_failure_does_not_fail_the_call() -> None:
    orchestrator = _orchestrator(ScriptedInvoker(), analytics=ExplodingSink())

    result = asyncio.run(orchestrator.execute(TaskType.CAPTIONING, {"image": "..."}))

    assert result.provider == ProviderId.LOCAL_DEVICE
    assert orchestrator.metrics.get(ProviderId.LOCAL_DEVICE).total_calls == 1


def test_dashboard_reads_count_failed_attempts_as_load() -> None:
    orchestrator = _orchestrator(ScriptedInvoker(failing={ProviderId.FAST_CLOUD}))

    assert set(orchestrator.get_load_balancing_distribution().values()) == {0.0}

    asyncio.run(
        orchestrator.execute(TaskType.CHAT, "hi", RouteOptions(priority=Priority.QUALITY))
    )

    metrics = orchestrator.get_metrics()
    assert set(metrics) == set(ProviderId)
    assert metrics[ProviderId.FAST_CLOUD].failed_calls == 1
    assert metrics[ProviderId.COST_EFFICIENT_CLOUD].total_calls == 1
    distribution = orchestrator.get_load_balancing_distribution()
    assert distribution[ProviderId.FAST_CLOUD] == pytest.approx(50.0)
    assert distribution[ProviderId.COST_EFFICIENT_CLOUD] == pytest.approx(50.0)
    assert distribution[ProviderId.LOCAL_DEVICE] == 0.0
