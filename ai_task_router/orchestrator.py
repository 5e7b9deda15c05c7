from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Protocol

from ai_task_router.ab_testing import ExperimentTracker
from ai_task_router.analytics import AnalyticsSink, routing_event
from ai_task_router.circuit_breaker import ProviderCircuitBreakers
from ai_task_router.cost_alerts import CostAlertMonitor
from ai_task_router.enums import ProviderId, TaskType, Variant
from ai_task_router.preferences import PreferencesStore, RouterPreferences
from ai_task_router.provider_metrics import ProviderMetrics, ProviderMetricsStore
from ai_task_router.router_engine import RouteDecision, RouteOptions, RoutePolicyEngine

logger = logging.getLogger("uvicorn.error")


class RouterError(Exception):
    """Base class for failures surfaced by the execution orchestrator."""


class ProviderInvocationError(RouterError):
    def __init__(
        self,
        provider: ProviderId,
        model: str,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.status_code = status_code
        super().__init__(message)


class ProviderInvoker(Protocol):
    async def invoke(
        self,
        provider: ProviderId,
        model: str,
        task: TaskType,
        payload: Any,
    ) -> Any: ...


@dataclass(slots=True, frozen=True)
class AttemptRecord:
    provider: ProviderId
    model: str
    success: bool
    latency_ms: float
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "model": self.model,
            "success": self.success,
            "latency_ms": round(self.latency_ms, 3),
            "error": self.error,
        }


class ProvidersExhaustedError(RouterError):
    def __init__(
        self,
        attempts: list[AttemptRecord],
        *,
        skipped_circuit_open: list[ProviderId] | None = None,
    ) -> None:
        self.attempts = attempts
        self.skipped_circuit_open = skipped_circuit_open or []
        if attempts:
            message = "All providers failed: " + ", ".join(
                f"{item.provider.value} ({item.error})" for item in attempts
            )
        else:
            message = "No provider was attempted; circuits open for: " + ", ".join(
                item.value for item in self.skipped_circuit_open
            )
        super().__init__(message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": "routing_exhausted",
            "message": str(self),
            "attempts": [item.as_dict() for item in self.attempts],
            "skipped_circuit_open": [item.value for item in self.skipped_circuit_open],
        }


class NoFallbackAvailableError(RouterError):
    def __init__(
        self,
        reason: str,
        attempts: list[AttemptRecord],
        *,
        skipped_circuit_open: list[ProviderId] | None = None,
    ) -> None:
        self.reason = reason
        self.attempts = attempts
        self.skipped_circuit_open = skipped_circuit_open or []
        if attempts:
            message = f"Primary provider failed and no fallback is available ({reason})."
        else:
            message = (
                "Primary provider was skipped with its circuit open "
                f"and no fallback is available ({reason})."
            )
        super().__init__(message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": "no_fallback_available",
            "reason": self.reason,
            "message": str(self),
            "attempts": [item.as_dict() for item in self.attempts],
            "skipped_circuit_open": [item.value for item in self.skipped_circuit_open],
        }


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    result: Any
    provider: ProviderId
    model: str
    latency_ms: float
    cost: float
    fallback_used: bool
    attempts: tuple[AttemptRecord, ...]
    decision: RouteDecision
    total_latency_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "result": self.result,
            "provider": self.provider.value,
            "model": self.model,
            "latency_ms": round(self.latency_ms, 3),
            "cost": self.cost,
            "fallback_used": self.fallback_used,
            "attempts": [item.as_dict() for item in self.attempts],
            "total_latency_ms": round(self.total_latency_ms, 3),
            "decision": self.decision.as_dict(),
        }


@dataclass(slots=True, frozen=True)
class _ExperimentContext:
    experiment_id: str
    variant: Variant
    provider: ProviderId


class ExecutionOrchestrator:
    """Runs a routing decision against providers and keeps the books.

    Each attempt is timed and recorded in the metrics store. The attempt
    chain runs in its own task so that a caller going away never interrupts
    a provider call or the bookkeeping that follows it.
    """

    def __init__(
        self,
        *,
        engine: RoutePolicyEngine,
        metrics: ProviderMetricsStore,
        invoker: ProviderInvoker,
        preferences: PreferencesStore | None = None,
        experiments: ExperimentTracker | None = None,
        cost_monitor: CostAlertMonitor | None = None,
        analytics: AnalyticsSink | None = None,
        circuit_breakers: ProviderCircuitBreakers | None = None,
    ) -> None:
        self.engine = engine
        self.metrics = metrics
        self.invoker = invoker
        self.preferences = preferences
        self.experiments = experiments
        self.cost_monitor = cost_monitor
        self.analytics = analytics
        self.circuit_breakers = circuit_breakers
        self._in_flight: set[asyncio.Task[ExecutionResult]] = set()

    def preferences_for(self, caller_id: str | None) -> RouterPreferences:
        if caller_id is None or self.preferences is None:
            return RouterPreferences()
        return self.preferences.get(caller_id)

    def decide(
        self,
        task: TaskType | str,
        options: RouteOptions | None = None,
        *,
        caller_id: str | None = None,
        experiment_id: str | None = None,
        variant: Variant | None = None,
    ) -> RouteDecision:
        decision, _ = self._decide(
            TaskType(task),
            options or RouteOptions(),
            caller_id=caller_id,
            experiment_id=experiment_id,
            variant=variant,
        )
        return decision

    async def execute(
        self,
        task: TaskType | str,
        payload: Any,
        options: RouteOptions | None = None,
        *,
        caller_id: str | None = None,
        experiment_id: str | None = None,
        variant: Variant | None = None,
    ) -> ExecutionResult:
        task = TaskType(task)
        options = options or RouteOptions()
        decision, experiment = self._decide(
            task,
            options,
            caller_id=caller_id,
            experiment_id=experiment_id,
            variant=variant,
        )
        if caller_id is not None:
            self._guarded(
                "cost_alert_sync",
                self._sync_threshold_alert,
                caller_id,
                self.preferences_for(caller_id).cost_alert_threshold,
            )
        chain = asyncio.create_task(
            self._run_chain(
                task,
                payload,
                decision,
                requires_auth=options.requires_auth,
                caller_id=caller_id,
                experiment=experiment,
            ),
            name=f"route-chain-{task.value}",
        )
        self._in_flight.add(chain)
        chain.add_done_callback(self._chain_done)
        return await asyncio.shield(chain)

    async def aclose(self) -> None:
        pending = list(self._in_flight)
        if pending:
            logger.info("route_orchestrator_draining in_flight=%d", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    def get_metrics(self) -> dict[ProviderId, ProviderMetrics]:
        return self.metrics.snapshot()

    def get_load_balancing_distribution(self) -> dict[ProviderId, float]:
        return self.metrics.load_balancing_distribution()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _chain_done(self, task: asyncio.Task[ExecutionResult]) -> None:
        self._in_flight.discard(task)
        if not task.cancelled():
            # Retrieve so abandoned chains do not log "exception never retrieved".
            task.exception()

    def _decide(
        self,
        task: TaskType,
        options: RouteOptions,
        *,
        caller_id: str | None,
        experiment_id: str | None,
        variant: Variant | None,
    ) -> tuple[RouteDecision, _ExperimentContext | None]:
        preferences = self.preferences_for(caller_id)
        experiment: _ExperimentContext | None = None
        if experiment_id is not None and variant is not None and self.experiments is not None:
            target = self.experiments.active_target(experiment_id, variant, task)
            if target is not None:
                options = replace(
                    options, forced_provider=target.provider, forced_model=target.model
                )
                experiment = _ExperimentContext(
                    experiment_id=experiment_id, variant=variant, provider=target.provider
                )
        decision = self.engine.decide(
            task, options, preferences=preferences, metrics=self.metrics.snapshot()
        )
        if experiment is not None and decision.provider != experiment.provider:
            # The variant's provider was blocked or replaced; the call is not a sample.
            experiment = None
        logger.info(
            "route_decision task=%s priority=%s provider=%s model=%s fallbacks=%s violations=%s",
            decision.task.value,
            decision.priority.value,
            decision.provider.value,
            decision.model,
            ",".join(item.value for item in decision.fallbacks),
            ",".join(decision.constraint_violations),
        )
        return decision, experiment

    async def _run_chain(
        self,
        task: TaskType,
        payload: Any,
        decision: RouteDecision,
        *,
        requires_auth: bool,
        caller_id: str | None,
        experiment: _ExperimentContext | None,
    ) -> ExecutionResult:
        chain_started = time.perf_counter()
        attempts: list[AttemptRecord] = []
        skipped: list[ProviderId] = []
        plan: list[ProviderId] = [decision.provider, *decision.fallbacks]

        for index, provider in enumerate(plan):
            if index == 0:
                model, cost = decision.model, decision.estimated_cost
            else:
                estimate = self.engine.fallback_route(
                    task,
                    provider,
                    metrics=self.metrics.snapshot(),
                    requires_auth=requires_auth,
                )
                model, cost = estimate.model, estimate.estimated_cost
                logger.info(
                    "route_fallback_attempt task=%s provider=%s model=%s attempt=%d/%d",
                    task.value,
                    provider.value,
                    model,
                    index + 1,
                    len(plan),
                )

            if self.circuit_breakers is not None and not self.circuit_breakers.allow(provider):
                logger.info(
                    "route_skip_circuit_open task=%s provider=%s", task.value, provider.value
                )
                skipped.append(provider)
                continue

            started = time.perf_counter()
            try:
                result = await self.invoker.invoke(provider, model, task, payload)
            except Exception as exc:
                latency_ms = (time.perf_counter() - started) * 1000.0
                attempts.append(
                    AttemptRecord(
                        provider=provider,
                        model=model,
                        success=False,
                        latency_ms=latency_ms,
                        error=str(exc) or exc.__class__.__name__,
                    )
                )
                logger.warning(
                    "route_attempt_failed task=%s provider=%s model=%s latency_ms=%.2f error=%s",
                    task.value,
                    provider.value,
                    model,
                    latency_ms,
                    str(exc),
                )
                self._record_attempt(
                    provider, success=False, latency_ms=latency_ms, cost=0.0
                )
                if index == 0:
                    self._record_experiment(
                        experiment, task, success=False, latency_ms=latency_ms, cost=0.0
                    )
                continue

            latency_ms = (time.perf_counter() - started) * 1000.0
            attempts.append(
                AttemptRecord(
                    provider=provider, model=model, success=True, latency_ms=latency_ms
                )
            )
            self._record_attempt(provider, success=True, latency_ms=latency_ms, cost=cost)
            if index == 0:
                self._record_experiment(
                    experiment, task, success=True, latency_ms=latency_ms, cost=cost
                )
            if cost > 0 and self.cost_monitor is not None:
                self._guarded(
                    "cost_alert_accrual", self.cost_monitor.accrue_for_caller, caller_id, cost
                )
            fallback_used = index > 0
            self._emit(
                decision,
                provider=provider,
                model=model,
                success=True,
                latency_ms=latency_ms,
                cost=cost,
                fallback_used=fallback_used,
                caller_id=caller_id,
                experiment=experiment,
                attempts=attempts,
            )
            return ExecutionResult(
                result=result,
                provider=provider,
                model=model,
                latency_ms=latency_ms,
                cost=cost,
                fallback_used=fallback_used,
                attempts=tuple(attempts),
                total_latency_ms=(time.perf_counter() - chain_started) * 1000.0,
                decision=decision,
            )

        last = attempts[-1] if attempts else None
        self._emit(
            decision,
            provider=last.provider if last else decision.provider,
            model=last.model if last else decision.model,
            success=False,
            latency_ms=sum(item.latency_ms for item in attempts),
            cost=0.0,
            fallback_used=len(attempts) > 1,
            caller_id=caller_id,
            experiment=experiment,
            attempts=attempts,
        )
        if not decision.fallbacks:
            excluded = decision.decision_trace.get("constraint_excluded_fallbacks") or []
            if not attempts:
                reason = "circuit_open"
            elif excluded:
                reason = "constraints_excluded"
            else:
                reason = "single_provider"
            logger.error(
                "route_no_fallback task=%s provider=%s reason=%s",
                task.value,
                decision.provider.value,
                reason,
            )
            raise NoFallbackAvailableError(reason, attempts, skipped_circuit_open=skipped)

        logger.error(
            "route_exhausted task=%s attempted=%s skipped_circuit_open=%s",
            task.value,
            ",".join(item.provider.value for item in attempts),
            ",".join(item.value for item in skipped),
        )
        raise ProvidersExhaustedError(attempts, skipped_circuit_open=skipped)

    def _record_attempt(
        self, provider: ProviderId, *, success: bool, latency_ms: float, cost: float
    ) -> None:
        self._guarded(
            "provider_metrics",
            lambda: self.metrics.record(
                provider, success=success, latency_ms=latency_ms, cost=cost
            ),
        )
        if self.circuit_breakers is not None:
            if success:
                self._guarded("circuit_breaker", self.circuit_breakers.record_success, provider)
            else:
                self._guarded("circuit_breaker", self.circuit_breakers.record_failure, provider)

    def _record_experiment(
        self,
        experiment: _ExperimentContext | None,
        task: TaskType,
        *,
        success: bool,
        latency_ms: float,
        cost: float,
    ) -> None:
        if experiment is None or self.experiments is None:
            return
        self._guarded(
            "experiment_record",
            lambda: self.experiments.record(
                experiment.experiment_id,
                experiment.variant,
                success=success,
                latency_ms=latency_ms,
                cost=cost,
                task=task,
            ),
        )

    def _sync_threshold_alert(self, caller_id: str | None, threshold: float | None) -> None:
        if caller_id is None or self.cost_monitor is None:
            return
        self.cost_monitor.sync_threshold_alert(caller_id, threshold)

    def _emit(
        self,
        decision: RouteDecision,
        *,
        provider: ProviderId,
        model: str,
        success: bool,
        latency_ms: float,
        cost: float,
        fallback_used: bool,
        caller_id: str | None,
        experiment: _ExperimentContext | None,
        attempts: list[AttemptRecord],
    ) -> None:
        if self.analytics is None:
            return
        event = routing_event(
            provider=provider.value,
            task_type=decision.task.value,
            model=model,
            priority=decision.priority.value,
            success=success,
            latency_ms=latency_ms,
            cost=cost,
            fallback_used=fallback_used,
            experiment_id=experiment.experiment_id if experiment else None,
            caller_id=caller_id,
            attempted_providers=[item.provider.value for item in attempts],
        )
        self._guarded("analytics", self.analytics.log, event)

    @staticmethod
    def _guarded(step: str, func: Any, *args: Any) -> None:
        try:
            func(*args)
        except Exception as exc:
            logger.warning("route_bookkeeping_failed step=%s error=%s", step, str(exc))
