from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ai_task_router.ab_testing import (
    ExperimentStateError,
    ExperimentTracker,
    UnknownExperimentError,
    VariantTarget,
)
from ai_task_router.analytics import JsonlAnalyticsLogger
from ai_task_router.circuit_breaker import BreakerSettings, ProviderCircuitBreakers
from ai_task_router.config import load_routing_config
from ai_task_router.cost_alerts import CostAlertMonitor, CostAlertSweeper, UnknownAlertError
from ai_task_router.enums import AlertPeriod, Priority, ProviderId, TaskType, Variant
from ai_task_router.http_invoker import HttpProviderInvoker
from ai_task_router.orchestrator import (
    ExecutionOrchestrator,
    NoFallbackAvailableError,
    ProvidersExhaustedError,
)
from ai_task_router.preferences import (
    InMemoryPreferencesRepository,
    PreferencesRepository,
    PreferencesStore,
    RouterPreferences,
    YamlPreferencesRepository,
)
from ai_task_router.provider_metrics import ProviderMetricsStore, metrics_to_dict
from ai_task_router.router_engine import (
    RouteOptions,
    RoutePolicyEngine,
    RoutingConstraintError,
)
from ai_task_router.settings import get_settings

app = FastAPI(
    title="AI Task Router",
    description="Routes AI tasks across cloud and on-device providers with fallback.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


class RouteRequest(BaseModel):
    task: TaskType
    priority: Priority | None = None
    max_cost: float | None = Field(default=None, ge=0.0)
    max_latency_ms: float | None = Field(default=None, gt=0.0)
    requires_auth: bool = False
    caller_id: str | None = None
    experiment_id: str | None = None
    variant: Variant | None = None

    def to_options(self) -> RouteOptions:
        return RouteOptions(
            priority=self.priority,
            max_cost=self.max_cost,
            max_latency_ms=self.max_latency_ms,
            requires_auth=self.requires_auth,
        )


class ExecuteRequest(RouteRequest):
    input: Any = None


class VariantTargetBody(BaseModel):
    provider: ProviderId
    model: str = Field(min_length=1)

    def to_target(self) -> VariantTarget:
        return VariantTarget(provider=self.provider, model=self.model.strip())


class ExperimentCreateRequest(BaseModel):
    name: str
    variant_a: VariantTargetBody
    variant_b: VariantTargetBody
    task_type: TaskType | None = None
    start: bool = True


class ExperimentEndRequest(BaseModel):
    winner: Variant | None = None


class AlertCreateRequest(BaseModel):
    alert_type: str = "budget"
    threshold: float = Field(gt=0.0)
    period: AlertPeriod = AlertPeriod.DAILY
    owner: str | None = None


class AlertAcknowledgeRequest(BaseModel):
    reset_current: bool = True


def _orchestrator() -> ExecutionOrchestrator:
    return app.state.orchestrator


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    routing_config = load_routing_config(settings.routing_config_path)
    repository: PreferencesRepository = (
        YamlPreferencesRepository(settings.preferences_path)
        if settings.preferences_path
        else InMemoryPreferencesRepository()
    )
    metrics = ProviderMetricsStore(routing_config.baselines())
    circuit_breakers = ProviderCircuitBreakers(
        BreakerSettings(
            enabled=settings.circuit_breaker_enabled,
            failure_threshold=max(1, settings.circuit_breaker_failure_threshold),
            recovery_timeout_seconds=max(
                1.0, settings.circuit_breaker_recovery_timeout_seconds
            ),
            half_open_max_requests=max(1, settings.circuit_breaker_half_open_max_requests),
        )
    )
    analytics = JsonlAnalyticsLogger(
        path=settings.router_analytics_log_path,
        enabled=settings.router_analytics_log_enabled,
    )
    cost_monitor = CostAlertMonitor(logger=logger)
    http_invoker = HttpProviderInvoker(
        settings.provider_base_url_map,
        timeout_seconds=settings.provider_timeout_seconds,
        connect_timeout_seconds=settings.provider_connect_timeout_seconds,
    )
    experiments = ExperimentTracker()
    app.state.settings = settings
    app.state.routing_config = routing_config
    app.state.metrics = metrics
    app.state.circuit_breakers = circuit_breakers
    app.state.analytics = analytics
    app.state.cost_monitor = cost_monitor
    app.state.experiments = experiments
    app.state.preferences = PreferencesStore(repository)
    app.state.http_invoker = http_invoker
    app.state.orchestrator = ExecutionOrchestrator(
        engine=RoutePolicyEngine(routing_config, rules_timezone=settings.rules_timezone),
        metrics=metrics,
        invoker=http_invoker,
        preferences=app.state.preferences,
        experiments=experiments,
        cost_monitor=cost_monitor,
        analytics=analytics,
        circuit_breakers=circuit_breakers,
    )
    sweeper = CostAlertSweeper(
        cost_monitor,
        logger=logger,
        enabled=settings.cost_alert_sweep_enabled,
        interval_seconds=settings.cost_alert_sweep_interval_seconds,
    )
    await sweeper.start()
    app.state.cost_alert_sweeper = sweeper
    logger.info(
        (
            "startup complete routing_config_path=%s preferences_path=%s "
            "providers_with_urls=%s analytics_log_enabled=%s analytics_log_path=%s"
        ),
        settings.routing_config_path,
        settings.preferences_path,
        ",".join(sorted(item.value for item in settings.provider_base_url_map)),
        settings.router_analytics_log_enabled,
        settings.router_analytics_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    sweeper: CostAlertSweeper | None = getattr(app.state, "cost_alert_sweeper", None)
    if sweeper is not None:
        await sweeper.stop()
    orchestrator: ExecutionOrchestrator | None = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        await orchestrator.aclose()
    http_invoker: HttpProviderInvoker | None = getattr(app.state, "http_invoker", None)
    if http_invoker is not None:
        await http_invoker.close()
    analytics: JsonlAnalyticsLogger | None = getattr(app.state, "analytics", None)
    if analytics is not None:
        analytics.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/router/metrics")
async def router_metrics() -> dict[str, Any]:
    breakers: ProviderCircuitBreakers = app.state.circuit_breakers
    return {
        "object": "router.metrics",
        "providers": metrics_to_dict(_orchestrator().get_metrics()),
        "circuit_breakers": breakers.snapshot(),
    }


@app.get("/v1/router/load-balancing")
async def router_load_balancing() -> dict[str, Any]:
    distribution = _orchestrator().get_load_balancing_distribution()
    return {
        "object": "router.load_balancing",
        "distribution": {provider.value: share for provider, share in distribution.items()},
    }


@app.post("/v1/router/metrics/reset")
async def router_metrics_reset() -> dict[str, str]:
    app.state.metrics.reset()
    app.state.circuit_breakers.reset()
    logger.info("router_metrics_reset")
    return {"status": "reset"}


@app.post("/v1/router/decide")
async def router_decide(body: RouteRequest) -> dict[str, Any]:
    decision = _orchestrator().decide(
        body.task,
        body.to_options(),
        caller_id=body.caller_id,
        experiment_id=body.experiment_id,
        variant=body.variant,
    )
    return decision.as_dict()


@app.post("/v1/router/execute")
async def router_execute(body: ExecuteRequest) -> dict[str, Any]:
    result = await _orchestrator().execute(
        body.task,
        body.input,
        body.to_options(),
        caller_id=body.caller_id,
        experiment_id=body.experiment_id,
        variant=body.variant,
    )
    return result.as_dict()


@app.get("/v1/router/preferences/{caller_id}")
async def get_preferences(caller_id: str) -> dict[str, Any]:
    store: PreferencesStore = app.state.preferences
    return store.get(caller_id).to_document()


@app.put("/v1/router/preferences/{caller_id}")
async def put_preferences(caller_id: str, body: RouterPreferences) -> dict[str, Any]:
    store: PreferencesStore = app.state.preferences
    saved = store.save(caller_id, body)
    cost_monitor: CostAlertMonitor = app.state.cost_monitor
    cost_monitor.sync_threshold_alert(caller_id, saved.cost_alert_threshold)
    return saved.to_document()


@app.get("/v1/router/experiments")
async def list_experiments() -> dict[str, Any]:
    experiments: ExperimentTracker = app.state.experiments
    return {
        "object": "list",
        "data": [experiment.as_dict() for experiment in experiments.list()],
    }


@app.post("/v1/router/experiments")
async def create_experiment(body: ExperimentCreateRequest) -> dict[str, Any]:
    experiments: ExperimentTracker = app.state.experiments
    experiment = experiments.create(
        body.name,
        body.variant_a.to_target(),
        body.variant_b.to_target(),
        task_type=body.task_type,
        start=body.start,
    )
    logger.info(
        "experiment_created id=%s name=%s state=%s",
        experiment.id,
        experiment.name,
        experiment.state.value,
    )
    return experiments.summary(experiment.id)


@app.get("/v1/router/experiments/{experiment_id}")
async def get_experiment(experiment_id: str) -> dict[str, Any]:
    experiments: ExperimentTracker = app.state.experiments
    return experiments.summary(experiment_id)


@app.post("/v1/router/experiments/{experiment_id}/end")
async def end_experiment(
    experiment_id: str, body: ExperimentEndRequest | None = None
) -> dict[str, Any]:
    experiments: ExperimentTracker = app.state.experiments
    winner = body.winner if body is not None else None
    experiments.end(experiment_id, winner=winner)
    logger.info("experiment_ended id=%s winner=%s", experiment_id, winner)
    return experiments.summary(experiment_id)


@app.get("/v1/router/alerts")
async def list_alerts(owner: str | None = None) -> dict[str, Any]:
    cost_monitor: CostAlertMonitor = app.state.cost_monitor
    return {
        "object": "list",
        "data": [alert.as_dict() for alert in cost_monitor.list_alerts(owner=owner)],
    }


@app.post("/v1/router/alerts")
async def create_alert(body: AlertCreateRequest) -> dict[str, Any]:
    cost_monitor: CostAlertMonitor = app.state.cost_monitor
    alert = cost_monitor.create_alert(
        body.alert_type, body.threshold, body.period, owner=body.owner
    )
    return alert.as_dict()


@app.post("/v1/router/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str, body: AlertAcknowledgeRequest | None = None
) -> dict[str, Any]:
    cost_monitor: CostAlertMonitor = app.state.cost_monitor
    reset_current = body.reset_current if body is not None else True
    return cost_monitor.acknowledge(alert_id, reset_current=reset_current).as_dict()


@app.exception_handler(ProvidersExhaustedError)
async def providers_exhausted_handler(
    _: Request, exc: ProvidersExhaustedError
) -> JSONResponse:
    return JSONResponse(status_code=502, content={"error": exc.as_dict()})


@app.exception_handler(NoFallbackAvailableError)
async def no_fallback_handler(_: Request, exc: NoFallbackAvailableError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"error": exc.as_dict()})


@app.exception_handler(RoutingConstraintError)
async def routing_constraint_handler(
    _: Request, exc: RoutingConstraintError
) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "type": "routing_constraint",
                "constraint": exc.constraint,
                "message": str(exc),
                "details": exc.details,
            }
        },
    )


@app.exception_handler(UnknownExperimentError)
async def unknown_experiment_handler(
    _: Request, exc: UnknownExperimentError
) -> JSONResponse:
    return JSONResponse(
        status_code=404, content={"error": {"type": "not_found", "message": str(exc)}}
    )


@app.exception_handler(UnknownAlertError)
async def unknown_alert_handler(_: Request, exc: UnknownAlertError) -> JSONResponse:
    return JSONResponse(
        status_code=404, content={"error": {"type": "not_found", "message": str(exc)}}
    )


@app.exception_handler(ExperimentStateError)
async def experiment_state_handler(_: Request, exc: ExperimentStateError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "error": {
                "type": "invalid_state",
                "state": exc.state.value,
                "message": str(exc),
            }
        },
    )


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run("ai_task_router.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    run()
