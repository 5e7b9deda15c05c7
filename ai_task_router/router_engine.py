from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo

from ai_task_router.config import RouteGuard, RouteStep, RoutingConfig, TaskPolicy
from ai_task_router.custom_rules import resolve_rule_overrides
from ai_task_router.enums import Priority, ProviderId, TaskType
from ai_task_router.preferences import RouterPreferences
from ai_task_router.provider_metrics import ProviderMetrics
from ai_task_router.sequence_utils import promote_to_front


class RoutingConstraintError(ValueError):
    def __init__(
        self, *, constraint: str, message: str, details: dict[str, Any] | None = None
    ):
        self.constraint = constraint
        self.details = details or {}
        super().__init__(message)


@dataclass(slots=True, frozen=True)
class RouteOptions:
    priority: Priority | None = None
    max_cost: float | None = None
    max_latency_ms: float | None = None
    requires_auth: bool = False
    forced_provider: ProviderId | None = None
    forced_model: str | None = None


@dataclass(slots=True, frozen=True)
class RouteEstimate:
    provider: ProviderId
    model: str
    estimated_cost: float
    estimated_latency_ms: float
    reason: str


@dataclass(slots=True, frozen=True)
class RouteDecision:
    task: TaskType
    priority: Priority
    provider: ProviderId
    model: str
    reason: str
    estimated_cost: float
    estimated_latency_ms: float
    fallbacks: tuple[ProviderId, ...] = ()
    constraint_violations: tuple[str, ...] = ()
    applied_rules: tuple[str, ...] = ()
    decision_trace: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.value,
            "priority": self.priority.value,
            "provider": self.provider.value,
            "model": self.model,
            "reason": self.reason,
            "estimated_cost": self.estimated_cost,
            "estimated_latency_ms": round(self.estimated_latency_ms, 3),
            "fallbacks": [provider.value for provider in self.fallbacks],
            "constraint_violations": list(self.constraint_violations),
            "applied_rules": list(self.applied_rules),
            "decision_trace": self.decision_trace,
        }


__all__ = [
    "RouteDecision",
    "RouteEstimate",
    "RouteOptions",
    "RoutePolicyEngine",
    "RoutingConstraintError",
]


def _guard_holds(
    guard: RouteGuard, metrics: ProviderMetrics, *, requires_auth: bool
) -> bool:
    if guard.unauthenticated_only and requires_auth:
        return False
    if (
        guard.max_avg_latency_ms is not None
        and metrics.avg_latency_ms >= guard.max_avg_latency_ms
    ):
        return False
    if guard.min_success_rate is not None and metrics.success_rate <= guard.min_success_rate:
        return False
    return True


class RoutePolicyEngine:
    """Ranks (provider, model) candidates for a task. Pure: never mutates state."""

    def __init__(
        self,
        config: RoutingConfig,
        *,
        rules_timezone: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self._rules_tz = ZoneInfo(rules_timezone)
        self._clock = clock or (lambda: datetime.now(UTC))
        baselines = config.baselines()
        self._baseline_metrics: dict[ProviderId, ProviderMetrics] = {}
        for provider in ProviderId:
            baseline = baselines.get(provider)
            self._baseline_metrics[provider] = ProviderMetrics(
                provider=provider,
                success_rate=baseline.success_rate if baseline else 1.0,
                avg_latency_ms=baseline.avg_latency_ms if baseline else 0.0,
                total_calls=0,
                failed_calls=0,
                total_cost=0.0,
            )

    def decide(
        self,
        task: TaskType | str,
        options: RouteOptions | None = None,
        *,
        preferences: RouterPreferences | None = None,
        metrics: Mapping[ProviderId, ProviderMetrics] | None = None,
        now: datetime | None = None,
    ) -> RouteDecision:
        task = TaskType(task)
        options = options or RouteOptions()
        prefs = preferences or RouterPreferences()
        live_metrics = {**self._baseline_metrics, **(metrics or {})}
        policy = self.config.policy_for(task)
        blocked = set(prefs.blocked_providers)

        allowed = [provider for provider in policy.providers() if provider not in blocked]
        if not allowed:
            raise RoutingConstraintError(
                constraint="blocked_providers",
                message=f"Every provider able to serve '{task.value}' is blocked.",
                details={
                    "task": task.value,
                    "candidates": [provider.value for provider in policy.providers()],
                    "blocked_providers": sorted(provider.value for provider in blocked),
                },
            )

        priority = options.priority or prefs.default_priority
        max_cost = (
            options.max_cost if options.max_cost is not None else prefs.max_cost_per_request
        )
        max_latency_ms = (
            options.max_latency_ms
            if options.max_latency_ms is not None
            else prefs.max_latency_ms
        )
        decision_trace: dict[str, Any] = {
            "requested_priority": priority.value,
            "requires_auth": options.requires_auth,
            "candidates": [provider.value for provider in policy.providers()],
            "blocked_providers": sorted(provider.value for provider in blocked),
        }

        table_estimate, _ = self._walk_table(
            policy,
            priority,
            live_metrics,
            requires_auth=options.requires_auth,
            blocked=blocked,
        )
        overrides = resolve_rule_overrides(
            prefs.custom_rules,
            task=task,
            minute_of_day=self._minute_of_day(now),
            estimated_cost=table_estimate.estimated_cost,
        )
        if overrides.priority is not None:
            priority = overrides.priority
        if overrides.max_cost is not None:
            max_cost = (
                overrides.max_cost if max_cost is None else min(max_cost, overrides.max_cost)
            )
        decision_trace["applied_rules"] = list(overrides.applied_rules)

        forced_provider = options.forced_provider or overrides.provider
        forced_model = options.forced_model if options.forced_provider else None
        if forced_provider is not None and (
            forced_provider in blocked or policy.candidate_for(forced_provider) is None
        ):
            decision_trace["ignored_forced_provider"] = forced_provider.value
            forced_provider = None
            forced_model = None

        if forced_provider is not None:
            primary = self._forced_estimate(
                task, policy, priority, forced_provider, forced_model, live_metrics
            )
            decision_trace["selected_reason"] = "forced_provider"
        else:
            primary, selected_reason = self._walk_table(
                policy,
                priority,
                live_metrics,
                requires_auth=options.requires_auth,
                blocked=blocked,
            )
            decision_trace["selected_reason"] = selected_reason
        decision_trace["table_primary"] = primary.provider.value

        pinned = forced_provider is not None
        violations: list[str] = []
        if max_cost is not None and primary.estimated_cost > max_cost:
            substitute = None
            if not pinned:
                substitute = self._cheapest_within(
                    policy,
                    live_metrics,
                    max_cost=max_cost,
                    exclude=primary.provider,
                    blocked=blocked,
                )
            if substitute is not None:
                primary = replace(substitute, reason=f"Cost-optimized: {substitute.reason}")
                decision_trace["max_cost_substitution"] = substitute.provider.value
            else:
                violations.append("max_cost")
                primary = replace(
                    primary,
                    reason=(
                        f"{primary.reason} (no candidate within max cost "
                        f"{max_cost:g}; constraint not satisfied)"
                    ),
                )

        if max_latency_ms is not None and primary.estimated_latency_ms > max_latency_ms:
            substitute = None
            if not pinned:
                substitute = self._fastest_within(
                    policy,
                    live_metrics,
                    max_latency_ms=max_latency_ms,
                    max_cost=max_cost,
                    exclude=primary.provider,
                    blocked=blocked,
                )
            if substitute is not None:
                primary = replace(
                    substitute, reason=f"Latency-optimized: {substitute.reason}"
                )
                decision_trace["max_latency_substitution"] = substitute.provider.value
            else:
                violations.append("max_latency_ms")
                primary = replace(
                    primary,
                    reason=(
                        f"{primary.reason} (no candidate within max latency "
                        f"{max_latency_ms:g}ms; constraint not satisfied)"
                    ),
                )

        fallbacks, excluded = self._fallback_chain(
            task,
            policy,
            live_metrics,
            primary=primary.provider,
            blocked=blocked,
            preferred=prefs.preferred_providers,
            max_cost=max_cost,
            max_latency_ms=max_latency_ms,
            requires_auth=options.requires_auth,
        )
        decision_trace["constraint_excluded_fallbacks"] = excluded
        decision_trace["effective_priority"] = priority.value
        decision_trace["effective_max_cost"] = max_cost
        decision_trace["effective_max_latency_ms"] = max_latency_ms

        return RouteDecision(
            task=task,
            priority=priority,
            provider=primary.provider,
            model=primary.model,
            reason=primary.reason,
            estimated_cost=primary.estimated_cost,
            estimated_latency_ms=primary.estimated_latency_ms,
            fallbacks=tuple(fallbacks),
            constraint_violations=tuple(violations),
            applied_rules=tuple(overrides.applied_rules),
            decision_trace=decision_trace,
        )

    def fallback_route(
        self,
        task: TaskType | str,
        provider: ProviderId,
        *,
        metrics: Mapping[ProviderId, ProviderMetrics] | None = None,
        requires_auth: bool = False,
    ) -> RouteEstimate:
        """Speed-biased model choice for ``provider`` when it serves as a fallback."""
        task = TaskType(task)
        live_metrics = {**self._baseline_metrics, **(metrics or {})}
        policy = self.config.policy_for(task)
        for step in policy.steps_for(Priority.SPEED):
            if step.provider != provider:
                continue
            if step.when.unauthenticated_only and requires_auth:
                continue
            return self._estimate(step, live_metrics)
        candidate = policy.candidate_for(provider)
        if candidate is None:
            raise RoutingConstraintError(
                constraint="unsupported_provider",
                message=(
                    f"Provider '{provider.value}' does not serve task '{task.value}'."
                ),
                details={"task": task.value, "provider": provider.value},
            )
        return self._estimate(candidate, live_metrics)

    def _minute_of_day(self, now: datetime | None) -> int:
        moment = now or self._clock()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=self._rules_tz)
        local = moment.astimezone(self._rules_tz)
        return local.hour * 60 + local.minute

    @staticmethod
    def _estimate(
        step: RouteStep,
        metrics: Mapping[ProviderId, ProviderMetrics],
    ) -> RouteEstimate:
        if step.latency_ms is not None:
            latency = float(step.latency_ms)
        else:
            latency = metrics[step.provider].avg_latency_ms * step.latency_multiplier
        return RouteEstimate(
            provider=step.provider,
            model=step.model,
            estimated_cost=float(step.estimated_cost),
            estimated_latency_ms=latency,
            reason=step.reason,
        )

    def _walk_table(
        self,
        policy: TaskPolicy,
        priority: Priority,
        metrics: Mapping[ProviderId, ProviderMetrics],
        *,
        requires_auth: bool,
        blocked: set[ProviderId],
    ) -> tuple[RouteEstimate, str]:
        for step in policy.steps_for(priority):
            if step.provider in blocked:
                continue
            if not _guard_holds(step.when, metrics[step.provider], requires_auth=requires_auth):
                continue
            return self._estimate(step, metrics), "priority_table"

        default = policy.default_step()
        if default.provider not in blocked:
            return self._estimate(default, metrics), "task_default"

        for step in policy.candidates:
            if step.provider in blocked:
                continue
            estimate = self._estimate(step, metrics)
            return (
                replace(
                    estimate,
                    reason=f"{estimate.reason} (default provider blocked)",
                ),
                "blocked_default_substitute",
            )
        # decide() rejects fully blocked tasks before walking the table.
        raise RoutingConstraintError(
            constraint="blocked_providers",
            message="No unblocked candidate is available.",
        )

    def _forced_estimate(
        self,
        task: TaskType,
        policy: TaskPolicy,
        priority: Priority,
        provider: ProviderId,
        model: str | None,
        metrics: Mapping[ProviderId, ProviderMetrics],
    ) -> RouteEstimate:
        step = next(
            (item for item in policy.steps_for(priority) if item.provider == provider),
            None,
        ) or policy.candidate_for(provider)
        if step is None:
            raise RoutingConstraintError(
                constraint="unsupported_provider",
                message=(
                    f"Provider '{provider.value}' does not serve task '{task.value}'."
                ),
                details={"task": task.value, "provider": provider.value},
            )
        estimate = self._estimate(step, metrics)
        if model:
            estimate = replace(estimate, model=model.strip())
        return replace(estimate, reason=f"Forced provider: {estimate.reason}")

    def _candidate_estimates(
        self,
        policy: TaskPolicy,
        metrics: Mapping[ProviderId, ProviderMetrics],
        *,
        exclude: ProviderId,
        blocked: set[ProviderId],
    ) -> list[tuple[int, RouteEstimate]]:
        return [
            (index, self._estimate(step, metrics))
            for index, step in enumerate(policy.candidates)
            if step.provider != exclude and step.provider not in blocked
        ]

    @staticmethod
    def _tie_break_key(
        objective: float,
        index: int,
        estimate: RouteEstimate,
        metrics: Mapping[ProviderId, ProviderMetrics],
    ) -> tuple[float, float, float, int]:
        provider_metrics = metrics[estimate.provider]
        return (
            objective,
            -provider_metrics.success_rate,
            provider_metrics.total_cost,
            index,
        )

    def _cheapest_within(
        self,
        policy: TaskPolicy,
        metrics: Mapping[ProviderId, ProviderMetrics],
        *,
        max_cost: float,
        exclude: ProviderId,
        blocked: set[ProviderId],
    ) -> RouteEstimate | None:
        qualifying = [
            (index, estimate)
            for index, estimate in self._candidate_estimates(
                policy, metrics, exclude=exclude, blocked=blocked
            )
            if estimate.estimated_cost <= max_cost
        ]
        if not qualifying:
            return None
        _, best = min(
            qualifying,
            key=lambda item: self._tie_break_key(
                item[1].estimated_cost, item[0], item[1], metrics
            ),
        )
        return best

    def _fastest_within(
        self,
        policy: TaskPolicy,
        metrics: Mapping[ProviderId, ProviderMetrics],
        *,
        max_latency_ms: float,
        max_cost: float | None,
        exclude: ProviderId,
        blocked: set[ProviderId],
    ) -> RouteEstimate | None:
        qualifying: list[tuple[int, RouteEstimate]] = []
        for index, estimate in self._candidate_estimates(
            policy, metrics, exclude=exclude, blocked=blocked
        ):
            measured = metrics[estimate.provider].avg_latency_ms
            if measured > max_latency_ms:
                continue
            if max_cost is not None and estimate.estimated_cost > max_cost:
                continue
            qualifying.append((index, replace(estimate, estimated_latency_ms=measured)))
        if not qualifying:
            return None
        _, best = min(
            qualifying,
            key=lambda item: self._tie_break_key(
                item[1].estimated_latency_ms, item[0], item[1], metrics
            ),
        )
        return best

    def _fallback_chain(
        self,
        task: TaskType,
        policy: TaskPolicy,
        metrics: Mapping[ProviderId, ProviderMetrics],
        *,
        primary: ProviderId,
        blocked: set[ProviderId],
        preferred: list[ProviderId],
        max_cost: float | None,
        max_latency_ms: float | None,
        requires_auth: bool,
    ) -> tuple[list[ProviderId], list[dict[str, Any]]]:
        chain: list[ProviderId] = []
        excluded: list[dict[str, Any]] = []
        for provider in policy.providers():
            if provider == primary or provider in blocked:
                continue
            estimate = self.fallback_route(
                task, provider, metrics=metrics, requires_auth=requires_auth
            )
            if max_cost is not None and estimate.estimated_cost > max_cost:
                excluded.append(
                    {
                        "provider": provider.value,
                        "constraint": "max_cost",
                        "estimated_cost": estimate.estimated_cost,
                    }
                )
                continue
            if max_latency_ms is not None and estimate.estimated_latency_ms > max_latency_ms:
                excluded.append(
                    {
                        "provider": provider.value,
                        "constraint": "max_latency_ms",
                        "estimated_latency_ms": estimate.estimated_latency_ms,
                    }
                )
                continue
            chain.append(provider)
        return promote_to_front(chain, preferred), excluded
