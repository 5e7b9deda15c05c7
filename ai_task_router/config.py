from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from ai_task_router.enums import Priority, ProviderId, TaskType
from ai_task_router.provider_metrics import ProviderBaseline
from ai_task_router.routing_defaults import default_routing_document


class ProviderProfile(BaseModel):
    success_rate: float = Field(default=0.9, ge=0.0, le=1.0)
    avg_latency_ms: float = Field(default=1000.0, ge=0.0)

    def to_baseline(self) -> ProviderBaseline:
        return ProviderBaseline(
            success_rate=self.success_rate,
            avg_latency_ms=self.avg_latency_ms,
        )


class RouteGuard(BaseModel):
    max_avg_latency_ms: float | None = None
    min_success_rate: float | None = None
    unauthenticated_only: bool = False


class RouteStep(BaseModel):
    provider: ProviderId
    model: str
    estimated_cost: float = Field(default=0.0, ge=0.0)
    latency_ms: float | None = Field(default=None, ge=0.0)
    latency_multiplier: float = Field(default=1.0, gt=0.0)
    reason: str = ""
    when: RouteGuard = Field(default_factory=RouteGuard)

    @field_validator("model")
    @classmethod
    def _strip_model(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Route step model must not be empty.")
        return normalized


class TaskPolicy(BaseModel):
    """Decision table for one task type.

    ``candidates`` lists every provider able to serve the task, one entry per
    provider, in fallback order. ``priorities`` maps a priority to ordered
    guarded steps; the first step whose guard holds becomes the primary
    candidate, otherwise ``default`` (or the first candidate) is used.
    """

    candidates: list[RouteStep]
    priorities: dict[Priority, list[RouteStep]] = Field(default_factory=dict)
    default: RouteStep | None = None

    @model_validator(mode="after")
    def _validate_providers(self) -> TaskPolicy:
        if not self.candidates:
            raise ValueError("Task policy requires at least one candidate.")
        seen: set[ProviderId] = set()
        for step in self.candidates:
            if step.provider in seen:
                raise ValueError(
                    f"Provider '{step.provider.value}' is listed twice in candidates."
                )
            seen.add(step.provider)
        referenced = [step for steps in self.priorities.values() for step in steps]
        if self.default is not None:
            referenced.append(self.default)
        for step in referenced:
            if step.provider not in seen:
                raise ValueError(
                    f"Provider '{step.provider.value}' is routed to but is not a "
                    "candidate for this task."
                )
        return self

    def providers(self) -> list[ProviderId]:
        return [step.provider for step in self.candidates]

    def candidate_for(self, provider: ProviderId) -> RouteStep | None:
        for step in self.candidates:
            if step.provider == provider:
                return step
        return None

    def default_step(self) -> RouteStep:
        return self.default or self.candidates[0]

    def steps_for(self, priority: Priority) -> list[RouteStep]:
        return list(self.priorities.get(priority, []))


class RoutingConfig(BaseModel):
    providers: dict[ProviderId, ProviderProfile] = Field(default_factory=dict)
    tasks: dict[TaskType, TaskPolicy]

    @model_validator(mode="after")
    def _require_every_task(self) -> RoutingConfig:
        missing = [task.value for task in TaskType if task not in self.tasks]
        if missing:
            raise ValueError(f"Missing task policies: {', '.join(missing)}.")
        return self

    def policy_for(self, task: TaskType) -> TaskPolicy:
        return self.tasks[task]

    def baselines(self) -> dict[ProviderId, ProviderBaseline]:
        return {
            provider: profile.to_baseline()
            for provider, profile in self.providers.items()
        }


def default_routing_config() -> RoutingConfig:
    return RoutingConfig.model_validate(default_routing_document())


def merge_routing_document(raw: dict[str, Any]) -> dict[str, Any]:
    """Overlay a partial routing document on the built-in defaults.

    Provider profiles merge field by field; task policies replace the
    built-in policy for that task wholesale.
    """
    merged = default_routing_document()
    raw_providers = raw.get("providers") or {}
    if not isinstance(raw_providers, dict):
        raise ValueError("Expected 'providers' to be a mapping.")
    for provider, profile in raw_providers.items():
        if not isinstance(profile, dict):
            raise ValueError(f"Provider profile for '{provider}' must be an object.")
        merged["providers"].setdefault(str(provider), {}).update(profile)
    raw_tasks = raw.get("tasks") or {}
    if not isinstance(raw_tasks, dict):
        raise ValueError("Expected 'tasks' to be a mapping.")
    for task, policy in raw_tasks.items():
        merged["tasks"][str(task)] = policy
    return merged


def load_routing_config(config_path: str | None) -> RoutingConfig:
    if not config_path:
        return default_routing_config()
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Routing config not found at '{config_path}'. "
            "Create it or unset ROUTING_CONFIG_PATH to use built-in defaults."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    return RoutingConfig.model_validate(merge_routing_document(raw))
