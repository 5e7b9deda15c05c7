from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Lock
from typing import Any
from uuid import uuid4

from ai_task_router.enums import ExperimentState, ProviderId, TaskType, Variant


class UnknownExperimentError(KeyError):
    def __init__(self, experiment_id: str) -> None:
        self.experiment_id = experiment_id
        super().__init__(experiment_id)

    def __str__(self) -> str:
        return f"Unknown experiment '{self.experiment_id}'."


class ExperimentStateError(RuntimeError):
    def __init__(self, experiment_id: str, state: ExperimentState, action: str) -> None:
        self.experiment_id = experiment_id
        self.state = state
        self.action = action
        super().__init__(
            f"Cannot {action} experiment '{experiment_id}' while it is {state.value}."
        )


@dataclass(slots=True, frozen=True)
class VariantTarget:
    provider: ProviderId
    model: str


@dataclass(slots=True)
class VariantStats:
    calls: int = 0
    successes: int = 0
    avg_latency_ms: float = 0.0
    total_cost: float = 0.0

    @property
    def success_rate(self) -> float | None:
        if self.calls <= 0:
            return None
        return self.successes / self.calls

    def observe(self, *, success: bool, latency_ms: float, cost: float) -> None:
        n = self.calls
        self.avg_latency_ms = (self.avg_latency_ms * n + max(0.0, latency_ms)) / (n + 1)
        self.calls = n + 1
        if success:
            self.successes += 1
        self.total_cost += max(0.0, cost)

    def as_dict(self) -> dict[str, Any]:
        rate = self.success_rate
        return {
            "calls": self.calls,
            "successes": self.successes,
            "success_rate": round(rate, 6) if rate is not None else None,
            "avg_latency_ms": round(self.avg_latency_ms, 3),
            "total_cost": round(self.total_cost, 8),
        }


@dataclass(slots=True)
class ABExperiment:
    id: str
    name: str
    variant_a: VariantTarget
    variant_b: VariantTarget
    task_type: TaskType | None = None
    state: ExperimentState = ExperimentState.CREATED
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    ended_at: datetime | None = None
    winner: Variant | None = None
    stats: dict[Variant, VariantStats] = field(
        default_factory=lambda: {variant: VariantStats() for variant in Variant}
    )

    def target(self, variant: Variant) -> VariantTarget:
        return self.variant_a if variant == Variant.A else self.variant_b

    def applies_to(self, task: TaskType | None) -> bool:
        return self.task_type is None or task is None or self.task_type == task

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "task_type": self.task_type.value if self.task_type else None,
            "state": self.state.value,
            "variants": {
                variant.value: {
                    "provider": self.target(variant).provider.value,
                    "model": self.target(variant).model,
                }
                for variant in Variant
            },
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "winner": self.winner.value if self.winner else None,
        }


class ExperimentTracker:
    """In-process registry of A/B experiments and their per-variant outcomes.

    Lifecycle is ``created -> running -> ended``. Outcomes only count while an
    experiment is running and the task is in its scope. Winners are declared
    by the operator when ending, never inferred.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._experiments: dict[str, ABExperiment] = {}

    def create(
        self,
        name: str,
        variant_a: VariantTarget,
        variant_b: VariantTarget,
        *,
        task_type: TaskType | None = None,
        start: bool = True,
    ) -> ABExperiment:
        experiment = ABExperiment(
            id=uuid4().hex,
            name=name.strip() or "experiment",
            variant_a=variant_a,
            variant_b=variant_b,
            task_type=task_type,
        )
        if start:
            experiment.state = ExperimentState.RUNNING
            experiment.started_at = datetime.now(UTC)
        with self._lock:
            self._experiments[experiment.id] = experiment
        return experiment

    def start(self, experiment_id: str) -> ABExperiment:
        with self._lock:
            experiment = self._require(experiment_id)
            if experiment.state != ExperimentState.CREATED:
                raise ExperimentStateError(experiment_id, experiment.state, "start")
            experiment.state = ExperimentState.RUNNING
            experiment.started_at = datetime.now(UTC)
            return experiment

    def end(self, experiment_id: str, winner: Variant | None = None) -> ABExperiment:
        with self._lock:
            experiment = self._require(experiment_id)
            if experiment.state != ExperimentState.RUNNING:
                raise ExperimentStateError(experiment_id, experiment.state, "end")
            experiment.state = ExperimentState.ENDED
            experiment.ended_at = datetime.now(UTC)
            experiment.winner = winner
            return experiment

    def get(self, experiment_id: str) -> ABExperiment:
        with self._lock:
            return self._require(experiment_id)

    def list(self) -> list[ABExperiment]:
        with self._lock:
            return sorted(self._experiments.values(), key=lambda item: item.created_at)

    def active_target(
        self, experiment_id: str, variant: Variant, task: TaskType
    ) -> VariantTarget | None:
        """Return the variant's target when the experiment may steer ``task``."""
        with self._lock:
            experiment = self._require(experiment_id)
            if experiment.state != ExperimentState.RUNNING:
                return None
            if not experiment.applies_to(task):
                return None
            return experiment.target(variant)

    def record(
        self,
        experiment_id: str,
        variant: Variant,
        *,
        success: bool,
        latency_ms: float,
        cost: float,
        task: TaskType | None = None,
    ) -> bool:
        with self._lock:
            experiment = self._require(experiment_id)
            if experiment.state != ExperimentState.RUNNING:
                return False
            if not experiment.applies_to(task):
                return False
            experiment.stats[variant].observe(
                success=success, latency_ms=float(latency_ms), cost=float(cost)
            )
            return True

    def summary(self, experiment_id: str) -> dict[str, Any]:
        with self._lock:
            experiment = self._require(experiment_id)
            payload = experiment.as_dict()
            payload["results"] = {
                variant.value: experiment.stats[variant].as_dict() for variant in Variant
            }
            return payload

    def _require(self, experiment_id: str) -> ABExperiment:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise UnknownExperimentError(experiment_id)
        return experiment
