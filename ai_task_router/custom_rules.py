from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from ai_task_router.enums import Priority, ProviderId, TaskType
from ai_task_router.preferences import CustomRule, RuleCondition


@dataclass(slots=True)
class RuleOverrides:
    provider: ProviderId | None = None
    priority: Priority | None = None
    max_cost: float | None = None
    applied_rules: list[str] = field(default_factory=list)


def condition_matches(
    condition: RuleCondition,
    *,
    task: TaskType,
    minute_of_day: int,
    estimated_cost: float,
) -> bool:
    if condition.task_type is not None and condition.task_type != task:
        return False
    if condition.time_of_day is not None and not condition.time_of_day.contains(
        minute_of_day
    ):
        return False
    if condition.cost_threshold is not None and estimated_cost < condition.cost_threshold:
        return False
    return True


def resolve_rule_overrides(
    rules: Iterable[CustomRule],
    *,
    task: TaskType,
    minute_of_day: int,
    estimated_cost: float,
) -> RuleOverrides:
    """Fold enabled, matching rules in declaration order.

    Each action field is owned by the first matching rule that sets it; later
    rules can still contribute the fields earlier rules left unset.
    """
    overrides = RuleOverrides()
    for rule in rules:
        if not rule.enabled:
            continue
        if not condition_matches(
            rule.condition,
            task=task,
            minute_of_day=minute_of_day,
            estimated_cost=estimated_cost,
        ):
            continue
        contributed = False
        action = rule.action
        if action.provider is not None and overrides.provider is None:
            overrides.provider = action.provider
            contributed = True
        if action.priority is not None and overrides.priority is None:
            overrides.priority = action.priority
            contributed = True
        if action.max_cost is not None and overrides.max_cost is None:
            overrides.max_cost = action.max_cost
            contributed = True
        if contributed:
            overrides.applied_rules.append(rule.name)
    return overrides
