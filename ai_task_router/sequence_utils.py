from __future__ import annotations

from collections.abc import Hashable, Iterable
from typing import TypeVar

T = TypeVar("T", bound=Hashable)


def dedupe_preserving_order[T: Hashable](values: Iterable[T]) -> list[T]:
    seen: set[T] = set()
    output: list[T] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        output.append(value)
    return output


def promote_to_front[T: Hashable](values: Iterable[T], preferred: Iterable[T]) -> list[T]:
    """Move ``preferred`` members of ``values`` to the front, in preference order.

    Items of ``preferred`` that are absent from ``values`` are not added.
    """
    remaining = dedupe_preserving_order(values)
    available = set(remaining)
    promoted = [item for item in dedupe_preserving_order(preferred) if item in available]
    promoted_set = set(promoted)
    return [*promoted, *(item for item in remaining if item not in promoted_set)]
