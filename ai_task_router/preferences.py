from __future__ import annotations

import contextlib
from pathlib import Path
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

import yaml
from pydantic import BaseModel, Field, field_validator

from ai_task_router.enums import Priority, ProviderId, TaskType
from ai_task_router.sequence_utils import dedupe_preserving_order


class TimeOfDayWindow(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def _validate_clock(cls, value: str) -> str:
        parse_clock_minutes(value)
        return value.strip()

    def contains(self, minutes: int) -> bool:
        start = parse_clock_minutes(self.start)
        end = parse_clock_minutes(self.end)
        if start == end:
            return True
        if start < end:
            return start <= minutes < end
        # Window wraps midnight, e.g. 22:00-06:00.
        return minutes >= start or minutes < end


class RuleCondition(BaseModel):
    task_type: TaskType | None = None
    time_of_day: TimeOfDayWindow | None = None
    cost_threshold: float | None = Field(default=None, ge=0.0)


class RuleAction(BaseModel):
    provider: ProviderId | None = None
    priority: Priority | None = None
    max_cost: float | None = Field(default=None, ge=0.0)


class CustomRule(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    name: str
    condition: RuleCondition = Field(default_factory=RuleCondition)
    action: RuleAction = Field(default_factory=RuleAction)
    enabled: bool = True


class RouterPreferences(BaseModel):
    default_priority: Priority = Priority.QUALITY
    max_cost_per_request: float | None = Field(default=None, ge=0.0)
    max_latency_ms: float | None = Field(default=None, gt=0.0)
    preferred_providers: list[ProviderId] = Field(default_factory=list)
    blocked_providers: set[ProviderId] = Field(default_factory=set)
    custom_rules: list[CustomRule] = Field(default_factory=list)
    cost_alert_threshold: float | None = Field(default=None, gt=0.0)

    @field_validator("preferred_providers")
    @classmethod
    def _dedupe_preferred(cls, value: list[ProviderId]) -> list[ProviderId]:
        return dedupe_preserving_order(value)

    def to_document(self) -> dict[str, Any]:
        payload = self.model_dump(mode="json")
        payload["blocked_providers"] = sorted(payload["blocked_providers"])
        return payload


def parse_clock_minutes(value: str) -> int:
    hours_text, sep, minutes_text = value.strip().partition(":")
    if not sep:
        raise ValueError(f"Expected HH:MM time, got '{value}'.")
    try:
        hours = int(hours_text)
        minutes = int(minutes_text)
    except ValueError as exc:
        raise ValueError(f"Expected HH:MM time, got '{value}'.") from exc
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Time '{value}' is out of range.")
    return hours * 60 + minutes


class PreferencesRepository(Protocol):
    def load(self, caller_id: str) -> RouterPreferences | None: ...

    def save(self, caller_id: str, preferences: RouterPreferences) -> None: ...


class InMemoryPreferencesRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._documents: dict[str, dict[str, Any]] = {}

    def load(self, caller_id: str) -> RouterPreferences | None:
        with self._lock:
            document = self._documents.get(caller_id)
        if document is None:
            return None
        return RouterPreferences.model_validate(document)

    def save(self, caller_id: str, preferences: RouterPreferences) -> None:
        document = preferences.to_document()
        with self._lock:
            self._documents[caller_id] = document


class YamlPreferencesRepository:
    """Stores every caller's preferences in one YAML file, written atomically."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = Lock()

    def load(self, caller_id: str) -> RouterPreferences | None:
        with self._lock:
            documents = self._read_all()
        document = documents.get(caller_id)
        if document is None:
            return None
        if not isinstance(document, dict):
            raise ValueError(
                f"Preferences for '{caller_id}' in '{self.path}' must be an object."
            )
        return RouterPreferences.model_validate(document)

    def save(self, caller_id: str, preferences: RouterPreferences) -> None:
        with self._lock:
            documents = self._read_all()
            documents[caller_id] = preferences.to_document()
            self._write_all(documents)

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
        if not isinstance(payload, dict):
            raise ValueError(f"Expected YAML object in '{self.path}'.")
        callers = payload.get("callers") or {}
        if not isinstance(callers, dict):
            raise ValueError(f"Expected 'callers' mapping in '{self.path}'.")
        return {str(key): value for key, value in callers.items()}

    def _write_all(self, documents: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump({"callers": documents}, handle, sort_keys=False)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise


class PreferencesStore:
    """Per-caller preferences with a read-through cache.

    Preferences are created with defaults on first use and persisted; the
    cached copy of a caller is dropped whenever that caller saves.
    """

    def __init__(self, repository: PreferencesRepository) -> None:
        self._repository = repository
        self._lock = Lock()
        self._cache: dict[str, RouterPreferences] = {}

    def get(self, caller_id: str) -> RouterPreferences:
        with self._lock:
            cached = self._cache.get(caller_id)
        if cached is not None:
            return cached.model_copy(deep=True)

        loaded = self._repository.load(caller_id)
        if loaded is None:
            loaded = RouterPreferences()
            self._repository.save(caller_id, loaded)
        with self._lock:
            self._cache[caller_id] = loaded
        return loaded.model_copy(deep=True)

    def save(self, caller_id: str, preferences: RouterPreferences) -> RouterPreferences:
        self._repository.save(caller_id, preferences)
        self.invalidate(caller_id)
        return preferences

    def invalidate(self, caller_id: str | None = None) -> None:
        with self._lock:
            if caller_id is None:
                self._cache.clear()
            else:
                self._cache.pop(caller_id, None)
