from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import Any
from uuid import uuid4

from ai_task_router.enums import AlertPeriod

PREFERENCES_THRESHOLD_ALERT = "preferences_threshold"


class UnknownAlertError(KeyError):
    def __init__(self, alert_id: str) -> None:
        self.alert_id = alert_id
        super().__init__(alert_id)

    def __str__(self) -> str:
        return f"Unknown cost alert '{self.alert_id}'."


def period_start(period: AlertPeriod, moment: datetime) -> datetime:
    """Floor ``moment`` (UTC) to the start of its accounting period."""
    moment = moment.astimezone(UTC) if moment.tzinfo else moment.replace(tzinfo=UTC)
    hour = moment.replace(minute=0, second=0, microsecond=0)
    if period == AlertPeriod.HOURLY:
        return hour
    day = hour.replace(hour=0)
    if period == AlertPeriod.DAILY:
        return day
    if period == AlertPeriod.WEEKLY:
        return day - timedelta(days=day.weekday())
    return day.replace(day=1)


@dataclass(slots=True)
class CostAlert:
    id: str
    alert_type: str
    threshold: float
    period: AlertPeriod
    period_started_at: datetime
    owner: str | None = None
    current: float = 0.0
    triggered_at: datetime | None = None
    acknowledged_at: datetime | None = None
    active: bool = True

    @property
    def triggered(self) -> bool:
        return self.triggered_at is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "alert_type": self.alert_type,
            "owner": self.owner,
            "threshold": self.threshold,
            "current": round(self.current, 8),
            "period": self.period.value,
            "period_started_at": self.period_started_at.isoformat(),
            "triggered_at": self.triggered_at.isoformat() if self.triggered_at else None,
            "acknowledged_at": (
                self.acknowledged_at.isoformat() if self.acknowledged_at else None
            ),
            "active": self.active,
        }


class CostAlertMonitor:
    """Accumulates spend per alert and stamps a one-shot trigger at threshold.

    Alerts with ``owner=None`` are global and accrue every caller's spend.
    Triggering never blocks routing; it is only recorded and logged.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._logger = logger
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = Lock()
        self._alerts: dict[str, CostAlert] = {}

    def create_alert(
        self,
        alert_type: str,
        threshold: float,
        period: AlertPeriod = AlertPeriod.DAILY,
        *,
        owner: str | None = None,
    ) -> CostAlert:
        if threshold <= 0:
            raise ValueError("Cost alert threshold must be positive.")
        alert = CostAlert(
            id=uuid4().hex,
            alert_type=alert_type,
            threshold=float(threshold),
            period=AlertPeriod(period),
            period_started_at=period_start(AlertPeriod(period), self._clock()),
            owner=owner,
        )
        with self._lock:
            self._alerts[alert.id] = alert
        return alert

    def accrue(self, alert_id: str, amount: float) -> CostAlert:
        with self._lock:
            alert = self._require(alert_id)
            self._accrue_locked(alert, amount)
            return alert

    def accrue_for_caller(self, caller_id: str | None, amount: float) -> list[CostAlert]:
        if amount <= 0:
            return []
        with self._lock:
            touched = [
                alert
                for alert in self._alerts.values()
                if alert.active and (alert.owner is None or alert.owner == caller_id)
            ]
            for alert in touched:
                self._accrue_locked(alert, amount)
            return touched

    def acknowledge(self, alert_id: str, *, reset_current: bool = True) -> CostAlert:
        with self._lock:
            alert = self._require(alert_id)
            alert.acknowledged_at = self._clock()
            if reset_current:
                alert.current = 0.0
                alert.triggered_at = None
            return alert

    def deactivate(self, alert_id: str) -> CostAlert:
        with self._lock:
            alert = self._require(alert_id)
            alert.active = False
            return alert

    def reset_expired_periods(self, now: datetime | None = None) -> int:
        moment = now or self._clock()
        reset = 0
        with self._lock:
            for alert in self._alerts.values():
                started = period_start(alert.period, moment)
                if started <= alert.period_started_at:
                    continue
                alert.period_started_at = started
                alert.current = 0.0
                alert.triggered_at = None
                alert.acknowledged_at = None
                reset += 1
        return reset

    def sync_threshold_alert(
        self, owner: str, threshold: float | None
    ) -> CostAlert | None:
        """Keep the caller's daily preference-driven alert at ``threshold``."""
        with self._lock:
            existing = next(
                (
                    alert
                    for alert in self._alerts.values()
                    if alert.owner == owner
                    and alert.alert_type == PREFERENCES_THRESHOLD_ALERT
                ),
                None,
            )
            if threshold is None:
                if existing is not None:
                    existing.active = False
                return existing
            if existing is not None:
                existing.threshold = float(threshold)
                existing.active = True
                return existing
        return self.create_alert(
            PREFERENCES_THRESHOLD_ALERT, threshold, AlertPeriod.DAILY, owner=owner
        )

    def get(self, alert_id: str) -> CostAlert:
        with self._lock:
            return self._require(alert_id)

    def list_alerts(self, *, owner: str | None = None) -> list[CostAlert]:
        with self._lock:
            alerts = list(self._alerts.values())
        if owner is not None:
            alerts = [alert for alert in alerts if alert.owner == owner]
        return alerts

    def _accrue_locked(self, alert: CostAlert, amount: float) -> None:
        alert.current += max(0.0, float(amount))
        if alert.triggered_at is None and alert.current >= alert.threshold:
            alert.triggered_at = self._clock()
            if self._logger is not None:
                self._logger.warning(
                    "cost_alert_triggered alert_id=%s type=%s owner=%s current=%.6f threshold=%.6f",
                    alert.id,
                    alert.alert_type,
                    alert.owner,
                    alert.current,
                    alert.threshold,
                )

    def _require(self, alert_id: str) -> CostAlert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise UnknownAlertError(alert_id)
        return alert


@dataclass(slots=True)
class CostAlertSweeperStatus:
    enabled: bool
    interval_seconds: float
    last_run_epoch: float | None = None
    last_reset_count: int = 0
    last_error: str | None = None


class CostAlertSweeper:
    def __init__(
        self,
        monitor: CostAlertMonitor,
        *,
        logger: logging.Logger | None = None,
        enabled: bool = True,
        interval_seconds: float = 60.0,
    ) -> None:
        self._monitor = monitor
        self._logger = logger
        self._enabled = enabled
        self._interval_seconds = max(1.0, float(interval_seconds))
        self._task: asyncio.Task[None] | None = None
        self._status = CostAlertSweeperStatus(
            enabled=enabled, interval_seconds=self._interval_seconds
        )

    @property
    def status(self) -> CostAlertSweeperStatus:
        return self._status

    async def start(self) -> None:
        if not self._enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="cost-alert-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def run_once(self) -> int:
        reset = self._monitor.reset_expired_periods()
        self._status.last_run_epoch = time.time()
        self._status.last_reset_count = reset
        self._status.last_error = None
        return reset

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as exc:
                self._status.last_run_epoch = time.time()
                self._status.last_error = str(exc)
                if self._logger is not None:
                    self._logger.warning("cost_alert_sweep_failed error=%s", str(exc))
            await asyncio.sleep(self._interval_seconds)
