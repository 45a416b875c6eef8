from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from routeflow.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BudgetLimits:
    daily: float = 10.0
    monthly: float = 100.0
    per_request: float = 0.5
    alert_threshold_pct: int = 80


@dataclass(frozen=True)
class BudgetCheck:
    allowed: bool
    reason: Optional[str] = None


@dataclass
class BudgetUsage:
    daily_spent: float = 0.0
    monthly_spent: float = 0.0
    request_count: int = 0
    by_task: Dict[str, float] = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BudgetTracker:
    """Running spend against daily, monthly and per-request limits.

    Daily and monthly windows roll over automatically on the first call in a
    new UTC day or month; ``reset_daily``/``reset_monthly`` force it.
    """

    def __init__(
        self, limits: Optional[BudgetLimits] = None, *, now: Callable[[], datetime] = _utcnow
    ) -> None:
        self.limits = limits or BudgetLimits()
        self._now = now
        self._usage = BudgetUsage()
        self._lock = threading.Lock()
        current = self._now()
        self._day = current.date()
        self._month = (current.year, current.month)
        self._alerted: set[str] = set()

    def _roll_windows(self) -> None:
        current = self._now()
        if current.date() != self._day:
            self._day = current.date()
            self._usage.daily_spent = 0.0
            self._alerted.discard("daily")
        if (current.year, current.month) != self._month:
            self._month = (current.year, current.month)
            self._usage.monthly_spent = 0.0
            self._alerted.discard("monthly")

    def check(self, estimated_cost: float) -> BudgetCheck:
        with self._lock:
            self._roll_windows()
            if estimated_cost > self.limits.per_request:
                return BudgetCheck(
                    False,
                    f"Request cost ${estimated_cost:.6f} exceeds per-request limit "
                    f"${self.limits.per_request}",
                )
            if self._usage.daily_spent + estimated_cost > self.limits.daily:
                return BudgetCheck(
                    False,
                    f"Request would exceed daily budget "
                    f"(${self._usage.daily_spent:.6f} spent of ${self.limits.daily})",
                )
            if self._usage.monthly_spent + estimated_cost > self.limits.monthly:
                return BudgetCheck(
                    False,
                    f"Request would exceed monthly budget "
                    f"(${self._usage.monthly_spent:.6f} spent of ${self.limits.monthly})",
                )
            return BudgetCheck(True)

    def record(self, cost: float, task_type: str = "unknown") -> None:
        if cost < 0:
            raise ValueError("cost must not be negative")
        with self._lock:
            self._roll_windows()
            self._usage.daily_spent += cost
            self._usage.monthly_spent += cost
            self._usage.request_count += 1
            self._usage.by_task[task_type] = self._usage.by_task.get(task_type, 0.0) + cost
            self._maybe_alert()

    def _maybe_alert(self) -> None:
        threshold = self.limits.alert_threshold_pct
        for window, spent, limit in (
            ("daily", self._usage.daily_spent, self.limits.daily),
            ("monthly", self._usage.monthly_spent, self.limits.monthly),
        ):
            if window in self._alerted or limit <= 0:
                continue
            pct = spent / limit * 100
            if pct >= threshold:
                self._alerted.add(window)
                logger.warning(
                    "budget_alert_threshold_reached",
                    window=window,
                    spent=round(spent, 6),
                    limit=limit,
                    utilization_pct=round(pct, 2),
                )

    def usage(self) -> BudgetUsage:
        with self._lock:
            self._roll_windows()
            return BudgetUsage(
                daily_spent=self._usage.daily_spent,
                monthly_spent=self._usage.monthly_spent,
                request_count=self._usage.request_count,
                by_task=dict(self._usage.by_task),
            )

    def utilization(self) -> Dict[str, float]:
        usage = self.usage()
        return {
            "daily": usage.daily_spent / self.limits.daily * 100 if self.limits.daily else 0.0,
            "monthly": (
                usage.monthly_spent / self.limits.monthly * 100 if self.limits.monthly else 0.0
            ),
        }

    def reset_daily(self) -> None:
        with self._lock:
            self._usage.daily_spent = 0.0
            self._alerted.discard("daily")

    def reset_monthly(self) -> None:
        with self._lock:
            self._usage.monthly_spent = 0.0
            self._alerted.discard("monthly")
