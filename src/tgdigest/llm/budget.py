from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable

from loguru import logger

WARNING_THRESHOLD = 0.8
CRITICAL_THRESHOLD = 1.0


@dataclass(slots=True)
class BudgetAlert:
    level: str
    daily_tokens: int
    limit: int
    percentage: float


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class BudgetTracker:
    """Daily token counter over the UTC calendar day with one-shot alerts."""

    def __init__(
        self,
        daily_limit: int,
        *,
        on_alert: Callable[[BudgetAlert], None] | None = None,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self._lock = threading.Lock()
        self._limit = int(daily_limit)
        self._on_alert = on_alert
        self._today = today
        self._day = today()
        self._tokens = 0
        self._warning_fired = False
        self._critical_fired = False

    @property
    def limit(self) -> int:
        return self._limit

    def set_limit(self, limit: int) -> None:
        with self._lock:
            self._limit = int(limit)

    def seed(self, tokens: int) -> None:
        with self._lock:
            self._reset_if_new_day()
            self._tokens = int(tokens)
            if self._limit > 0:
                percentage = self._tokens / self._limit
                self._warning_fired = percentage >= WARNING_THRESHOLD
                self._critical_fired = percentage >= CRITICAL_THRESHOLD

    def used(self) -> int:
        with self._lock:
            self._reset_if_new_day()
            return self._tokens

    def exceeded(self) -> bool:
        with self._lock:
            self._reset_if_new_day()
            return self._limit > 0 and self._tokens >= self._limit

    def record(self, tokens: int) -> BudgetAlert | None:
        alert: BudgetAlert | None = None
        with self._lock:
            self._reset_if_new_day()
            self._tokens += int(tokens)
            if self._limit <= 0:
                return None
            percentage = self._tokens / self._limit
            if not self._critical_fired and percentage >= CRITICAL_THRESHOLD:
                self._critical_fired = True
                self._warning_fired = True
                alert = BudgetAlert("critical", self._tokens, self._limit, percentage)
            elif not self._warning_fired and percentage >= WARNING_THRESHOLD:
                self._warning_fired = True
                alert = BudgetAlert("warning", self._tokens, self._limit, percentage)

        if alert is not None:
            logger.warning(
                "llm budget threshold reached level={} tokens={} limit={} pct={:.0%}",
                alert.level,
                alert.daily_tokens,
                alert.limit,
                alert.percentage,
            )
            if self._on_alert is not None:
                self._on_alert(alert)
        return alert

    def _reset_if_new_day(self) -> None:
        today = self._today()
        if today != self._day:
            self._day = today
            self._tokens = 0
            self._warning_fired = False
            self._critical_fired = False
            logger.info("llm budget reset day={}", today.isoformat())
