from __future__ import annotations

import logging
from dataclasses import dataclass

from gsdrun.state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    allowed: bool
    used_units: int
    limit: int
    estimated_units: int

    def describe(self) -> str:
        return f"{self.used_units} / {self.limit} units used in period"


class BudgetGuard:
    """Gate dispatch on the cumulative usage of the current accounting period.

    Nothing is reserved up front: the estimate is informational, and the
    executor records actual consumption once the call completes.
    """

    def __init__(self, store: StateStore, *, limit: int, period_key: str) -> None:
        if limit < 0:
            raise ValueError("budget limit must be >= 0")
        self.store = store
        self.limit = limit
        self.period_key = period_key

    def used(self) -> int:
        return self.store.current_period_usage(self.period_key)

    def remaining(self) -> int:
        return max(self.limit - self.used(), 0)

    def check_and_reserve(self, estimated_units: int = 0) -> BudgetDecision:
        used = self.used()
        decision = BudgetDecision(
            allowed=used < self.limit,
            used_units=used,
            limit=self.limit,
            estimated_units=estimated_units,
        )
        if decision.allowed:
            logger.info(
                "Budget: %d / %d units used (period %s, next step ~%d)",
                used,
                self.limit,
                self.period_key,
                estimated_units,
            )
        else:
            logger.warning(
                "Budget exceeded: %d / %d units used (period %s)",
                used,
                self.limit,
                self.period_key,
            )
        return decision
