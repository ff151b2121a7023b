from __future__ import annotations

from pathlib import Path

import pytest

from gsdrun.budget.guard import BudgetGuard
from gsdrun.state.store import StateStore


def _guard(tmp_path: Path, *, limit: int) -> tuple[BudgetGuard, StateStore]:
    store = StateStore(tmp_path / "runs" / "r", tmp_path / "usage")
    return BudgetGuard(store, limit=limit, period_key="2026-01-01"), store


def test_guard_allows_until_usage_reaches_limit(tmp_path: Path) -> None:
    guard, store = _guard(tmp_path, limit=100)
    assert guard.check_and_reserve(10).allowed

    store.add_period_usage("2026-01-01", 99)
    decision = guard.check_and_reserve(50)
    assert decision.allowed
    assert decision.used_units == 99
    assert decision.estimated_units == 50
    assert guard.remaining() == 1

    store.add_period_usage("2026-01-01", 1)
    decision = guard.check_and_reserve(0)
    assert not decision.allowed
    assert decision.describe() == "100 / 100 units used in period"
    assert guard.remaining() == 0


def test_guard_does_not_record_usage(tmp_path: Path) -> None:
    guard, store = _guard(tmp_path, limit=10)
    guard.check_and_reserve(5)
    guard.check_and_reserve(5)
    assert store.current_period_usage("2026-01-01") == 0


def test_zero_limit_denies_everything(tmp_path: Path) -> None:
    guard, _ = _guard(tmp_path, limit=0)
    assert not guard.check_and_reserve(0).allowed


def test_other_periods_do_not_count(tmp_path: Path) -> None:
    guard, store = _guard(tmp_path, limit=10)
    store.add_period_usage("2025-12-31", 500)
    assert guard.used() == 0
    assert guard.check_and_reserve(1).allowed


def test_negative_limit_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _guard(tmp_path, limit=-1)
