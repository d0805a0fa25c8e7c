"""
Tests for research_orchestrator/budget.py
"""

import pytest

from research_orchestrator.budget import (
    BUDGET_RESETS_COUNTER,
    LEVEL_CRITICAL,
    LEVEL_HEALTHY,
    LEVEL_THROTTLED,
    BudgetGuard,
)
from research_orchestrator.config import BudgetConfig


@pytest.fixture
def guard(state_manager, clock):
    return BudgetGuard(state_manager, clock, BudgetConfig(daily_budget_usd=50))


def _spend(guard, amount):
    guard.state.orchestrator.daily_cost_usd = amount


class TestBudgetLevels:

    @pytest.mark.parametrize("used,level", [
        (30, LEVEL_HEALTHY),
        (39.99, LEVEL_HEALTHY),
        (40, LEVEL_THROTTLED),
        (42, LEVEL_THROTTLED),
        (47.5, LEVEL_CRITICAL),
        (48, LEVEL_CRITICAL),
    ])
    def test_levels(self, guard, used, level):
        _spend(guard, used)
        assert guard.level() == level

    def test_status_dict(self, guard):
        _spend(guard, 12.5)
        status = guard.get_status()
        assert status["utilization_pct"] == 25.0
        assert status["remaining_usd"] == 37.5
        assert status["level"] == LEVEL_HEALTHY


class TestAuthorize:

    def test_allows_under_budget(self, guard):
        _spend(guard, 10)
        assert guard.authorize(1.0).allowed

    def test_exhausted_budget_defers(self, guard):
        _spend(guard, 50)
        admission = guard.authorize()
        assert not admission.allowed
        assert admission.reason == "Budget exhausted"
        assert admission.source == "budget"

    def test_projected_overrun_defers(self, guard):
        _spend(guard, 49.5)
        assert not guard.authorize(1.0).allowed
        assert guard.authorize(0.25).allowed

    def test_authorize_does_not_consume(self, guard):
        guard.authorize(5.0)
        assert guard.state.orchestrator.daily_cost_usd == 0.0


class TestRecordCompletion:

    def test_accumulates_cost_and_jobs(self, guard):
        guard.record_completion(0.25)
        guard.record_completion(1.0)
        assert guard.state.orchestrator.daily_cost_usd == pytest.approx(1.25)
        assert guard.state.orchestrator.daily_job_count == 2

    def test_negative_cost_rejected(self, guard):
        with pytest.raises(ValueError):
            guard.record_completion(-0.01)


class TestDailyReset:

    def test_first_call_starts_ledger(self, guard, clock):
        assert guard.maybe_reset() is False
        assert guard.state.orchestrator.budget_reset_at == clock.now()

    def test_reset_on_new_utc_day(self, guard, clock):
        guard.maybe_reset()
        guard.record_completion(20)
        guard.state.orchestrator.last_sentiment_at = clock.now()

        clock.advance(hours=14)  # 2024-01-02 00:00 UTC
        assert guard.maybe_reset() is True

        orchestrator = guard.state.orchestrator
        assert orchestrator.daily_cost_usd == 0.0
        assert orchestrator.daily_job_count == 0
        assert orchestrator.last_sentiment_at is not None
        assert guard.state.get_counter(BUDGET_RESETS_COUNTER) == 1

    def test_reset_is_idempotent_within_a_day(self, guard, clock):
        guard.maybe_reset()
        clock.advance(hours=14)
        assert guard.maybe_reset() is True
        guard.record_completion(3)
        clock.advance(hours=5)
        assert guard.maybe_reset() is False
        assert guard.state.orchestrator.daily_cost_usd == 3

    def test_same_day_no_reset(self, guard, clock):
        guard.maybe_reset()
        guard.record_completion(5)
        clock.advance(hours=13, minutes=59)
        assert guard.maybe_reset() is False
        assert guard.state.orchestrator.daily_cost_usd == 5
