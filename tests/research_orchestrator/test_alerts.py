"""
Tests for research_orchestrator/alerts.py
"""

import pytest

from research_orchestrator.alerts import (
    CRITICAL,
    DEGRADED,
    HEALTHY,
    AlertEngine,
    HealthSnapshot,
)
from research_orchestrator.budget import BudgetGuard
from research_orchestrator.config import BudgetConfig
from research_orchestrator.models import (
    Alert,
    AlertSeverity,
    AlertType,
    ResearchMode,
)
from research_orchestrator.state import StateManager


@pytest.fixture
def engine(state_manager, clock):
    budget = BudgetGuard(state_manager, clock, BudgetConfig(daily_budget_usd=50))
    return AlertEngine(state_manager, budget, clock)


@pytest.fixture
def add_finished(state_manager, make_job, clock):
    """Add n jobs that finished with the given status at the current time."""
    def _add(status: str, n: int):
        for _ in range(n):
            job = make_job()
            job.mark_running(clock.now())
            if status == "COMPLETED":
                job.mark_completed(clock.now())
            elif status == "FAILED":
                job.mark_failed(clock.now(), "boom")
            else:
                job.mark_timeout(clock.now(), "slow")
            state_manager.add_job(job)
    return _add


def _types(alerts):
    return {a.type for a in alerts}


class TestFailureRate:

    def test_two_of_four_raises(self, engine, add_finished):
        add_finished("COMPLETED", 2)
        add_finished("FAILED", 2)
        assert AlertType.HIGH_FAILURE_RATE in _types(engine.evaluate())

    def test_one_of_five_does_not(self, engine, add_finished):
        add_finished("COMPLETED", 4)
        add_finished("FAILED", 1)
        assert engine.evaluate() == []

    def test_timeouts_count_as_failures(self, engine, add_finished):
        add_finished("COMPLETED", 1)
        add_finished("TIMEOUT", 1)
        alerts = engine.evaluate()
        assert AlertType.HIGH_FAILURE_RATE in _types(alerts)
        assert "1 timed out" in alerts[0].message

    def test_old_failures_outside_window(self, engine, add_finished, clock):
        add_finished("FAILED", 3)
        clock.advance(hours=25)
        add_finished("COMPLETED", 1)
        assert engine.evaluate() == []


class TestBackpressure:

    def test_ten_deferred_in_hour_raises(self, engine, queue, make_job):
        for _ in range(10):
            queue.defer(make_job(), "Budget exhausted")
        alerts = engine.evaluate()
        assert _types(alerts) == {AlertType.BACKPRESSURE_BUILDING}
        assert alerts[0].severity == AlertSeverity.WARNING

    def test_five_deferred_does_not(self, engine, queue, make_job):
        for _ in range(5):
            queue.defer(make_job(), "Budget exhausted")
        assert engine.evaluate() == []

    def test_old_deferrals_ignored(self, engine, queue, make_job, clock):
        for _ in range(10):
            queue.defer(make_job(), "Budget exhausted")
        clock.advance(minutes=61)
        assert AlertType.BACKPRESSURE_BUILDING not in _types(engine.evaluate())


class TestSchedulingDrift:

    def test_fifteen_minutes_behind_raises(self, engine, queue, make_job, clock):
        queue.enqueue(make_job())  # scheduled 10:00
        clock.advance(minutes=15)
        assert _types(engine.evaluate()) == {AlertType.SCHEDULING_DRIFT}

    def test_five_minutes_behind_does_not(self, engine, queue, make_job, clock):
        queue.enqueue(make_job())
        clock.advance(minutes=5)
        assert engine.evaluate() == []


class TestStallAndBudget:

    def test_stall_uses_last_dispatch(self, engine, state_manager, clock):
        orchestrator = state_manager.orchestrator
        orchestrator.enabled_modes = {ResearchMode.SENTIMENT_BURST}
        orchestrator.set_last_run(ResearchMode.SENTIMENT_BURST, clock.now())

        clock.advance(minutes=15)
        assert engine.evaluate() == []

        clock.advance(minutes=1)
        alerts = engine.evaluate()
        assert _types(alerts) == {AlertType.ORCHESTRATOR_STALLED}
        assert alerts[0].severity == AlertSeverity.CRITICAL

    def test_stall_uses_start_time_before_first_run(self, engine, state_manager, clock):
        orchestrator = state_manager.orchestrator
        orchestrator.enabled_modes = {ResearchMode.DEEP_REASONING}
        orchestrator.started_at = clock.now()
        clock.advance(minutes=20)
        assert AlertType.ORCHESTRATOR_STALLED in _types(engine.evaluate())

    def test_no_enabled_modes_never_stalls(self, engine, state_manager, clock):
        state_manager.orchestrator.started_at = clock.now()
        clock.advance(hours=3)
        assert engine.evaluate() == []

    @pytest.mark.parametrize("used,severity", [
        (42, AlertSeverity.WARNING),
        (48, AlertSeverity.CRITICAL),
    ])
    def test_budget_levels(self, engine, state_manager, used, severity):
        state_manager.orchestrator.daily_cost_usd = used
        alerts = engine.evaluate()
        assert _types(alerts) == {AlertType.BUDGET_THROTTLED}
        assert alerts[0].severity == severity

    def test_budget_healthy(self, engine, state_manager):
        state_manager.orchestrator.daily_cost_usd = 30
        assert engine.evaluate() == []


class TestAlertLifecycle:

    def _throttle(self, engine, used):
        engine.state.orchestrator.daily_cost_usd = used

    def test_one_alert_per_type_refreshed_in_place(self, engine):
        self._throttle(engine, 42)
        first = engine.evaluate()[0]

        self._throttle(engine, 48)
        alerts = engine.evaluate()
        assert len(alerts) == 1
        assert alerts[0].id == first.id
        assert alerts[0].severity == AlertSeverity.CRITICAL

    def test_cleared_unacked_alert_stays_open(self, engine, clock):
        self._throttle(engine, 42)
        alert = engine.evaluate()[0]

        self._throttle(engine, 10)
        alerts = engine.evaluate(clock.advance(60))
        assert [a.id for a in alerts] == [alert.id]
        assert alerts[0].resolved_at == clock.now()
        assert engine.health_status(alerts) == HEALTHY

    def test_condition_returning_reopens(self, engine):
        self._throttle(engine, 42)
        alert = engine.evaluate()[0]
        self._throttle(engine, 10)
        engine.evaluate()
        self._throttle(engine, 42)

        alerts = engine.evaluate()
        assert alerts[0].id == alert.id
        assert alerts[0].resolved_at is None

    def test_acknowledged_alert_suppressed_until_cleared(self, engine):
        self._throttle(engine, 42)
        alert = engine.evaluate()[0]
        assert engine.acknowledge(alert.id).acknowledged

        assert engine.evaluate() == []
        assert len(engine.state.get_alerts()) == 1

        # Condition clears: retired; returns: a fresh alert
        self._throttle(engine, 10)
        engine.evaluate()
        assert engine.state.get_alerts() == []

        self._throttle(engine, 42)
        alerts = engine.evaluate()
        assert len(alerts) == 1
        assert alerts[0].id != alert.id

    def test_acknowledging_resolved_alert_removes_it(self, engine):
        self._throttle(engine, 42)
        alert = engine.evaluate()[0]
        self._throttle(engine, 10)
        engine.evaluate()

        engine.acknowledge(alert.id)
        assert engine.state.get_alerts() == []

    def test_acknowledge_unknown(self, engine):
        assert engine.acknowledge("nope") is None

    def test_open_alerts_newest_first(self, engine, queue, make_job, clock):
        self._throttle(engine, 42)
        engine.evaluate()
        clock.advance(minutes=1)
        queue.enqueue(make_job())
        clock.advance(minutes=11)

        alerts = engine.evaluate()
        assert [a.type for a in alerts] == [AlertType.SCHEDULING_DRIFT, AlertType.BUDGET_THROTTLED]


class TestHealthStatus:

    def _alert(self, clock, severity, **kwargs):
        alert = Alert.create(AlertType.SCHEDULING_DRIFT, severity, "x", clock.now())
        for key, value in kwargs.items():
            setattr(alert, key, value)
        return alert

    def test_status_levels(self, clock):
        assert AlertEngine.health_status([]) == HEALTHY
        assert AlertEngine.health_status([self._alert(clock, AlertSeverity.WARNING)]) == DEGRADED
        assert AlertEngine.health_status([
            self._alert(clock, AlertSeverity.WARNING),
            self._alert(clock, AlertSeverity.CRITICAL),
        ]) == CRITICAL

    def test_resolved_and_acked_ignored(self, clock):
        alerts = [
            self._alert(clock, AlertSeverity.CRITICAL, resolved_at=clock.now()),
            self._alert(clock, AlertSeverity.CRITICAL, acknowledged=True),
        ]
        assert AlertEngine.health_status(alerts) == HEALTHY

    def test_snapshot_failure_rate(self):
        assert HealthSnapshot().failure_rate == 0.0
        assert HealthSnapshot(completed=3, failed=1).failure_rate == 0.25


def test_alerts_persist_across_restart(state_dir, clock):
    manager = StateManager(checkpoint_dir=str(state_dir))
    manager.load()
    manager.orchestrator.daily_cost_usd = 48
    engine = AlertEngine(manager, BudgetGuard(manager, clock), clock)
    alert = engine.evaluate()[0]
    manager.close()

    reloaded = StateManager(checkpoint_dir=str(state_dir))
    reloaded.load()
    assert [a.id for a in reloaded.get_alerts()] == [alert.id]
    reloaded.close()

