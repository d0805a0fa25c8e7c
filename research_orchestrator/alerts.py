"""
Health & Alert Engine for the Research Orchestrator.

Samples orchestrator metrics and maintains one alert per condition type:
- ORCHESTRATOR_STALLED: enabled modes have not dispatched for too long
- BUDGET_THROTTLED: daily spend above the warning/critical utilization
- HIGH_FAILURE_RATE: failed + timed out share of finished jobs
- BACKPRESSURE_BUILDING: recent deferrals piling up
- SCHEDULING_DRIFT: queued work waiting well past its scheduled time

Alert lifecycle:
- Active condition, open alert: severity and message refreshed in place
- Active condition, acknowledged alert: suppressed until the condition clears
- Cleared condition, acknowledged alert: retired
- Cleared condition, unacknowledged alert: stays open with resolved_at set
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from shared.logging import get_logger

from .budget import BudgetGuard
from .clock import Clock
from .config import AlertThresholds
from .models import (
    Alert,
    AlertSeverity,
    AlertType,
    JobStatus,
    ResearchMode,
)
from .state import StateManager

log = get_logger("research", "alerts")

HEALTHY = "healthy"
DEGRADED = "degraded"
CRITICAL = "critical"


@dataclass
class HealthSnapshot:
    """Metrics the alert conditions are evaluated against."""
    # Last dispatch time per enabled mode (None = never ran)
    enabled_last_runs: dict[ResearchMode, Optional[datetime]] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    budget_utilization: float = 0.0
    # Finished jobs inside the failure window
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    # DEFERRED jobs created inside the backpressure window
    recent_deferred: int = 0
    # Earliest scheduled_for among QUEUED jobs
    oldest_queued_at: Optional[datetime] = None

    @property
    def failure_rate(self) -> float:
        finished = self.completed + self.failed + self.timed_out
        if not finished:
            return 0.0
        return (self.failed + self.timed_out) / finished


class AlertEngine:
    """
    Derives alerts from metrics and owns their persisted lifecycle.
    """

    def __init__(
        self,
        state_manager: StateManager,
        budget: BudgetGuard,
        clock: Clock,
        thresholds: Optional[AlertThresholds] = None,
    ):
        self.state = state_manager
        self.budget = budget
        self.clock = clock
        self.thresholds = thresholds or AlertThresholds()

    # ==================== Metrics ====================

    def collect(self, now: Optional[datetime] = None) -> HealthSnapshot:
        """Build a snapshot from persisted state."""
        now = now or self.clock.now()
        orchestrator = self.state.orchestrator
        failure_since = now - timedelta(hours=self.thresholds.failure_window_hours)
        deferred_since = now - timedelta(minutes=self.thresholds.backpressure_window_minutes)

        snapshot = HealthSnapshot(
            enabled_last_runs={
                mode: orchestrator.last_run_at(mode) for mode in orchestrator.active_modes()
            },
            started_at=orchestrator.started_at,
            budget_utilization=self.budget.utilization(),
        )

        for job in self.state.get_all_jobs():
            if job.status == JobStatus.DEFERRED:
                if job.created_at >= deferred_since:
                    snapshot.recent_deferred += 1
            elif job.status == JobStatus.QUEUED:
                scheduled = job.scheduled_for or job.created_at
                if snapshot.oldest_queued_at is None or scheduled < snapshot.oldest_queued_at:
                    snapshot.oldest_queued_at = scheduled
            elif job.completed_at and job.completed_at >= failure_since:
                if job.status == JobStatus.COMPLETED:
                    snapshot.completed += 1
                elif job.status == JobStatus.FAILED:
                    snapshot.failed += 1
                elif job.status == JobStatus.TIMEOUT:
                    snapshot.timed_out += 1

        return snapshot

    def conditions(self, now: datetime, snapshot: HealthSnapshot) -> dict[AlertType, tuple[AlertSeverity, str]]:
        """Active conditions with the severity and message each would raise."""
        t = self.thresholds
        active: dict[AlertType, tuple[AlertSeverity, str]] = {}

        if snapshot.enabled_last_runs:
            runs = [r for r in snapshot.enabled_last_runs.values() if r is not None]
            reference = max(runs) if runs else snapshot.started_at
            if reference is not None:
                idle = now - reference
                if idle > timedelta(minutes=t.stall_timeout_minutes):
                    active[AlertType.ORCHESTRATOR_STALLED] = (
                        AlertSeverity.CRITICAL,
                        f"No research dispatched for {int(idle.total_seconds() // 60)} minutes",
                    )

        utilization = snapshot.budget_utilization
        config = self.budget.config
        if utilization >= config.critical_utilization:
            active[AlertType.BUDGET_THROTTLED] = (
                AlertSeverity.CRITICAL, f"Budget utilization at {utilization * 100:.1f}%",
            )
        elif utilization >= config.warning_utilization:
            active[AlertType.BUDGET_THROTTLED] = (
                AlertSeverity.WARNING, f"Budget utilization at {utilization * 100:.1f}%",
            )

        if snapshot.failure_rate > t.failure_rate:
            active[AlertType.HIGH_FAILURE_RATE] = (
                AlertSeverity.WARNING,
                f"Failure rate at {snapshot.failure_rate * 100:.1f}% "
                f"({snapshot.failed} failed, {snapshot.timed_out} timed out)",
            )

        if snapshot.recent_deferred >= t.backpressure_job_count:
            active[AlertType.BACKPRESSURE_BUILDING] = (
                AlertSeverity.WARNING,
                f"{snapshot.recent_deferred} jobs deferred in the last "
                f"{t.backpressure_window_minutes:g} minutes",
            )

        if snapshot.oldest_queued_at is not None:
            drift = now - snapshot.oldest_queued_at
            if drift > timedelta(minutes=t.scheduling_drift_minutes):
                active[AlertType.SCHEDULING_DRIFT] = (
                    AlertSeverity.WARNING,
                    f"Queued work is {int(drift.total_seconds() // 60)}min behind schedule",
                )

        return active

    # ==================== Lifecycle ====================

    def evaluate(self, now: Optional[datetime] = None, snapshot: Optional[HealthSnapshot] = None) -> list[Alert]:
        """Apply the current conditions to the stored alerts; return open alerts."""
        now = now or self.clock.now()
        if snapshot is None:
            snapshot = self.collect(now)

        active = self.conditions(now, snapshot)
        existing = {alert.type: alert for alert in self.state.get_alerts()}

        for alert_type in AlertType:
            alert = existing.get(alert_type)
            if alert_type in active:
                severity, message = active[alert_type]
                self._apply_active(alert_type, alert, severity, message, now)
            elif alert is not None:
                self._apply_cleared(alert, now)

        return self.open_alerts()

    def _apply_active(self, alert_type: AlertType, alert: Optional[Alert],
                      severity: AlertSeverity, message: str, now: datetime):
        if alert is None:
            alert = Alert.create(alert_type, severity, message, now)
            self.state.put_alert(alert)
            log.warning("research.alerts.raised",
                        alert_id=alert.id, type=alert_type.value,
                        severity=severity.value, message=message)
            return

        if alert.acknowledged:
            return

        if (alert.severity, alert.message, alert.resolved_at) != (severity, message, None):
            if alert.severity != severity:
                log.warning("research.alerts.severity_changed",
                            alert_id=alert.id, type=alert_type.value,
                            previous=alert.severity.value, severity=severity.value)
            alert.severity = severity
            alert.message = message
            alert.resolved_at = None
            self.state.put_alert(alert)

    def _apply_cleared(self, alert: Alert, now: datetime):
        if alert.acknowledged:
            self.state.remove_alert(alert.id)
            log.info("research.alerts.retired", alert_id=alert.id, type=alert.type.value)
        elif alert.resolved_at is None:
            alert.resolved_at = now
            self.state.put_alert(alert)
            log.info("research.alerts.resolved", alert_id=alert.id, type=alert.type.value)

    def acknowledge(self, alert_id: str, now: Optional[datetime] = None) -> Optional[Alert]:
        """
        Acknowledge an alert by id. Returns None for an unknown id.

        An alert whose condition already cleared is removed outright.
        """
        alert = self.state.data.alerts.get(alert_id)
        if alert is None:
            return None
        if alert.acknowledged:
            return alert

        alert.acknowledge(now or self.clock.now())
        if alert.resolved_at is not None:
            self.state.remove_alert(alert.id)
        else:
            self.state.put_alert(alert)

        log.info("research.alerts.acknowledged", alert_id=alert.id, type=alert.type.value)
        return alert

    def open_alerts(self) -> list[Alert]:
        """Unacknowledged alerts, newest first."""
        alerts = [a for a in self.state.get_alerts() if not a.acknowledged]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    @staticmethod
    def health_status(alerts: list[Alert]) -> str:
        """Overall status from the unresolved alerts."""
        live = [a for a in alerts if a.resolved_at is None and not a.acknowledged]
        if any(a.severity == AlertSeverity.CRITICAL for a in live):
            return CRITICAL
        if any(a.severity == AlertSeverity.WARNING for a in live):
            return DEGRADED
        return HEALTHY
