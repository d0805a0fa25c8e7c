"""
Data models for the Research Orchestrator.

Jobs, orchestrator state, fingerprints and alerts are plain dataclasses
that serialize to JSON-safe dicts for the checkpoint and WAL.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from .clock import ensure_utc
from .errors import InvalidTransitionError


class ResearchMode(str, Enum):
    """Research cadence modes."""
    SENTIMENT_BURST = "SENTIMENT_BURST"
    CONTRARIAN_SCAN = "CONTRARIAN_SCAN"
    DEEP_REASONING = "DEEP_REASONING"


class CostClass(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class JobStatus(str, Enum):
    """Job lifecycle states."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    DEFERRED = "DEFERRED"


class AlertType(str, Enum):
    ORCHESTRATOR_STALLED = "ORCHESTRATOR_STALLED"
    BUDGET_THROTTLED = "BUDGET_THROTTLED"
    HIGH_FAILURE_RATE = "HIGH_FAILURE_RATE"
    BACKPRESSURE_BUILDING = "BACKPRESSURE_BUILDING"
    SCHEDULING_DRIFT = "SCHEDULING_DRIFT"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# Per-mode cadence (minutes between runs)
DEFAULT_INTERVALS_MINUTES = {
    ResearchMode.SENTIMENT_BURST: 30.0,
    ResearchMode.CONTRARIAN_SCAN: 120.0,
    ResearchMode.DEEP_REASONING: 360.0,
}

# Higher = scheduled first. Sentiment is the most time sensitive.
MODE_PRIORITIES = {
    ResearchMode.SENTIMENT_BURST: 80,
    ResearchMode.CONTRARIAN_SCAN: 60,
    ResearchMode.DEEP_REASONING: 40,
}

MODE_COST_CLASS = {
    ResearchMode.SENTIMENT_BURST: CostClass.LOW,
    ResearchMode.CONTRARIAN_SCAN: CostClass.MEDIUM,
    ResearchMode.DEEP_REASONING: CostClass.HIGH,
}

# Minute-of-hour offsets used when minute-slot staggering is enabled
STAGGER_SLOTS = {
    ResearchMode.SENTIMENT_BURST: 5,    # :05 and :35
    ResearchMode.CONTRARIAN_SCAN: 20,
    ResearchMode.DEEP_REASONING: 50,
}

DEFAULT_ESTIMATED_COSTS = {
    CostClass.LOW: 0.05,
    CostClass.MEDIUM: 0.25,
    CostClass.HIGH: 1.00,
}

TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.TIMEOUT,
    JobStatus.DEFERRED,
})

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.DEFERRED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT}),
}


def dump_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def load_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


@dataclass
class ResearchJob:
    """
    A unit of scheduled research work.

    Status only moves along ALLOWED_TRANSITIONS. Terminal jobs are kept
    for audit and metrics; a deferred unit of work is resubmitted as a
    new job rather than resumed.
    """
    id: str
    mode: ResearchMode
    status: JobStatus
    priority: int
    cost_class: CostClass
    created_at: datetime
    updated_at: datetime

    cost_usd: float = 0.0
    candidates_created: int = 0

    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    error_message: Optional[str] = None
    deferred_reason: Optional[str] = None

    # Dedup hash of the proposed work
    fingerprint_hash: Optional[str] = None

    # Payload handed to the research provider
    context: dict = field(default_factory=dict)

    # Provider calls made (first call + retries)
    attempts: int = 0

    trace_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def create(
        cls,
        mode: ResearchMode,
        now: datetime,
        context: Optional[dict] = None,
        fingerprint_hash: Optional[str] = None,
        priority: Optional[int] = None,
    ) -> "ResearchJob":
        """New QUEUED job for a mode, scheduled for now."""
        return cls(
            id=str(uuid.uuid4()),
            mode=mode,
            status=JobStatus.QUEUED,
            priority=MODE_PRIORITIES[mode] if priority is None else priority,
            cost_class=MODE_COST_CLASS[mode],
            created_at=now,
            updated_at=now,
            scheduled_for=now,
            fingerprint_hash=fingerprint_hash,
            context=dict(context or {}),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        """FAILED and TIMEOUT both count against the failure rate."""
        return self.status in (JobStatus.FAILED, JobStatus.TIMEOUT)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def _transition(self, target: JobStatus, now: datetime):
        if target not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        self.status = target
        self.updated_at = now

    def mark_running(self, now: datetime):
        self._transition(JobStatus.RUNNING, now)
        self.started_at = now

    def mark_completed(self, now: datetime, cost_usd: float = 0.0, candidates_created: int = 0):
        self._transition(JobStatus.COMPLETED, now)
        self.completed_at = now
        self.cost_usd = cost_usd
        self.candidates_created = candidates_created

    def mark_failed(self, now: datetime, error: str, cost_usd: float = 0.0):
        self._transition(JobStatus.FAILED, now)
        self.completed_at = now
        self.error_message = error
        self.cost_usd = cost_usd

    def mark_timeout(self, now: datetime, error: str = "Execution timed out"):
        self._transition(JobStatus.TIMEOUT, now)
        self.completed_at = now
        self.error_message = error

    def mark_deferred(self, now: datetime, reason: str):
        self._transition(JobStatus.DEFERRED, now)
        self.deferred_reason = reason

    def to_dict(self) -> dict:
        """Serialize job to dictionary."""
        return {
            "id": self.id,
            "mode": self.mode.value,
            "status": self.status.value,
            "priority": self.priority,
            "cost_class": self.cost_class.value,
            "cost_usd": self.cost_usd,
            "candidates_created": self.candidates_created,
            "scheduled_for": dump_dt(self.scheduled_for),
            "started_at": dump_dt(self.started_at),
            "completed_at": dump_dt(self.completed_at),
            "error_message": self.error_message,
            "deferred_reason": self.deferred_reason,
            "fingerprint_hash": self.fingerprint_hash,
            "context": self.context,
            "attempts": self.attempts,
            "trace_id": self.trace_id,
            "created_at": dump_dt(self.created_at),
            "updated_at": dump_dt(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResearchJob":
        """Deserialize job from dictionary."""
        return cls(
            id=data["id"],
            mode=ResearchMode(data["mode"]),
            status=JobStatus(data["status"]),
            priority=data["priority"],
            cost_class=CostClass(data["cost_class"]),
            cost_usd=data.get("cost_usd", 0.0),
            candidates_created=data.get("candidates_created", 0),
            scheduled_for=load_dt(data.get("scheduled_for")),
            started_at=load_dt(data.get("started_at")),
            completed_at=load_dt(data.get("completed_at")),
            error_message=data.get("error_message"),
            deferred_reason=data.get("deferred_reason"),
            fingerprint_hash=data.get("fingerprint_hash"),
            context=data.get("context", {}),
            attempts=data.get("attempts", 0),
            trace_id=data.get("trace_id") or str(uuid.uuid4()),
            created_at=load_dt(data["created_at"]),
            updated_at=load_dt(data.get("updated_at") or data["created_at"]),
        )


_LAST_RUN_FIELDS = {
    ResearchMode.SENTIMENT_BURST: "last_sentiment_at",
    ResearchMode.CONTRARIAN_SCAN: "last_contrarian_at",
    ResearchMode.DEEP_REASONING: "last_deep_reasoning_at",
}


@dataclass
class OrchestratorState:
    """
    Process-wide orchestrator state, persisted with the checkpoint.

    The last-run timestamps survive the daily budget reset; only the
    daily counters are cleared.
    """
    is_full_spectrum_enabled: bool = False
    last_sentiment_at: Optional[datetime] = None
    last_contrarian_at: Optional[datetime] = None
    last_deep_reasoning_at: Optional[datetime] = None
    daily_cost_usd: float = 0.0
    daily_job_count: int = 0
    budget_reset_at: Optional[datetime] = None

    # Modes scheduled individually while full spectrum is off
    enabled_modes: set[ResearchMode] = field(default_factory=set)

    started_at: Optional[datetime] = None

    def last_run_at(self, mode: ResearchMode) -> Optional[datetime]:
        return getattr(self, _LAST_RUN_FIELDS[mode])

    def set_last_run(self, mode: ResearchMode, at: datetime):
        setattr(self, _LAST_RUN_FIELDS[mode], at)

    def active_modes(self) -> set[ResearchMode]:
        """Modes the cadence controller may dispatch."""
        if self.is_full_spectrum_enabled:
            return set(ResearchMode)
        return set(self.enabled_modes)

    def to_dict(self) -> dict:
        return {
            "is_full_spectrum_enabled": self.is_full_spectrum_enabled,
            "last_sentiment_at": dump_dt(self.last_sentiment_at),
            "last_contrarian_at": dump_dt(self.last_contrarian_at),
            "last_deep_reasoning_at": dump_dt(self.last_deep_reasoning_at),
            "daily_cost_usd": self.daily_cost_usd,
            "daily_job_count": self.daily_job_count,
            "budget_reset_at": dump_dt(self.budget_reset_at),
            "enabled_modes": sorted(m.value for m in self.enabled_modes),
            "started_at": dump_dt(self.started_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrchestratorState":
        return cls(
            is_full_spectrum_enabled=data.get("is_full_spectrum_enabled", False),
            last_sentiment_at=load_dt(data.get("last_sentiment_at")),
            last_contrarian_at=load_dt(data.get("last_contrarian_at")),
            last_deep_reasoning_at=load_dt(data.get("last_deep_reasoning_at")),
            daily_cost_usd=data.get("daily_cost_usd", 0.0),
            daily_job_count=data.get("daily_job_count", 0),
            budget_reset_at=load_dt(data.get("budget_reset_at")),
            enabled_modes={ResearchMode(m) for m in data.get("enabled_modes", [])},
            started_at=load_dt(data.get("started_at")),
        )


@dataclass
class BudgetState:
    """Snapshot of the daily cost ledger."""
    daily_budget_usd: float
    used_today_usd: float

    @property
    def utilization(self) -> float:
        if self.daily_budget_usd <= 0:
            return 1.0
        return self.used_today_usd / self.daily_budget_usd

    @property
    def remaining_usd(self) -> float:
        return max(0.0, self.daily_budget_usd - self.used_today_usd)


@dataclass
class CandidateFingerprint:
    """Dedup record for one content hash."""
    fingerprint_hash: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    hit_count: int = 1

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "fingerprint_hash": self.fingerprint_hash,
            "hit_count": self.hit_count,
            "created_at": dump_dt(self.created_at),
            "last_seen_at": dump_dt(self.last_seen_at),
            "expires_at": dump_dt(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CandidateFingerprint":
        return cls(
            fingerprint_hash=data["fingerprint_hash"],
            hit_count=data.get("hit_count", 1),
            created_at=load_dt(data["created_at"]),
            last_seen_at=load_dt(data["last_seen_at"]),
            expires_at=load_dt(data["expires_at"]),
        )


@dataclass
class Alert:
    """
    Operational alert derived from live metrics.

    Only acknowledgement mutates an alert; the engine never drops an
    unacknowledged one.
    """
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    created_at: datetime
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None
    # Condition cleared while still unacknowledged
    resolved_at: Optional[datetime] = None

    @classmethod
    def create(cls, alert_type: AlertType, severity: AlertSeverity,
               message: str, now: datetime) -> "Alert":
        return cls(
            id=f"{alert_type.value}-{uuid.uuid4().hex[:12]}",
            type=alert_type,
            severity=severity,
            message=message,
            created_at=now,
        )

    def acknowledge(self, now: datetime):
        self.acknowledged = True
        self.acknowledged_at = now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "acknowledged": self.acknowledged,
            "acknowledged_at": dump_dt(self.acknowledged_at),
            "created_at": dump_dt(self.created_at),
            "resolved_at": dump_dt(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Alert":
        return cls(
            id=data["id"],
            type=AlertType(data["type"]),
            severity=AlertSeverity(data["severity"]),
            message=data["message"],
            acknowledged=data.get("acknowledged", False),
            acknowledged_at=load_dt(data.get("acknowledged_at")),
            created_at=load_dt(data["created_at"]),
            resolved_at=load_dt(data.get("resolved_at")),
        )


@dataclass
class Admission:
    """Outcome of an admission check: allowed, or deferred with a reason."""
    allowed: bool
    reason: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def allow(cls) -> "Admission":
        return cls(allowed=True)

    @classmethod
    def defer(cls, reason: str, source: str) -> "Admission":
        return cls(allowed=False, reason=reason, source=source)


class SubmissionOutcome(str, Enum):
    QUEUED = "queued"
    DEFERRED = "deferred"
    DUPLICATE = "duplicate"


@dataclass
class Submission:
    """What happened to one unit of work offered to the orchestrator."""
    mode: ResearchMode
    outcome: SubmissionOutcome
    fingerprint_hash: str
    # None for duplicates: no job is created for already-covered work
    job: Optional[ResearchJob] = None
    reason: Optional[str] = None

    @property
    def dispatched(self) -> bool:
        """Queued or duplicate: the mode counts as serviced."""
        return self.outcome != SubmissionOutcome.DEFERRED

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "outcome": self.outcome.value,
            "fingerprint_hash": self.fingerprint_hash,
            "job": self.job.to_dict() if self.job else None,
            "reason": self.reason,
        }
