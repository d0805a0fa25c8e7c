"""
Backpressure and deferral policy.

Runs the admission chain for a candidate unit of work and turns any
rejection into a DEFERRED job carrying a readable reason. Deferral is a
first-class, queryable outcome that feeds the BACKPRESSURE_BUILDING alert
and the deferral-rate metric.
"""

from datetime import datetime
from typing import Optional

from shared.logging import get_logger

from .budget import BudgetGuard
from .concurrency import ConcurrencyLimiter
from .job_queue import JobQueue
from .models import MODE_COST_CLASS, Admission, JobStatus, ResearchJob, ResearchMode
from .resilience import CircuitBreaker
from .state import StateManager

log = get_logger("research", "backpressure")

SUBMISSIONS_COUNTER = "submissions"
DEFERRALS_COUNTER = "deferrals"


class AdmissionPolicy:
    """
    Admission control: circuit breaker, then budget, then concurrency.
    """

    def __init__(
        self,
        state_manager: StateManager,
        queue: JobQueue,
        budget: BudgetGuard,
        limiter: ConcurrencyLimiter,
        circuit: CircuitBreaker,
    ):
        self.state = state_manager
        self.queue = queue
        self.budget = budget
        self.limiter = limiter
        self.circuit = circuit

    def admit(self, mode: ResearchMode) -> Admission:
        """First rejection wins; allowed only if every gate allows."""
        checks = (
            self.circuit.authorize,
            lambda: self.budget.authorize(self.budget.estimate_cost(MODE_COST_CLASS[mode])),
            lambda: self.limiter.authorize(mode),
        )
        for check in checks:
            admission = check()
            if not admission.allowed:
                return admission
        return Admission.allow()

    def record_submission(self):
        self.state.increment_counter(SUBMISSIONS_COUNTER)

    def defer(self, job: ResearchJob, admission: Admission) -> ResearchJob:
        """Convert rejected work into a DEFERRED job."""
        self.queue.defer(job, admission.reason)
        self.state.increment_counter(DEFERRALS_COUNTER)
        log.warning("research.backpressure.deferred",
                    job_id=job.id, mode=job.mode.value,
                    reason=admission.reason, source=admission.source)
        return job

    def deferred_jobs(self, since: Optional[datetime] = None) -> list[ResearchJob]:
        return self.queue.jobs(status=JobStatus.DEFERRED, since=since)

    def deferral_rate(self) -> float:
        total = self.state.get_counter(SUBMISSIONS_COUNTER)
        if not total:
            return 0.0
        return self.state.get_counter(DEFERRALS_COUNTER) / total

    def get_status(self) -> dict:
        reasons: dict[str, int] = {}
        for job in self.deferred_jobs():
            reasons[job.deferred_reason] = reasons.get(job.deferred_reason, 0) + 1
        return {
            "submissions": int(self.state.get_counter(SUBMISSIONS_COUNTER)),
            "deferrals": int(self.state.get_counter(DEFERRALS_COUNTER)),
            "deferral_rate": self.deferral_rate(),
            "by_reason": reasons,
        }
