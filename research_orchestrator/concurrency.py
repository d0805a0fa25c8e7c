"""
Concurrency Limiter for the Research Orchestrator.

Bounds how many jobs are RUNNING at once, globally and optionally per
mode. Running-job bookkeeping is in memory only: after a crash the
recovery pass re-classifies leftover RUNNING jobs instead.
"""

from typing import Optional

from shared.logging import get_logger

from .config import ConcurrencyConfig
from .models import Admission, ResearchJob, ResearchMode

log = get_logger("research", "concurrency")


class ConcurrencyLimiter:
    """
    Tracks running jobs and gates admission on the configured ceilings.

    acquire() and release() are the only mutators.
    """

    def __init__(self, config: Optional[ConcurrencyConfig] = None):
        self.config = config or ConcurrencyConfig()
        self._running: dict[str, ResearchMode] = {}
        self.peak_running = 0

    @property
    def max_concurrent(self) -> int:
        return self.config.max_concurrent_jobs

    def running_count(self) -> int:
        return len(self._running)

    def running_for(self, mode: ResearchMode) -> int:
        return sum(1 for m in self._running.values() if m == mode)

    def has_capacity(self, mode: Optional[ResearchMode] = None) -> bool:
        return self.authorize(mode).allowed

    def authorize(self, mode: Optional[ResearchMode] = None) -> Admission:
        """Check whether another job (of this mode) may run now."""
        if self.running_count() >= self.config.max_concurrent_jobs:
            return Admission.defer("Max concurrent jobs reached", source="concurrency")

        if mode is not None:
            limit = self.config.per_mode_limits.get(mode)
            if limit is not None and self.running_for(mode) >= limit:
                return Admission.defer(f"Max concurrent {mode.value} jobs reached", source="concurrency")

        return Admission.allow()

    def acquire(self, job: ResearchJob) -> bool:
        """Reserve a running slot for a job. Returns False if none is free."""
        if job.id in self._running:
            return True
        if not self.authorize(job.mode).allowed:
            return False

        self._running[job.id] = job.mode
        self.peak_running = max(self.peak_running, len(self._running))
        log.debug("research.concurrency.acquired",
                  job_id=job.id, running=len(self._running))
        return True

    def release(self, job: ResearchJob):
        """Free a job's running slot. Releasing an unknown job is a no-op."""
        if self._running.pop(job.id, None) is not None:
            log.debug("research.concurrency.released",
                      job_id=job.id, running=len(self._running))

    def get_status(self) -> dict:
        return {
            "running": self.running_count(),
            "max_concurrent": self.config.max_concurrent_jobs,
            "peak_running": self.peak_running,
            "by_mode": {
                mode.value: self.running_for(mode) for mode in ResearchMode
            },
        }
