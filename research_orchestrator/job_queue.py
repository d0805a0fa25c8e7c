"""
Job Queue for the Research Orchestrator.

Owns the job lifecycle on top of the StateManager:
- QUEUED -> RUNNING -> COMPLETED | FAILED | TIMEOUT
- QUEUED -> DEFERRED (terminal for that attempt)
- Ordering: highest priority first, ties broken by earliest scheduled_for
"""

from datetime import datetime
from typing import Optional

from shared.logging import get_logger

from .clock import Clock
from .models import JobStatus, ResearchJob, ResearchMode
from .state import StateManager

log = get_logger("research", "queue")


def _queue_order(job: ResearchJob):
    scheduled = job.scheduled_for or job.created_at
    return (-job.priority, scheduled, job.created_at)


class JobQueue:
    """
    Priority queue and state machine for research jobs.

    Every status change is persisted before the method returns.
    """

    def __init__(self, state_manager: StateManager, clock: Clock):
        self.state = state_manager
        self.clock = clock

    def enqueue(self, job: ResearchJob) -> ResearchJob:
        """Persist a new QUEUED job."""
        if job.status != JobStatus.QUEUED:
            raise ValueError(f"Only QUEUED jobs can be enqueued, got {job.status.value}")
        self.state.add_job(job)
        log.info("research.queue.job_queued",
                 job_id=job.id, mode=job.mode.value, priority=job.priority)
        return job

    def defer(self, job: ResearchJob, reason: str) -> ResearchJob:
        """
        Record a job as DEFERRED.

        Accepts a fresh job (never persisted) or a persisted QUEUED one.
        """
        now = self.clock.now()
        is_new = self.state.get_job(job.id) is None
        job.mark_deferred(now, reason)
        if is_new:
            self.state.add_job(job)
        else:
            self.state.save_job(job)

        log.info("research.queue.job_deferred",
                 job_id=job.id, mode=job.mode.value, reason=reason)
        return job

    def queued_jobs(self, now: Optional[datetime] = None) -> list[ResearchJob]:
        """QUEUED jobs whose scheduled time has arrived, in dispatch order."""
        now = now or self.clock.now()
        ready = [
            j for j in self.state.get_jobs_by_status(JobStatus.QUEUED)
            if j.scheduled_for is None or j.scheduled_for <= now
        ]
        return sorted(ready, key=_queue_order)

    def next_job(self, mode: Optional[ResearchMode] = None) -> Optional[ResearchJob]:
        """Highest priority ready job, optionally restricted to a mode."""
        for job in self.queued_jobs():
            if mode is None or job.mode == mode:
                return job
        return None

    def claim_next(self, can_run=None) -> Optional[ResearchJob]:
        """
        Select the next runnable job and mark it RUNNING.

        can_run(job) lets the caller skip jobs it has no capacity for.
        No await happens between selection and the status change.
        """
        for job in self.queued_jobs():
            if can_run is not None and not can_run(job):
                continue
            self.mark_running(job)
            return job
        return None

    def mark_running(self, job: ResearchJob):
        job.mark_running(self.clock.now())
        self.state.save_job(job)
        log.info("research.queue.job_running", job_id=job.id, mode=job.mode.value)

    def mark_completed(self, job: ResearchJob, cost_usd: float, candidates_created: int):
        job.mark_completed(self.clock.now(), cost_usd=cost_usd, candidates_created=candidates_created)
        self.state.save_job(job)
        log.info("research.queue.job_completed",
                 job_id=job.id, mode=job.mode.value,
                 cost_usd=cost_usd, candidates_created=candidates_created)

    def mark_failed(self, job: ResearchJob, error: str, cost_usd: float = 0.0):
        job.mark_failed(self.clock.now(), error, cost_usd=cost_usd)
        self.state.save_job(job)
        log.warning("research.queue.job_failed",
                    job_id=job.id, mode=job.mode.value, error=error)

    def mark_timeout(self, job: ResearchJob, error: str):
        job.mark_timeout(self.clock.now(), error)
        self.state.save_job(job)
        log.warning("research.queue.job_timeout",
                    job_id=job.id, mode=job.mode.value, error=error)

    def record_attempt(self, job: ResearchJob):
        job.attempts += 1
        job.updated_at = self.clock.now()
        self.state.save_job(job)

    def get(self, job_id: str) -> Optional[ResearchJob]:
        return self.state.get_job(job_id)

    def jobs(
        self,
        status: Optional[JobStatus] = None,
        mode: Optional[ResearchMode] = None,
        limit: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> list[ResearchJob]:
        """Jobs matching the filters, newest first."""
        result = [
            j for j in self.state.get_all_jobs()
            if (status is None or j.status == status)
            and (mode is None or j.mode == mode)
            and (since is None or j.created_at >= since)
        ]
        result.sort(key=lambda j: j.created_at, reverse=True)
        if limit is not None:
            result = result[:limit]
        return result

    def counts_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self.state.get_all_jobs():
            counts[job.status.value] += 1
        return counts

    def get_queue_stats(self) -> dict:
        """Get statistics about the job queue."""
        all_jobs = self.state.get_all_jobs()

        by_mode = {}
        for job in all_jobs:
            by_mode[job.mode.value] = by_mode.get(job.mode.value, 0) + 1

        return {
            "total": len(all_jobs),
            "by_status": self.counts_by_status(),
            "by_mode": by_mode,
            "ready": len(self.queued_jobs()),
        }
