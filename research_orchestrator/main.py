"""
Main Research Orchestrator.

Ties together all orchestrator components:
- StateManager: WAL + checkpoint persistence
- CadenceController: which modes are due on a tick
- AdmissionPolicy: circuit breaker, BudgetGuard, ConcurrencyLimiter
- FingerprintStore: dedup of proposed work and of returned candidates
- JobQueue + WorkerPool: priority queue drained against the provider
- AlertEngine: health conditions and acknowledgeable alerts
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from shared.logging import get_logger, correlation_context

from .alerts import AlertEngine
from .backpressure import AdmissionPolicy, DEFERRALS_COUNTER, SUBMISSIONS_COUNTER
from .budget import BUDGET_RESETS_COUNTER, BudgetGuard
from .cadence import CadenceController
from .clock import Clock, SystemClock
from .concurrency import ConcurrencyLimiter
from .config import OrchestratorConfig
from .fingerprints import FingerprintStore, compute_fingerprint
from .job_queue import JobQueue
from .models import (
    Alert,
    JobStatus,
    ResearchJob,
    ResearchMode,
    Submission,
    SubmissionOutcome,
)
from .providers import ResearchProvider
from .resilience import CircuitBreaker
from .state import StateManager
from .worker import WorkerPool

log = get_logger("research", "orchestrator")

RESTART_ERROR = "Interrupted by orchestrator restart"
STARTS_COUNTER = "starts"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

ContextBuilder = Callable[[ResearchMode, datetime], dict]


class Orchestrator:
    """
    Research job orchestrator.

    Provides:
    - Cadence-driven and manual submission of research work
    - Admission control with deferral instead of silent drops
    - Work deduplication inside the TTL window
    - Worker pool execution with retries and timeouts
    - State persistence with crash recovery
    - Health, soak metrics and alerts for the dashboard
    """

    def __init__(
        self,
        provider: ResearchProvider,
        config: Optional[OrchestratorConfig] = None,
        state_manager: Optional[StateManager] = None,
        data_dir: str = "data/research_orchestrator",
        clock: Optional[Clock] = None,
        context_builder: Optional[ContextBuilder] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.clock = clock or SystemClock()
        self.provider = provider
        self.context_builder = context_builder

        self.state = state_manager or StateManager(
            checkpoint_dir=str(Path(data_dir)),
            checkpoint_interval=self.config.checkpoint_interval_seconds,
        )

        self.cadence = CadenceController(self.config.cadence)
        self.budget = BudgetGuard(self.state, self.clock, self.config.budget)
        self.limiter = ConcurrencyLimiter(self.config.concurrency)
        self.circuit = CircuitBreaker.from_config(self.clock, self.config.retry)
        self.queue = JobQueue(self.state, self.clock)

        self.work_fingerprints = FingerprintStore(
            self.state, self.clock, ttl_hours=self.config.dedup.ttl_hours, namespace="work",
        )
        self.candidate_fingerprints = FingerprintStore(
            self.state, self.clock, ttl_hours=self.config.dedup.ttl_hours, namespace="candidate",
        )

        self.admission = AdmissionPolicy(
            self.state, self.queue, self.budget, self.limiter, self.circuit,
        )
        self.alerts = AlertEngine(self.state, self.budget, self.clock, self.config.alerts)

        self.workers = WorkerPool(
            queue=self.queue,
            limiter=self.limiter,
            budget=self.budget,
            circuit=self.circuit,
            admission=self.admission,
            provider=self.provider,
            candidate_store=self.candidate_fingerprints,
            clock=self.clock,
            retry=self.config.retry,
            size=self.config.concurrency.max_concurrent_jobs,
            poll_interval=self.config.worker_poll_interval_seconds,
        )

        self._tick_lock = asyncio.Lock()
        self._last_staggered_dispatch: Optional[datetime] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_tasks: list[asyncio.Task] = []
        self._initialized = False
        self._running = False

    # ==================== Lifecycle ====================

    def initialize(self):
        """
        Load persisted state and run the recovery pass.

        Safe to call more than once; start() calls it if needed.
        """
        if self._initialized:
            return

        if not self.state.loaded:
            self.state.load()

        recovered = self.recover_interrupted_jobs()

        now = self.clock.now()
        orchestrator = self.state.orchestrator
        orchestrator.started_at = now
        self.state.save_orchestrator()
        self.state.increment_counter(STARTS_COUNTER)
        self.budget.maybe_reset(now)

        self._initialized = True
        log.info("research.orchestrator.initialized",
                 jobs=len(self.state.data.jobs),
                 recovered=recovered,
                 full_spectrum=orchestrator.is_full_spectrum_enabled,
                 enabled_modes=sorted(m.value for m in orchestrator.enabled_modes))

    def recover_interrupted_jobs(self) -> int:
        """Mark jobs left RUNNING by a previous process as FAILED."""
        now = self.clock.now()
        interrupted = self.state.get_jobs_by_status(JobStatus.RUNNING)
        for job in interrupted:
            job.mark_failed(now, RESTART_ERROR)
            self.state.save_job(job)
            log.warning("research.orchestrator.job_recovered",
                        job_id=job.id, mode=job.mode.value)
        return len(interrupted)

    async def start(self):
        """Start persistence, the worker pool and the periodic loops."""
        if self._running:
            return

        log.info("research.orchestrator.starting",
                 data_dir=str(self.state.checkpoint_dir),
                 workers=self.config.concurrency.max_concurrent_jobs)

        self.initialize()
        await self.state.startup()
        await self.provider.start()
        await self.workers.start()

        self._loop = asyncio.get_running_loop()
        self._running = True
        self._loop_tasks = [
            asyncio.create_task(self._periodic(self.tick, self.config.tick_interval_seconds, "tick")),
            asyncio.create_task(self._periodic(
                self.evaluate_alerts, self.config.alert_interval_seconds, "alerts")),
            asyncio.create_task(self._periodic(
                self.sweep_fingerprints, self.config.dedup.sweep_interval_seconds, "sweep")),
        ]

        log.info("research.orchestrator.started")

    async def stop(self):
        """Stop loops and workers, then flush a final checkpoint."""
        if not self._running:
            return

        log.info("research.orchestrator.stopping")
        self._running = False

        for task in self._loop_tasks:
            task.cancel()
        for task in self._loop_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_tasks.clear()

        await self.workers.stop()
        await self.provider.close()
        await self.state.shutdown()
        self._loop = None

        log.info("research.orchestrator.stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def _periodic(self, step, interval: float, name: str):
        while self._running:
            try:
                result = step()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, f"research.orchestrator.{name}_error", {})
            await asyncio.sleep(interval)

    def run_command(self, fn, *args, timeout: float = 10.0):
        """
        Run fn(*args) on the orchestrator's event loop and return its result.

        Used by the HTTP API thread so that state keeps a single writer.
        Without a running loop (tests, one-shot scripts) fn runs inline.
        """
        loop = self._loop
        if loop is None or not loop.is_running():
            return fn(*args)

        try:
            if asyncio.get_running_loop() is loop:
                return fn(*args)
        except RuntimeError:
            pass

        async def _call():
            return fn(*args)

        return asyncio.run_coroutine_threadsafe(_call(), loop).result(timeout=timeout)

    # ==================== Scheduling ====================

    async def tick(self) -> list[Submission]:
        """One scheduler pass: daily reset, due modes, submissions."""
        async with self._tick_lock:
            with correlation_context() as cid:
                now = self.clock.now()
                self.budget.maybe_reset(now)

                orchestrator = self.state.orchestrator
                modes = self.cadence.select_dispatch(now, orchestrator, self._last_staggered_dispatch)
                if not modes:
                    return []

                log.info("research.orchestrator.tick",
                         correlation_id=cid, due=[m.value for m in modes])

                submissions = []
                for mode in modes:
                    submission = self.submit(mode, source="cadence")
                    if submission.dispatched and orchestrator.is_full_spectrum_enabled:
                        self._last_staggered_dispatch = now
                    submissions.append(submission)
                return submissions

    def build_context(self, mode: ResearchMode, now: datetime) -> dict:
        """
        Provider payload for a scheduled run.

        Includes the start of the mode's cadence window, so repeat
        submissions for the same window share a fingerprint.
        """
        interval = self.cadence.interval(mode)
        windows = (now - _EPOCH) // interval
        context = {"window_start": (_EPOCH + windows * interval).isoformat()}
        if self.context_builder:
            context.update(self.context_builder(mode, now))
        return context

    def submit(self, mode: ResearchMode, context: Optional[dict] = None,
               source: str = "manual") -> Submission:
        """
        Offer one unit of work: admission, then dedup, then queue.

        A deferral leaves the mode's last-run time alone so a later tick
        submits fresh work. A duplicate advances it: the work is covered.
        """
        now = self.clock.now()
        if context is None:
            context = self.build_context(mode, now)

        fingerprint = compute_fingerprint(mode, context)
        self.admission.record_submission()

        admission = self.admission.admit(mode)
        if not admission.allowed:
            job = ResearchJob.create(mode, now, context, fingerprint)
            self.admission.defer(job, admission)
            return Submission(mode, SubmissionOutcome.DEFERRED, fingerprint,
                              job=job, reason=admission.reason)

        check = self.work_fingerprints.check_and_record(fingerprint)
        if check.is_duplicate:
            self.state.record_dispatch(mode, now)
            log.info("research.orchestrator.duplicate_skipped",
                     mode=mode.value, fingerprint=fingerprint,
                     hit_count=check.hit_count, source=source)
            return Submission(mode, SubmissionOutcome.DUPLICATE, fingerprint,
                              reason="Duplicate of work inside the dedup window")

        job = ResearchJob.create(mode, now, context, fingerprint)
        self.state.record_dispatch(mode, now, job)
        self.workers.wake()

        log.info("research.orchestrator.job_queued",
                 job_id=job.id, mode=mode.value, priority=job.priority,
                 source=source, trace_id=job.trace_id)
        return Submission(mode, SubmissionOutcome.QUEUED, fingerprint, job=job)

    def evaluate_alerts(self) -> list[Alert]:
        return self.alerts.evaluate(self.clock.now())

    def sweep_fingerprints(self) -> int:
        # Work and candidate fingerprints share storage; one sweep covers both
        return self.work_fingerprints.sweep(self.clock.now())

    # ==================== Commands ====================

    def trigger_mode(self, mode: ResearchMode) -> Submission:
        """Submit a mode now, regardless of cadence."""
        log.info("research.orchestrator.manual_trigger", mode=mode.value)
        return self.submit(mode, source="manual")

    def set_full_spectrum(self, enabled: bool):
        orchestrator = self.state.orchestrator
        if orchestrator.is_full_spectrum_enabled == enabled:
            return
        orchestrator.is_full_spectrum_enabled = enabled
        self.state.save_orchestrator()
        if not enabled:
            self._last_staggered_dispatch = None
        log.info("research.orchestrator.full_spectrum_changed", enabled=enabled)

    def set_mode_enabled(self, mode: ResearchMode, enabled: bool):
        """Enable or disable one mode. Running jobs are never interrupted."""
        modes = self.state.orchestrator.enabled_modes
        if (mode in modes) == enabled:
            return
        if enabled:
            modes.add(mode)
        else:
            modes.discard(mode)
        self.state.save_orchestrator()
        log.info("research.orchestrator.mode_changed", mode=mode.value, enabled=enabled)

    def acknowledge_alert(self, alert_id: str) -> Optional[Alert]:
        return self.alerts.acknowledge(alert_id, self.clock.now())

    # ==================== Queries ====================

    def get_state_snapshot(self) -> dict:
        now = self.clock.now()
        orchestrator = self.state.orchestrator
        return {
            "is_running": self._running,
            "orchestrator": orchestrator.to_dict(),
            "active_modes": sorted(m.value for m in orchestrator.active_modes()),
            "schedule": self.cadence.schedule(now, orchestrator),
            "queue": self.queue.get_queue_stats(),
            "concurrency": self.limiter.get_status(),
            "circuit": self.circuit.get_status(),
            "workers": self.workers.get_status(),
            "backpressure": self.admission.get_status(),
        }

    def get_budget_status(self) -> dict:
        return self.budget.get_status()

    def get_recent_jobs(
        self,
        status: Optional[JobStatus] = None,
        mode: Optional[ResearchMode] = None,
        limit: int = 20,
    ) -> list[ResearchJob]:
        return self.queue.jobs(status=status, mode=mode, limit=limit)

    def get_job(self, job_id: str) -> Optional[ResearchJob]:
        return self.queue.get(job_id)

    def get_open_alerts(self) -> list[Alert]:
        return self.alerts.open_alerts()

    def _finished_since(self, since: datetime) -> list[ResearchJob]:
        return [
            j for j in self.state.get_all_jobs()
            if j.completed_at is not None and j.completed_at >= since
        ]

    @staticmethod
    def _average_duration_ms(jobs: list[ResearchJob]) -> float:
        durations = [j.duration_seconds for j in jobs if j.duration_seconds is not None]
        if not durations:
            return 0.0
        return sum(durations) / len(durations) * 1000

    def get_health(self) -> dict:
        """Health summary for the dashboard."""
        now = self.clock.now()
        orchestrator = self.state.orchestrator
        alerts = self.alerts.open_alerts()
        counts = self.queue.counts_by_status()

        finished = self._finished_since(now - timedelta(hours=24))
        completed = [j for j in finished if j.status == JobStatus.COMPLETED]

        next_runs = [
            self.cadence.next_run_at(mode, orchestrator) or now
            for mode in orchestrator.active_modes()
        ]
        started_at = orchestrator.started_at

        return {
            "status": self.alerts.health_status(alerts),
            "is_running": self._running,
            "is_full_spectrum": orchestrator.is_full_spectrum_enabled,
            "enabled_modes": sorted(m.value for m in orchestrator.active_modes()),
            "uptime_seconds": (now - started_at).total_seconds() if started_at else 0.0,
            "jobs": {
                "running": counts[JobStatus.RUNNING.value],
                "queued": counts[JobStatus.QUEUED.value],
                "deferred": counts[JobStatus.DEFERRED.value],
                "completed_24h": len(completed),
                "failed_24h": sum(1 for j in finished if j.status == JobStatus.FAILED),
                "timeout_24h": sum(1 for j in finished if j.status == JobStatus.TIMEOUT),
                "average_latency_ms": round(self._average_duration_ms(completed), 2),
            },
            "budget": self.budget.get_status(),
            "scheduling": {
                "last_sentiment_at": _iso(orchestrator.last_sentiment_at),
                "last_contrarian_at": _iso(orchestrator.last_contrarian_at),
                "last_deep_reasoning_at": _iso(orchestrator.last_deep_reasoning_at),
                "next_scheduled_run": _iso(min(next_runs)) if next_runs else None,
            },
            "circuit": self.circuit.get_status(),
            "alerts": [a.to_dict() for a in alerts],
        }

    def get_soak_metrics(self) -> dict:
        """Long-run counters used to judge soak runs."""
        now = self.clock.now()
        started_at = self.state.orchestrator.started_at
        jobs = self.state.get_all_jobs()
        processed = [
            j for j in jobs
            if j.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT)
        ]

        submissions = int(self.state.get_counter(SUBMISSIONS_COUNTER))
        work_stats = self.work_fingerprints.stats()
        candidate_stats = self.candidate_fingerprints.stats()
        duplicates = work_stats["duplicates_blocked"]

        return {
            "uptime_hours": round((now - started_at).total_seconds() / 3600, 3) if started_at else 0.0,
            "total_submissions": submissions,
            "total_jobs_processed": len(processed),
            "total_candidates_generated": sum(j.candidates_created for j in processed),
            "average_job_duration_ms": round(self._average_duration_ms(processed), 2),
            "peak_concurrent_jobs": self.limiter.peak_running,
            "deduplication_hits": duplicates,
            "dedup_efficiency": duplicates / submissions if submissions else 0.0,
            "candidate_duplicates": candidate_stats["duplicates_blocked"],
            "deferrals": int(self.state.get_counter(DEFERRALS_COUNTER)),
            "deferral_rate": self.admission.deferral_rate(),
            "fingerprints_tracked": work_stats["size"],
            "budget_resets": int(self.state.get_counter(BUDGET_RESETS_COUNTER)),
            "restarts": max(0, int(self.state.get_counter(STARTS_COUNTER)) - 1),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
