"""
Worker pool for the Research Orchestrator.

A fixed number of worker loops (max_concurrent_jobs) drain the job queue:
1. Claim the highest priority ready job the limiter has room for
2. Call the research provider, bounded by a deadline for the whole job
3. Retry transient failures with exponential backoff
4. Write back the terminal state, cost and deduplicated candidates

While the provider circuit is open, ready jobs are deferred rather than
claimed.

Claiming (select, RUNNING transition, limiter acquire) has no await in
it, so two workers can never claim the same job.
"""

import asyncio
from typing import Optional

from shared.logging import get_logger, correlation_context

from .backpressure import AdmissionPolicy
from .budget import BudgetGuard
from .clock import Clock
from .concurrency import ConcurrencyLimiter
from .config import RetryConfig
from .errors import CircuitOpenError, ProviderError, TransientProviderError
from .fingerprints import FingerprintStore, compute_candidate_fingerprint
from .job_queue import JobQueue
from .models import Admission, ResearchJob
from .providers import ProviderResult, ResearchProvider
from .resilience import CircuitBreaker, backoff_delay_ms

log = get_logger("research", "worker")

SHUTDOWN_ERROR = "Interrupted by orchestrator shutdown"


class WorkerPool:
    """
    Runs research jobs against the provider.
    """

    def __init__(
        self,
        queue: JobQueue,
        limiter: ConcurrencyLimiter,
        budget: BudgetGuard,
        circuit: CircuitBreaker,
        admission: AdmissionPolicy,
        provider: ResearchProvider,
        candidate_store: FingerprintStore,
        clock: Clock,
        retry: Optional[RetryConfig] = None,
        size: Optional[int] = None,
        poll_interval: float = 2.0,
    ):
        self.queue = queue
        self.limiter = limiter
        self.budget = budget
        self.circuit = circuit
        self.admission = admission
        self.provider = provider
        self.candidate_store = candidate_store
        self.clock = clock
        self.retry = retry or RetryConfig()
        self.size = size or limiter.max_concurrent
        self.poll_interval = poll_interval

        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._wakeup = asyncio.Event()
        self._in_flight: dict[str, ResearchJob] = {}

    async def start(self):
        """Start the worker loops."""
        if self._running:
            return

        self._running = True
        self._wakeup = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker_loop(i)) for i in range(self.size)
        ]
        log.info("research.worker_pool.started", workers=self.size)

    async def stop(self):
        """Stop all worker loops. Jobs cut off mid-call are marked FAILED."""
        self._running = False

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        log.info("research.worker_pool.stopped")

    def wake(self):
        """Signal idle workers that new work was queued."""
        self._wakeup.set()

    async def _worker_loop(self, worker_id: int):
        while self._running:
            try:
                job = self.claim()
                if job is None:
                    # No await between the empty claim and clear(), so no wakeup is lost
                    self._wakeup.clear()
                    try:
                        await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        pass
                    continue

                await self.run_job(job)

            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "research.worker.loop_error", {"worker_id": worker_id})
                await asyncio.sleep(self.poll_interval)

    def claim(self) -> Optional[ResearchJob]:
        """
        Claim the next job there is capacity for, or None.

        An open circuit defers every ready job. In half-open only one job
        is claimed, and it carries the trial call.
        """
        admission = self.circuit.authorize()
        if not admission.allowed:
            if self.circuit.is_open():
                self._defer_ready(admission)
            return None

        job = self.queue.claim_next(can_run=lambda j: self.limiter.has_capacity(j.mode))
        if job is None:
            return None

        self.limiter.acquire(job)
        # Takes the half-open trial; always granted when closed
        self.circuit.allow_call()
        return job

    def _defer_ready(self, admission: Admission):
        for job in self.queue.queued_jobs():
            self.admission.defer(job, admission)

    async def run_pending(self) -> int:
        """
        Run queued jobs until none can be claimed.

        Used by tests and one-shot runs instead of the worker loops.
        Returns the number of jobs run.
        """
        total = 0
        while True:
            batch = []
            job = self.claim()
            while job is not None:
                batch.append(job)
                job = self.claim()
            if not batch:
                return total
            await asyncio.gather(*(self.run_job(j) for j in batch))
            total += len(batch)

    async def run_job(self, job: ResearchJob):
        """Execute a claimed (RUNNING) job through to a terminal state."""
        self._in_flight[job.id] = job

        with correlation_context(job.trace_id, job_id=job.id):
            start_time = log.job_start(job.id, job.mode.value, attempt=job.attempts,
                                       cost_class=job.cost_class.value)
            try:
                result = await self._call_with_retries(job)
            except asyncio.TimeoutError:
                self.queue.mark_timeout(
                    job, f"Execution exceeded {self.retry.job_timeout_seconds:g}s timeout"
                )
            except ProviderError as e:
                self.queue.mark_failed(job, str(e))
            except asyncio.CancelledError:
                self.circuit.release_trial()
                self.queue.mark_failed(job, SHUTDOWN_ERROR)
                raise
            except Exception as e:
                log.exception(e, "research.worker.execution_error", {"job_id": job.id})
                self.queue.mark_failed(job, f"{type(e).__name__}: {e}")
            else:
                unique = self._dedup_candidates(job, result)
                self.queue.mark_completed(job, cost_usd=result.cost_usd, candidates_created=unique)
            finally:
                self._in_flight.pop(job.id, None)
                self.limiter.release(job)
                if job.is_terminal:
                    self.budget.record_completion(job.cost_usd)
                log.job_complete(job.id, job.mode.value, start_time, job.status.value,
                                 attempts=job.attempts, cost_usd=job.cost_usd,
                                 candidates_created=job.candidates_created,
                                 error=job.error_message)

    async def _call_with_retries(self, job: ResearchJob) -> ProviderResult:
        """
        Call the provider until success, a permanent error or the deadline.

        job_timeout_seconds bounds the whole job, backoff included. The
        first call uses the circuit slot taken in claim().
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.retry.job_timeout_seconds
        attempt = 0
        while True:
            if attempt and not self.circuit.allow_call():
                raise CircuitOpenError(f"Provider circuit open after {attempt} attempts")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise asyncio.TimeoutError()

            self.queue.record_attempt(job)
            try:
                result = await asyncio.wait_for(self.provider.execute(job), timeout=remaining)
            except TransientProviderError as e:
                self.circuit.record_failure()
                if attempt >= self.retry.max_retries:
                    raise TransientProviderError(
                        f"Failed after {attempt + 1} attempts: {e}"
                    ) from e

                delay_ms = backoff_delay_ms(attempt, self.retry.backoff_base_ms, self.retry.backoff_cap_ms)
                log.warning("research.worker.retrying",
                            job_id=job.id, attempt=attempt, delay_ms=delay_ms, error=str(e))
                await self.clock.sleep(delay_ms / 1000)
                attempt += 1
                continue
            except (asyncio.TimeoutError, ProviderError):
                self.circuit.record_failure()
                raise
            except Exception:
                # Malformed responses count against the provider as well
                self.circuit.record_failure()
                raise

            self.circuit.record_success()
            return result

    def _dedup_candidates(self, job: ResearchJob, result: ProviderResult) -> int:
        """
        Count candidates not already proposed inside the TTL window.

        Malformed candidates are skipped, never counted.
        """
        if not result.candidates:
            return result.candidates_created

        regime = job.context.get("regime")
        unique = 0
        malformed = 0
        for candidate in result.candidates:
            if not isinstance(candidate, dict):
                malformed += 1
                continue
            try:
                fingerprint = compute_candidate_fingerprint(candidate, regime)
            except (AttributeError, TypeError, ValueError):
                malformed += 1
                continue
            if not self.candidate_store.check_and_record(fingerprint).is_duplicate:
                unique += 1

        if malformed:
            log.warning("research.worker.malformed_candidates",
                        job_id=job.id, proposed=len(result.candidates), skipped=malformed)
        if unique < len(result.candidates) - malformed:
            log.info("research.worker.candidates_deduplicated",
                     job_id=job.id, proposed=len(result.candidates), unique=unique)
        return unique

    def get_status(self) -> dict:
        return {
            "workers": self.size,
            "running": self._running,
            "in_flight": [
                {"job_id": j.id, "mode": j.mode.value,
                 "started_at": j.started_at.isoformat() if j.started_at else None}
                for j in self._in_flight.values()
            ],
        }
