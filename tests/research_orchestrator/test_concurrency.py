"""
Tests for research_orchestrator/concurrency.py
"""

from research_orchestrator.concurrency import ConcurrencyLimiter
from research_orchestrator.config import ConcurrencyConfig
from research_orchestrator.models import ResearchMode


class TestConcurrencyLimiter:

    def test_acquire_until_full(self, make_job):
        limiter = ConcurrencyLimiter(ConcurrencyConfig(max_concurrent_jobs=2))
        jobs = [make_job() for _ in range(3)]

        assert limiter.acquire(jobs[0])
        assert limiter.acquire(jobs[1])
        assert not limiter.acquire(jobs[2])
        assert limiter.running_count() == 2

        admission = limiter.authorize()
        assert not admission.allowed
        assert admission.reason == "Max concurrent jobs reached"

    def test_release_frees_slot(self, make_job):
        limiter = ConcurrencyLimiter(ConcurrencyConfig(max_concurrent_jobs=1))
        first, second = make_job(), make_job()
        limiter.acquire(first)
        limiter.release(first)

        assert limiter.acquire(second)
        assert limiter.peak_running == 1

    def test_release_unknown_is_noop(self, make_job):
        limiter = ConcurrencyLimiter()
        limiter.release(make_job())
        assert limiter.running_count() == 0

    def test_acquire_is_idempotent(self, make_job):
        limiter = ConcurrencyLimiter(ConcurrencyConfig(max_concurrent_jobs=1))
        job = make_job()
        assert limiter.acquire(job)
        assert limiter.acquire(job)
        assert limiter.running_count() == 1

    def test_per_mode_limit(self, make_job):
        limiter = ConcurrencyLimiter(ConcurrencyConfig(
            max_concurrent_jobs=3,
            per_mode_limits={ResearchMode.DEEP_REASONING: 1},
        ))
        limiter.acquire(make_job(ResearchMode.DEEP_REASONING))

        assert not limiter.has_capacity(ResearchMode.DEEP_REASONING)
        assert limiter.has_capacity(ResearchMode.SENTIMENT_BURST)
        assert not limiter.acquire(make_job(ResearchMode.DEEP_REASONING))

    def test_status(self, make_job):
        limiter = ConcurrencyLimiter()
        limiter.acquire(make_job(ResearchMode.CONTRARIAN_SCAN))
        status = limiter.get_status()
        assert status["running"] == 1
        assert status["max_concurrent"] == 3
        assert status["by_mode"]["CONTRARIAN_SCAN"] == 1
