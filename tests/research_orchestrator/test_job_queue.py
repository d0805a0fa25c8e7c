"""
Tests for research_orchestrator/job_queue.py
"""

from datetime import timedelta

import pytest

from research_orchestrator.errors import InvalidTransitionError
from research_orchestrator.models import JobStatus, ResearchMode


class TestEnqueueAndDefer:

    def test_enqueue_persists(self, queue, make_job):
        job = queue.enqueue(make_job())
        assert queue.get(job.id) is job

    def test_enqueue_rejects_non_queued(self, queue, make_job, clock):
        job = make_job()
        job.mark_running(clock.now())
        with pytest.raises(ValueError):
            queue.enqueue(job)

    def test_defer_fresh_job(self, queue, make_job):
        job = queue.defer(make_job(), "Budget exhausted")
        stored = queue.get(job.id)
        assert stored.status == JobStatus.DEFERRED
        assert stored.deferred_reason == "Budget exhausted"

    def test_defer_queued_job(self, queue, make_job):
        job = queue.enqueue(make_job())
        queue.defer(job, "Max concurrent jobs reached")
        assert queue.get(job.id).status == JobStatus.DEFERRED


class TestOrdering:

    def test_priority_then_scheduled_time(self, queue, make_job, clock):
        deep = queue.enqueue(make_job(ResearchMode.DEEP_REASONING))
        clock.advance(10)
        sentiment_late = queue.enqueue(make_job(ResearchMode.SENTIMENT_BURST))
        contrarian = queue.enqueue(make_job(ResearchMode.CONTRARIAN_SCAN))
        sentiment_early = make_job(ResearchMode.SENTIMENT_BURST)
        sentiment_early.scheduled_for = clock.now() - timedelta(seconds=5)
        queue.enqueue(sentiment_early)

        assert [j.id for j in queue.queued_jobs()] == [
            sentiment_early.id, sentiment_late.id, contrarian.id, deep.id,
        ]

    def test_future_jobs_not_ready(self, queue, make_job, clock):
        job = make_job()
        job.scheduled_for = clock.now() + timedelta(minutes=5)
        queue.enqueue(job)

        assert queue.next_job() is None
        clock.advance(minutes=5)
        assert queue.next_job() is job

    def test_next_job_by_mode(self, queue, make_job):
        queue.enqueue(make_job(ResearchMode.SENTIMENT_BURST))
        deep = queue.enqueue(make_job(ResearchMode.DEEP_REASONING))
        assert queue.next_job(ResearchMode.DEEP_REASONING) is deep


class TestClaimAndLifecycle:

    def test_claim_marks_running(self, queue, make_job):
        job = queue.enqueue(make_job())
        claimed = queue.claim_next()
        assert claimed is job
        assert job.status == JobStatus.RUNNING
        assert queue.claim_next() is None

    def test_claim_skips_jobs_without_capacity(self, queue, make_job):
        queue.enqueue(make_job(ResearchMode.SENTIMENT_BURST))
        deep = queue.enqueue(make_job(ResearchMode.DEEP_REASONING))

        claimed = queue.claim_next(can_run=lambda j: j.mode == ResearchMode.DEEP_REASONING)
        assert claimed is deep

    def test_completed_and_failed(self, queue, make_job, clock):
        ok = queue.enqueue(make_job())
        bad = queue.enqueue(make_job())
        queue.mark_running(ok)
        queue.mark_running(bad)
        clock.advance(45)

        queue.mark_completed(ok, cost_usd=0.04, candidates_created=3)
        queue.mark_failed(bad, "provider said no")

        assert queue.get(ok.id).duration_seconds == 45
        assert queue.get(bad.id).error_message == "provider said no"

    def test_timeout(self, queue, make_job):
        job = queue.enqueue(make_job())
        queue.mark_running(job)
        queue.mark_timeout(job, "slow")
        assert job.status == JobStatus.TIMEOUT

    def test_terminal_job_cannot_restart(self, queue, make_job):
        job = queue.enqueue(make_job())
        queue.mark_running(job)
        queue.mark_completed(job, 0.0, 0)
        with pytest.raises(InvalidTransitionError):
            queue.mark_running(job)

    def test_record_attempt(self, queue, make_job):
        job = queue.enqueue(make_job())
        queue.record_attempt(job)
        queue.record_attempt(job)
        assert queue.get(job.id).attempts == 2


class TestQueries:

    def test_jobs_filters_newest_first(self, queue, make_job, clock):
        first = queue.enqueue(make_job(ResearchMode.SENTIMENT_BURST))
        clock.advance(60)
        second = queue.enqueue(make_job(ResearchMode.SENTIMENT_BURST))
        clock.advance(60)
        queue.defer(make_job(ResearchMode.DEEP_REASONING), "full")

        assert queue.jobs(mode=ResearchMode.SENTIMENT_BURST) == [second, first]
        assert len(queue.jobs(status=JobStatus.DEFERRED)) == 1
        assert queue.jobs(limit=1)[0].mode == ResearchMode.DEEP_REASONING
        assert queue.jobs(since=clock.now()) != []
        assert first not in queue.jobs(since=clock.now())

    def test_queue_stats(self, queue, make_job):
        queue.enqueue(make_job(ResearchMode.SENTIMENT_BURST))
        queue.defer(make_job(ResearchMode.CONTRARIAN_SCAN), "full")

        stats = queue.get_queue_stats()
        assert stats["total"] == 2
        assert stats["ready"] == 1
        assert stats["by_status"]["DEFERRED"] == 1
        assert stats["by_mode"] == {"SENTIMENT_BURST": 1, "CONTRARIAN_SCAN": 1}
