"""
Shared fixtures for research orchestrator tests.
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from research_orchestrator.clock import ManualClock
from research_orchestrator.config import OrchestratorConfig
from research_orchestrator.job_queue import JobQueue
from research_orchestrator.main import Orchestrator
from research_orchestrator.models import ResearchJob, ResearchMode
from research_orchestrator.providers import ProviderResult, ResearchProvider
from research_orchestrator.state import StateManager

START = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


class FakeProvider(ResearchProvider):
    """
    In-process provider.

    errors: exceptions raised on successive calls (None = succeed).
    delay: real seconds each call takes.
    """

    def __init__(
        self,
        cost_usd: float = 0.10,
        candidates: Optional[list[dict]] = None,
        errors: Optional[list] = None,
        delay: float = 0.0,
    ):
        self.cost_usd = cost_usd
        self.candidates = candidates or []
        self.errors = list(errors or [])
        self.delay = delay
        self.calls: list[str] = []
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def close(self):
        self.closed = True

    async def execute(self, job: ResearchJob) -> ProviderResult:
        self.calls.append(job.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return ProviderResult(
            result={"mode": job.mode.value},
            candidates_created=len(self.candidates),
            cost_usd=self.cost_usd,
            candidates=[dict(c) if isinstance(c, dict) else c for c in self.candidates],
        )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def state_dir(temp_dir: Path) -> Path:
    return temp_dir / "state"


@pytest.fixture
def state_manager(state_dir: Path):
    """Loaded StateManager with temporary storage."""
    manager = StateManager(checkpoint_dir=str(state_dir), checkpoint_interval=60)
    manager.load()
    yield manager
    manager.close()


@pytest.fixture
def config() -> OrchestratorConfig:
    return OrchestratorConfig()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def queue(state_manager: StateManager, clock: ManualClock) -> JobQueue:
    return JobQueue(state_manager, clock)


@pytest.fixture
def make_job(clock: ManualClock):
    """Factory for QUEUED jobs at the current manual time."""
    def _make(mode: ResearchMode = ResearchMode.SENTIMENT_BURST, **context) -> ResearchJob:
        return ResearchJob.create(mode, clock.now(), context=context)
    return _make


@pytest.fixture
def orchestrator(state_manager, clock, provider, config) -> Orchestrator:
    """Initialized orchestrator with no background loops running."""
    orch = Orchestrator(
        provider=provider,
        config=config,
        state_manager=state_manager,
        clock=clock,
    )
    orch.initialize()
    return orch


@pytest.fixture
def make_provider():
    """FakeProvider factory for tests needing scripted errors or candidates."""
    return FakeProvider
