"""
Tests for research_orchestrator/cadence.py
"""

from datetime import timedelta

from research_orchestrator.cadence import CadenceController
from research_orchestrator.config import CadenceConfig
from research_orchestrator.models import OrchestratorState, ResearchMode


def _full_spectrum() -> OrchestratorState:
    return OrchestratorState(is_full_spectrum_enabled=True)


class TestIsDue:

    def test_never_run_is_due(self, clock):
        cadence = CadenceController()
        assert cadence.is_due(ResearchMode.DEEP_REASONING, clock.now(), OrchestratorState())

    def test_interval_boundary(self, clock):
        cadence = CadenceController()
        state = OrchestratorState()
        state.set_last_run(ResearchMode.SENTIMENT_BURST, clock.now())

        assert not cadence.is_due(ResearchMode.SENTIMENT_BURST, clock.now() + timedelta(minutes=29), state)
        assert cadence.is_due(ResearchMode.SENTIMENT_BURST, clock.now() + timedelta(minutes=30), state)

    def test_only_active_modes_are_due(self, clock):
        cadence = CadenceController()
        state = OrchestratorState(enabled_modes={ResearchMode.CONTRARIAN_SCAN})
        assert cadence.due_modes(clock.now(), state) == {ResearchMode.CONTRARIAN_SCAN}

        assert cadence.due_modes(clock.now(), OrchestratorState()) == set()


class TestSelectDispatch:

    def test_individual_modes_all_released(self, clock):
        cadence = CadenceController()
        state = OrchestratorState(enabled_modes=set(ResearchMode))
        assert cadence.select_dispatch(clock.now(), state) == [
            ResearchMode.SENTIMENT_BURST,
            ResearchMode.CONTRARIAN_SCAN,
            ResearchMode.DEEP_REASONING,
        ]

    def test_full_spectrum_releases_one_per_tick(self, clock):
        cadence = CadenceController()
        assert cadence.select_dispatch(clock.now(), _full_spectrum()) == [ResearchMode.SENTIMENT_BURST]

    def test_full_spectrum_respects_stagger_gap(self, clock):
        cadence = CadenceController(CadenceConfig(stagger_seconds=300))
        state = _full_spectrum()
        state.set_last_run(ResearchMode.SENTIMENT_BURST, clock.now())
        last_dispatch = clock.now()

        assert cadence.select_dispatch(clock.advance(60), state, last_dispatch) == []
        assert cadence.select_dispatch(clock.advance(240), state, last_dispatch) == [
            ResearchMode.CONTRARIAN_SCAN
        ]

    def test_full_spectrum_staggers_all_three(self, clock):
        cadence = CadenceController(CadenceConfig(stagger_seconds=300))
        state = _full_spectrum()
        released = []
        last_dispatch = None
        for _ in range(15):
            modes = cadence.select_dispatch(clock.now(), state, last_dispatch)
            for mode in modes:
                state.set_last_run(mode, clock.now())
                last_dispatch = clock.now()
                released.append((mode, clock.now()))
            clock.advance(60)

        assert [m for m, _ in released] == [
            ResearchMode.SENTIMENT_BURST,
            ResearchMode.CONTRARIAN_SCAN,
            ResearchMode.DEEP_REASONING,
        ]
        gaps = [(b - a).total_seconds() for (_, a), (_, b) in zip(released, released[1:])]
        assert all(gap >= 300 for gap in gaps)

    def test_minute_slots(self, clock):
        cadence = CadenceController(CadenceConfig(use_minute_slots=True))
        state = OrchestratorState(enabled_modes=set(ResearchMode))

        at_10_00 = clock.now()
        assert cadence.select_dispatch(at_10_00, state) == []
        assert cadence.select_dispatch(at_10_00 + timedelta(minutes=6), state) == [ResearchMode.SENTIMENT_BURST]
        assert cadence.select_dispatch(at_10_00 + timedelta(minutes=36), state) == [ResearchMode.SENTIMENT_BURST]
        assert cadence.select_dispatch(at_10_00 + timedelta(minutes=20), state) == [ResearchMode.CONTRARIAN_SCAN]
        assert cadence.select_dispatch(at_10_00 + timedelta(minutes=54), state) == [ResearchMode.DEEP_REASONING]


class TestSchedule:

    def test_next_run_and_schedule_view(self, clock):
        cadence = CadenceController()
        state = OrchestratorState(enabled_modes={ResearchMode.CONTRARIAN_SCAN})
        state.set_last_run(ResearchMode.CONTRARIAN_SCAN, clock.now())

        assert cadence.next_run_at(ResearchMode.CONTRARIAN_SCAN, state) == clock.now() + timedelta(hours=2)
        assert cadence.next_run_at(ResearchMode.DEEP_REASONING, state) is None

        schedule = cadence.schedule(clock.now(), state)
        assert schedule["CONTRARIAN_SCAN"]["enabled"] is True
        assert schedule["CONTRARIAN_SCAN"]["due"] is False
        assert schedule["DEEP_REASONING"]["enabled"] is False
        assert schedule["SENTIMENT_BURST"]["interval_minutes"] == 30
