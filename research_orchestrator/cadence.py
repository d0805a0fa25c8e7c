"""
Mode Cadence Controller for the Research Orchestrator.

Decides which research modes are due on a scheduler tick:
- A mode is due once its interval has elapsed since its last dispatch,
  or immediately if it has never run
- Full Spectrum evaluates all three modes but releases them staggered,
  one per tick and at least stagger_seconds apart
- Optional minute slots pin each mode to its own window in the hour
"""

from datetime import datetime, timedelta
from typing import Optional

from shared.logging import get_logger

from .config import CadenceConfig
from .models import MODE_PRIORITIES, STAGGER_SLOTS, OrchestratorState, ResearchMode

log = get_logger("research", "cadence")

# Width of a minute slot window
SLOT_WIDTH_MINUTES = 5


class CadenceController:
    """
    Pure scheduling decisions; the orchestrator applies them.
    """

    def __init__(self, config: Optional[CadenceConfig] = None):
        self.config = config or CadenceConfig()

    def interval(self, mode: ResearchMode) -> timedelta:
        return timedelta(seconds=self.config.interval_seconds(mode))

    def is_due(self, mode: ResearchMode, now: datetime, state: OrchestratorState) -> bool:
        last_run = state.last_run_at(mode)
        if last_run is None:
            return True
        return now - last_run >= self.interval(mode)

    def due_modes(self, now: datetime, state: OrchestratorState) -> set[ResearchMode]:
        """Enabled modes whose interval has elapsed."""
        return {mode for mode in state.active_modes() if self.is_due(mode, now, state)}

    def in_minute_slot(self, mode: ResearchMode, now: datetime) -> bool:
        """Whether now falls in the mode's minute window (:05/:35, :20, :50)."""
        minute = now.minute
        offset = STAGGER_SLOTS[mode]
        if mode == ResearchMode.SENTIMENT_BURST:
            starts = (offset, offset + 30)
        else:
            starts = (offset,)
        return any(start <= minute < start + SLOT_WIDTH_MINUTES for start in starts)

    def select_dispatch(
        self,
        now: datetime,
        state: OrchestratorState,
        last_dispatch_at: Optional[datetime] = None,
    ) -> list[ResearchMode]:
        """
        Due modes to submit on this tick, highest priority first.

        With Full Spectrum on, at most one mode is released per tick so
        the three modes never hit the budget and worker pool together.
        """
        due = self.due_modes(now, state)
        if self.config.use_minute_slots:
            due = {mode for mode in due if self.in_minute_slot(mode, now)}

        ordered = sorted(due, key=lambda m: MODE_PRIORITIES[m], reverse=True)
        if not ordered or not state.is_full_spectrum_enabled:
            return ordered

        if last_dispatch_at is not None:
            gap = (now - last_dispatch_at).total_seconds()
            if gap < self.config.stagger_seconds:
                log.debug("research.cadence.staggered",
                          due=[m.value for m in ordered],
                          seconds_until_next=round(self.config.stagger_seconds - gap, 1))
                return []

        if len(ordered) > 1:
            log.debug("research.cadence.staggered",
                      released=ordered[0].value,
                      held=[m.value for m in ordered[1:]])
        return ordered[:1]

    def next_run_at(self, mode: ResearchMode, state: OrchestratorState) -> Optional[datetime]:
        """When the mode next becomes due; None means due now."""
        last_run = state.last_run_at(mode)
        if last_run is None:
            return None
        return last_run + self.interval(mode)

    def schedule(self, now: datetime, state: OrchestratorState) -> dict:
        """Per-mode cadence view for status endpoints."""
        active = state.active_modes()
        schedule = {}
        for mode in ResearchMode:
            last_run = state.last_run_at(mode)
            next_run = self.next_run_at(mode, state)
            schedule[mode.value] = {
                "enabled": mode in active,
                "interval_minutes": self.config.intervals_minutes[mode],
                "last_run_at": last_run.isoformat() if last_run else None,
                "next_run_at": next_run.isoformat() if next_run else None,
                "due": mode in active and self.is_due(mode, now, state),
            }
        return schedule
