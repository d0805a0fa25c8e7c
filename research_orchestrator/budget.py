"""
Budget Guard for the Research Orchestrator.

Daily cost ledger for research spend:
1. Admission: defer new work once the day's budget is used up
2. Utilization levels: healthy / throttled (>=80%) / critical (>=95%)
3. Daily reset at UTC midnight (last-run timestamps are untouched)

The ledger lives in OrchestratorState (daily_cost_usd, daily_job_count);
this class is its only writer.
"""

from datetime import datetime
from typing import Optional

from shared.logging import get_logger

from .clock import Clock
from .config import BudgetConfig
from .models import Admission, BudgetState, CostClass
from .state import StateManager

log = get_logger("research", "budget")

BUDGET_RESETS_COUNTER = "budget_resets"

LEVEL_HEALTHY = "healthy"
LEVEL_THROTTLED = "throttled"
LEVEL_CRITICAL = "critical"


class BudgetGuard:
    """
    Gatekeeper for the daily research budget.
    """

    def __init__(self, state_manager: StateManager, clock: Clock, config: Optional[BudgetConfig] = None):
        self.state = state_manager
        self.clock = clock
        self.config = config or BudgetConfig()

    @property
    def daily_budget_usd(self) -> float:
        return self.config.daily_budget_usd

    def status(self) -> BudgetState:
        return BudgetState(
            daily_budget_usd=self.config.daily_budget_usd,
            used_today_usd=self.state.orchestrator.daily_cost_usd,
        )

    def utilization(self) -> float:
        return self.status().utilization

    def level(self, utilization: Optional[float] = None) -> str:
        """Classify utilization against the warning/critical thresholds."""
        if utilization is None:
            utilization = self.utilization()
        if utilization >= self.config.critical_utilization:
            return LEVEL_CRITICAL
        if utilization >= self.config.warning_utilization:
            return LEVEL_THROTTLED
        return LEVEL_HEALTHY

    def estimate_cost(self, cost_class: CostClass) -> float:
        return self.config.estimated_cost_usd.get(cost_class, 0.0)

    def authorize(self, estimated_cost_usd: float = 0.0) -> Admission:
        """
        Check whether new work fits in today's budget.

        Does NOT consume budget - actual cost is recorded on completion.
        """
        budget = self.status()

        if budget.utilization >= 1.0:
            log.debug("research.budget.exhausted",
                      used=budget.used_today_usd, budget=budget.daily_budget_usd)
            return Admission.defer("Budget exhausted", source="budget")

        if budget.used_today_usd + estimated_cost_usd > budget.daily_budget_usd:
            log.debug("research.budget.estimate_rejected",
                      used=budget.used_today_usd,
                      estimated=estimated_cost_usd,
                      budget=budget.daily_budget_usd)
            return Admission.defer("Estimated cost exceeds remaining budget", source="budget")

        return Admission.allow()

    def record_completion(self, actual_cost_usd: float):
        """Add a finished job's actual cost to today's ledger."""
        if actual_cost_usd < 0:
            raise ValueError(f"Job cost cannot be negative: {actual_cost_usd}")

        orchestrator = self.state.orchestrator
        previous_level = self.level()

        orchestrator.daily_cost_usd += actual_cost_usd
        orchestrator.daily_job_count += 1
        self.state.save_orchestrator()

        level = self.level()
        if level != previous_level:
            log.warning("research.budget.level_changed",
                        previous=previous_level, level=level,
                        used=round(orchestrator.daily_cost_usd, 4),
                        budget=self.config.daily_budget_usd)

    def maybe_reset(self, now: Optional[datetime] = None) -> bool:
        """
        Reset the daily counters on the first call of a new UTC day.

        Returns True if a reset happened. Full-spectrum flag and the
        per-mode last-run timestamps are preserved, so a mode that was
        not due before midnight does not become due because of it.
        """
        now = now or self.clock.now()
        orchestrator = self.state.orchestrator
        reset_at = orchestrator.budget_reset_at

        if reset_at is not None and reset_at.date() >= now.date():
            return False

        if reset_at is None:
            # First run ever: start the ledger without discarding loaded counters
            orchestrator.budget_reset_at = now
            self.state.save_orchestrator()
            return False

        log.info("research.budget.daily_reset",
                 previous_cost=round(orchestrator.daily_cost_usd, 4),
                 previous_jobs=orchestrator.daily_job_count,
                 previous_reset=reset_at.isoformat())

        orchestrator.daily_cost_usd = 0.0
        orchestrator.daily_job_count = 0
        orchestrator.budget_reset_at = now
        self.state.save_orchestrator()
        self.state.increment_counter(BUDGET_RESETS_COUNTER)
        return True

    def get_status(self) -> dict:
        budget = self.status()
        return {
            "daily_budget_usd": budget.daily_budget_usd,
            "used_today_usd": round(budget.used_today_usd, 6),
            "remaining_usd": round(budget.remaining_usd, 6),
            "utilization": budget.utilization,
            "utilization_pct": round(budget.utilization * 100, 2),
            "level": self.level(budget.utilization),
            "daily_job_count": self.state.orchestrator.daily_job_count,
            "budget_reset_at": (
                self.state.orchestrator.budget_reset_at.isoformat()
                if self.state.orchestrator.budget_reset_at else None
            ),
        }
