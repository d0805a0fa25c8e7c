"""
Research Orchestrator - scheduled AI research for the trading-bot fleet.

This module implements the research scheduling design:
- Three cadence modes plus a staggered full-spectrum mode
- Daily cost budget with UTC-midnight reset
- Content fingerprint dedup with a TTL window
- Admission control that defers work instead of dropping it
- WAL + checkpoint state persistence with crash recovery
- Health metrics and acknowledgeable alerts
"""

from .models import (
    Admission,
    Alert,
    AlertSeverity,
    AlertType,
    BudgetState,
    CandidateFingerprint,
    CostClass,
    JobStatus,
    OrchestratorState,
    ResearchJob,
    ResearchMode,
    Submission,
    SubmissionOutcome,
)
from .errors import (
    CircuitOpenError,
    ConfigError,
    InvalidTransitionError,
    OrchestratorError,
    ProviderError,
    TransientProviderError,
)
from .clock import Clock, ManualClock, SystemClock
from .config import OrchestratorConfig, load_config
from .state import StateManager
from .cadence import CadenceController
from .budget import BudgetGuard
from .concurrency import ConcurrencyLimiter
from .fingerprints import (
    FingerprintStore,
    compute_candidate_fingerprint,
    compute_fingerprint,
)
from .job_queue import JobQueue
from .resilience import CircuitBreaker, backoff_delay_ms
from .backpressure import AdmissionPolicy
from .alerts import AlertEngine, HealthSnapshot
from .providers import HttpResearchProvider, ProviderResult, ResearchProvider
from .worker import WorkerPool
from .main import Orchestrator

__all__ = [
    # Models
    "Admission",
    "Alert",
    "AlertSeverity",
    "AlertType",
    "BudgetState",
    "CandidateFingerprint",
    "CostClass",
    "JobStatus",
    "OrchestratorState",
    "ResearchJob",
    "ResearchMode",
    "Submission",
    "SubmissionOutcome",
    # Errors
    "CircuitOpenError",
    "ConfigError",
    "InvalidTransitionError",
    "OrchestratorError",
    "ProviderError",
    "TransientProviderError",
    # Time and config
    "Clock",
    "ManualClock",
    "SystemClock",
    "OrchestratorConfig",
    "load_config",
    # Components
    "StateManager",
    "CadenceController",
    "BudgetGuard",
    "ConcurrencyLimiter",
    "FingerprintStore",
    "compute_fingerprint",
    "compute_candidate_fingerprint",
    "JobQueue",
    "CircuitBreaker",
    "backoff_delay_ms",
    "AdmissionPolicy",
    "AlertEngine",
    "HealthSnapshot",
    # Providers and execution
    "ResearchProvider",
    "HttpResearchProvider",
    "ProviderResult",
    "WorkerPool",
    # Main
    "Orchestrator",
]
