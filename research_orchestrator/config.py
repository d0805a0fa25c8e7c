"""
Configuration for the research orchestrator.

Settings live under the ``research_orchestrator:`` section of the platform
``config.yaml``. Every field has a default matching production behavior,
so an empty section (or no file at all) gives a working orchestrator.

Example:
    research_orchestrator:
      tick_interval_seconds: 60
      cadence:
        intervals_minutes:
          SENTIMENT_BURST: 30
      budget:
        daily_budget_usd: 50
      concurrency:
        max_concurrent_jobs: 3
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Union

import yaml

from .errors import ConfigError
from .models import CostClass, ResearchMode, DEFAULT_INTERVALS_MINUTES, DEFAULT_ESTIMATED_COSTS


@dataclass
class CadenceConfig:
    """Per-mode intervals and full-spectrum staggering."""
    intervals_minutes: dict[ResearchMode, float] = field(
        default_factory=lambda: dict(DEFAULT_INTERVALS_MINUTES)
    )
    # Minimum gap between two full-spectrum dispatches
    stagger_seconds: float = 300.0
    # Restrict each mode to its minute slot within the hour
    use_minute_slots: bool = False

    def interval_seconds(self, mode: ResearchMode) -> float:
        return self.intervals_minutes[mode] * 60


@dataclass
class BudgetConfig:
    daily_budget_usd: float = 50.0
    warning_utilization: float = 0.80
    critical_utilization: float = 0.95
    estimated_cost_usd: dict[CostClass, float] = field(
        default_factory=lambda: dict(DEFAULT_ESTIMATED_COSTS)
    )


@dataclass
class ConcurrencyConfig:
    max_concurrent_jobs: int = 3
    per_mode_limits: dict[ResearchMode, int] = field(default_factory=dict)


@dataclass
class DedupConfig:
    ttl_hours: float = 24.0
    sweep_interval_seconds: float = 600.0


@dataclass
class RetryConfig:
    """Provider retry and circuit breaker settings."""
    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 60000
    circuit_failure_threshold: int = 5
    circuit_reset_seconds: float = 300.0
    job_timeout_seconds: float = 300.0


@dataclass
class AlertThresholds:
    stall_timeout_minutes: float = 15.0
    failure_rate: float = 0.30
    failure_window_hours: float = 24.0
    backpressure_job_count: int = 10
    backpressure_window_minutes: float = 60.0
    scheduling_drift_minutes: float = 10.0


@dataclass
class OrchestratorConfig:
    """Top-level orchestrator configuration."""
    tick_interval_seconds: float = 60.0
    alert_interval_seconds: float = 60.0
    checkpoint_interval_seconds: float = 60.0
    worker_poll_interval_seconds: float = 2.0
    cadence: CadenceConfig = field(default_factory=CadenceConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    concurrency: ConcurrencyConfig = field(default_factory=ConcurrencyConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    alerts: AlertThresholds = field(default_factory=AlertThresholds)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "OrchestratorConfig":
        """Build config from a plain dict, ignoring unknown keys."""
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError("research_orchestrator config must be a mapping")

        cadence_data = dict(data.get("cadence") or {})
        if "intervals_minutes" in cadence_data:
            intervals = dict(DEFAULT_INTERVALS_MINUTES)
            intervals.update(_mode_keyed(cadence_data["intervals_minutes"], float))
            cadence_data["intervals_minutes"] = intervals

        budget_data = dict(data.get("budget") or {})
        if "estimated_cost_usd" in budget_data:
            costs = dict(DEFAULT_ESTIMATED_COSTS)
            for key, value in (budget_data["estimated_cost_usd"] or {}).items():
                costs[_parse_enum(CostClass, key)] = float(value)
            budget_data["estimated_cost_usd"] = costs

        concurrency_data = dict(data.get("concurrency") or {})
        if "per_mode_limits" in concurrency_data:
            concurrency_data["per_mode_limits"] = _mode_keyed(
                concurrency_data["per_mode_limits"], int
            )

        config = cls(
            **_known(cls, data, skip={"cadence", "budget", "concurrency", "dedup", "retry", "alerts"}),
            cadence=CadenceConfig(**_known(CadenceConfig, cadence_data)),
            budget=BudgetConfig(**_known(BudgetConfig, budget_data)),
            concurrency=ConcurrencyConfig(**_known(ConcurrencyConfig, concurrency_data)),
            dedup=DedupConfig(**_known(DedupConfig, data.get("dedup") or {})),
            retry=RetryConfig(**_known(RetryConfig, data.get("retry") or {})),
            alerts=AlertThresholds(**_known(AlertThresholds, data.get("alerts") or {})),
        )
        config.validate()
        return config

    def validate(self):
        """Raise ConfigError on values the orchestrator cannot run with."""
        if self.tick_interval_seconds <= 0:
            raise ConfigError("tick_interval_seconds must be positive")
        for mode, minutes in self.cadence.intervals_minutes.items():
            if minutes <= 0:
                raise ConfigError(f"interval for {mode.value} must be positive")
        if self.budget.daily_budget_usd <= 0:
            raise ConfigError("daily_budget_usd must be positive")
        if not 0 < self.budget.warning_utilization <= self.budget.critical_utilization:
            raise ConfigError("budget thresholds must satisfy 0 < warning <= critical")
        if self.concurrency.max_concurrent_jobs < 1:
            raise ConfigError("max_concurrent_jobs must be at least 1")
        for mode, limit in self.concurrency.per_mode_limits.items():
            if limit < 1:
                raise ConfigError(f"per-mode limit for {mode.value} must be at least 1")
        if self.dedup.ttl_hours <= 0:
            raise ConfigError("dedup ttl_hours must be positive")
        if self.retry.max_retries < 0:
            raise ConfigError("max_retries cannot be negative")
        if self.retry.job_timeout_seconds <= 0:
            raise ConfigError("job_timeout_seconds must be positive")


def load_config(path: Union[str, Path, None] = None) -> OrchestratorConfig:
    """
    Load orchestrator config from a YAML file.

    Missing file or missing section yields the defaults.
    """
    if path is None:
        return OrchestratorConfig()

    config_path = Path(path)
    if not config_path.exists():
        return OrchestratorConfig()

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}") from e

    return OrchestratorConfig.from_dict(raw.get("research_orchestrator"))


def _known(cls, data: dict, skip: frozenset = frozenset()) -> dict:
    names = {f.name for f in fields(cls)} - set(skip)
    return {k: v for k, v in data.items() if k in names}


def _parse_enum(enum_cls, key):
    try:
        return enum_cls(str(key).upper())
    except ValueError as e:
        raise ConfigError(f"Unknown {enum_cls.__name__}: {key}") from e


def _mode_keyed(data: Optional[dict], cast) -> dict:
    return {_parse_enum(ResearchMode, k): cast(v) for k, v in (data or {}).items()}
