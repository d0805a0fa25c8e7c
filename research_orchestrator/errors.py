"""
Exception hierarchy for the research orchestrator.

Admission rejections (budget, concurrency, open circuit) are not errors:
they become DEFERRED jobs. Exceptions here cover programming errors,
bad configuration and provider failures.
"""


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class InvalidTransitionError(OrchestratorError):
    """A job status change outside the allowed state machine."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id}: illegal transition {current} -> {target}")


class ConfigError(OrchestratorError):
    """Invalid orchestrator configuration."""


class ProviderError(OrchestratorError):
    """Research provider failed in a way retrying will not fix."""


class TransientProviderError(ProviderError):
    """Research provider failed transiently (timeout, rate limit, 5xx)."""


class CircuitOpenError(ProviderError):
    """Provider circuit is open; the call was not attempted."""
