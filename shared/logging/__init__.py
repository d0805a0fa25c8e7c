"""
Structured logging for the bot-fleet platform.

Provides JSON Lines logging with correlation IDs for tracing
a scheduler tick or a research job across components
(cadence, admission, workers, alerts).

Usage:
    from shared.logging import get_logger, correlation_context

    log = get_logger("research", "worker")

    with correlation_context(job.trace_id):
        log.info("research.worker.job_started",
                 job_id=job.id,
                 mode=job.mode.value)
"""

from .logger import get_logger, FleetLogger
from .context import (
    correlation_context,
    get_correlation_id,
    get_job_id,
)

__all__ = [
    "get_logger",
    "FleetLogger",
    "correlation_context",
    "get_correlation_id",
    "get_job_id",
]
