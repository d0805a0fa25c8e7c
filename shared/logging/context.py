"""
Correlation context management for tracing ticks and jobs.

Uses ContextVar for async-safe context propagation: each worker task
keeps its own job context while sharing the event loop.
"""

import uuid
from contextvars import ContextVar
from contextlib import contextmanager
from typing import Optional, Generator

# Context variables (async-safe)
_correlation_id: ContextVar[str] = ContextVar('correlation_id', default='')
_job_id: ContextVar[str] = ContextVar('job_id', default='')


def get_correlation_id() -> str:
    """Get current correlation ID, generating one if none exists."""
    cid = _correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())
        _correlation_id.set(cid)
    return cid


def get_job_id() -> Optional[str]:
    """Get the research job ID bound to the current context."""
    return _job_id.get() or None


@contextmanager
def correlation_context(
    correlation_id: Optional[str] = None,
    job_id: Optional[str] = None,
) -> Generator[str, None, None]:
    """
    Context manager for setting correlation context.

    Args:
        correlation_id: Optional correlation ID (generated if not provided)
        job_id: Optional research job ID

    Yields:
        The correlation ID being used

    Example:
        with correlation_context() as cid:
            log.info("research.tick.started", correlation_id=cid)
    """
    old_cid = _correlation_id.get()
    old_jid = _job_id.get()

    try:
        if correlation_id:
            _correlation_id.set(correlation_id)
        elif not old_cid:
            _correlation_id.set(str(uuid.uuid4()))

        if job_id:
            _job_id.set(job_id)

        yield get_correlation_id()
    finally:
        _correlation_id.set(old_cid)
        _job_id.set(old_jid)
