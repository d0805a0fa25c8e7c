"""
FleetLogger - Structured logging for bot-fleet platform components.
"""

import logging
import os
import time
import traceback
from pathlib import Path
from typing import Any, Optional
from logging.handlers import RotatingFileHandler

from .formatters import JsonLinesFormatter, ConsoleFormatter

# Cache of loggers by module.component
_loggers: dict[str, "FleetLogger"] = {}

# Default log directory (relative to project root)
_log_dir: Optional[Path] = None


def _get_log_dir() -> Path:
    """Get or create log directory."""
    global _log_dir
    if _log_dir is None:
        override = os.environ.get("FLEET_LOG_DIR")
        if override:
            _log_dir = Path(override)
        else:
            # Try to find project root (look for shared/ directory)
            current = Path(__file__).resolve()
            for parent in current.parents:
                if (parent / "shared").exists():
                    _log_dir = parent / "logs"
                    break
            else:
                _log_dir = Path("logs")

        _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def get_logger(module: str, component: str, console: bool = True) -> "FleetLogger":
    """
    Get or create a FleetLogger for a module/component.

    Args:
        module: Module name (research, api)
        component: Component within module (cadence, worker, etc.)
        console: Whether to also output to console

    Returns:
        FleetLogger instance
    """
    key = f"{module}.{component}"
    if key not in _loggers:
        _loggers[key] = FleetLogger(module, component, console)
    return _loggers[key]


class FleetLogger:
    """
    Structured logger for platform components.

    Outputs JSON Lines to file and optionally human-readable to console.
    All events include correlation ID for tick/job tracing.
    """

    def __init__(self, module: str, component: str, console: bool = True):
        """
        Initialize logger.

        Args:
            module: Module name (research, api)
            component: Component within module
            console: Whether to output to console
        """
        self.module = module
        self.component = component
        self._logger = logging.getLogger(f"fleet.{module}.{component}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False  # Don't propagate to root logger

        self._logger.handlers.clear()

        log_dir = _get_log_dir()
        log_file = log_dir / f"{module}.jsonl"

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=10,
            encoding='utf-8',
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLinesFormatter())
        self._logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(ConsoleFormatter())
            self._logger.addHandler(console_handler)

    def event(
        self,
        event_type: str,
        level: str = "INFO",
        **data: Any,
    ) -> None:
        """
        Log a structured event.

        Args:
            event_type: Event type identifier (e.g., "research.cadence.mode_due")
            level: Log level (DEBUG, INFO, WARNING, ERROR)
            **data: Event-specific data fields
        """
        log_level = getattr(logging, level.upper(), logging.INFO)

        event_data = {
            "event_type": event_type,
            "fleet_module": self.module,
            "component": self.component,
            **data,
        }

        self._logger.log(
            log_level,
            event_type,
            extra={
                "event_type": event_type,
                "fleet_module": self.module,
                "component": self.component,
                "event_data": event_data,
                "event_fields": data,
            },
        )

    def debug(self, event_type: str, **data: Any) -> None:
        """Log a DEBUG level event."""
        self.event(event_type, level="DEBUG", **data)

    def info(self, event_type: str, **data: Any) -> None:
        """Log an INFO level event."""
        self.event(event_type, level="INFO", **data)

    def warning(self, event_type: str, **data: Any) -> None:
        """Log a WARNING level event."""
        self.event(event_type, level="WARNING", **data)

    def error(self, event_type: str, **data: Any) -> None:
        """Log an ERROR level event."""
        self.event(event_type, level="ERROR", **data)

    def exception(
        self,
        error: Exception,
        event_type: str = "error",
        context: Optional[dict] = None,
    ) -> None:
        """
        Log an exception with full stack trace.

        Args:
            error: The exception to log
            event_type: Event type (default: "error")
            context: Additional context about what was happening
        """
        self.event(
            event_type,
            level="ERROR",
            error_class=type(error).__name__,
            error_message=str(error),
            stack_trace=traceback.format_exc(),
            context=context or {},
        )

    # Convenience methods for job execution

    def job_start(
        self,
        job_id: str,
        mode: str,
        attempt: int = 0,
        **kwargs: Any,
    ) -> float:
        """
        Log job execution start and return start time for duration calculation.

        Args:
            job_id: Research job identifier
            mode: Research mode name
            attempt: Provider attempt number (0 = first call)
            **kwargs: Additional fields

        Returns:
            Start time (for duration calculation)
        """
        self.event(
            f"{self.module}.job.start",
            action="started",
            job_id=job_id,
            mode=mode,
            attempt=attempt,
            **kwargs,
        )
        return time.monotonic()

    def job_complete(
        self,
        job_id: str,
        mode: str,
        start_time: float,
        status: str,
        **kwargs: Any,
    ) -> None:
        """
        Log job completion with duration.

        Args:
            job_id: Research job identifier
            mode: Research mode name
            start_time: Time from job_start()
            status: Terminal job status
            **kwargs: Additional fields
        """
        duration_ms = (time.monotonic() - start_time) * 1000
        level = "INFO" if status == "COMPLETED" else "WARNING"
        self.event(
            f"{self.module}.job.complete",
            level=level,
            action="finished",
            job_id=job_id,
            mode=mode,
            status=status,
            duration_ms=round(duration_ms, 2),
            **kwargs,
        )
