"""
Root-level shared fixtures for all platform tests.

This file provides common fixtures used across multiple test modules.
Module-specific fixtures should be defined in their respective conftest.py files.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

# Keep test log output out of the project logs/ directory
os.environ.setdefault("FLEET_LOG_DIR", str(Path(tempfile.gettempdir()) / "fleet_test_logs"))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Automatically cleaned up after test completion.
    """
    temp_path = Path(tempfile.mkdtemp(prefix="fleet_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sample_config() -> dict[str, Any]:
    """
    Standard research_orchestrator configuration section.

    Small numbers so tests hit thresholds quickly.
    """
    return {
        "tick_interval_seconds": 60,
        "cadence": {
            "intervals_minutes": {"SENTIMENT_BURST": 30},
            "stagger_seconds": 300,
        },
        "budget": {"daily_budget_usd": 10},
        "concurrency": {"max_concurrent_jobs": 2},
        "dedup": {"ttl_hours": 24},
        "retry": {"max_retries": 2, "job_timeout_seconds": 5},
    }

