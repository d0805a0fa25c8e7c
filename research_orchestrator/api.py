"""
HTTP API for the Research Orchestrator.

Provides REST endpoints for the dashboard: health, status, budget, jobs,
alerts and the mode/full-spectrum switches. Runs alongside the
orchestrator in the same process; commands are executed on the
orchestrator's event loop via Orchestrator.run_command.
"""

import asyncio
import threading
from functools import wraps
from typing import TYPE_CHECKING, Optional

from flask import Flask, jsonify, request

from shared.logging import get_logger

from .models import JobStatus, ResearchMode

if TYPE_CHECKING:
    from .main import Orchestrator

log = get_logger("research", "api")

# Global reference to orchestrator instance (set by create_app / run_with_api)
_orchestrator: Optional["Orchestrator"] = None

MAX_JOBS_LIMIT = 500


def get_orchestrator() -> Optional["Orchestrator"]:
    """Get the global orchestrator instance."""
    return _orchestrator


def set_orchestrator(orchestrator: Optional["Orchestrator"]):
    global _orchestrator
    _orchestrator = orchestrator


def require_orchestrator(f):
    """Decorator to require an initialized orchestrator."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if _orchestrator is None:
            return jsonify({"error": "Orchestrator not initialized"}), 503
        if not _orchestrator.is_initialized:
            return jsonify({"error": "Orchestrator not running"}), 503
        return f(*args, **kwargs)
    return decorated


def _parse_enum(enum_cls, value: Optional[str]):
    """Enum member for a query/path value; None if absent, ValueError if unknown."""
    if value is None or value == "":
        return None
    return enum_cls(value.upper())


def _enabled_flag():
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if not isinstance(enabled, bool):
        return None
    return enabled


def create_app(orchestrator: Optional["Orchestrator"] = None) -> Flask:
    """Create Flask app for the orchestrator API."""
    if orchestrator is not None:
        set_orchestrator(orchestrator)

    app = Flask(__name__)

    @app.route("/health")
    def health():
        """Health summary; 503 until the orchestrator has loaded its state."""
        if _orchestrator is None or not _orchestrator.is_initialized:
            return jsonify({"status": "starting", "running": False}), 503
        return jsonify(_orchestrator.run_command(_orchestrator.get_health))

    @app.route("/status")
    @require_orchestrator
    def status():
        """Get full orchestrator state."""
        return jsonify(_orchestrator.run_command(_orchestrator.get_state_snapshot))

    @app.route("/budget")
    @require_orchestrator
    def budget():
        return jsonify(_orchestrator.run_command(_orchestrator.get_budget_status))

    @app.route("/jobs")
    @require_orchestrator
    def list_jobs():
        """List jobs newest first, with optional status/mode filters."""
        try:
            status_filter = _parse_enum(JobStatus, request.args.get("status"))
            mode_filter = _parse_enum(ResearchMode, request.args.get("mode"))
        except ValueError as e:
            return jsonify({"error": str(e)}), 400

        limit = request.args.get("limit", 20, type=int)
        limit = max(1, min(limit, MAX_JOBS_LIMIT))

        jobs = _orchestrator.run_command(
            _orchestrator.get_recent_jobs, status_filter, mode_filter, limit
        )
        return jsonify({
            "jobs": [job.to_dict() for job in jobs],
            "count": len(jobs),
        })

    @app.route("/jobs/<job_id>")
    @require_orchestrator
    def get_job(job_id: str):
        """Get job details by ID."""
        job = _orchestrator.run_command(_orchestrator.get_job, job_id)
        if not job:
            return jsonify({"error": "Job not found"}), 404
        return jsonify(job.to_dict())

    @app.route("/alerts")
    @require_orchestrator
    def list_alerts():
        alerts = _orchestrator.run_command(_orchestrator.get_open_alerts)
        return jsonify({"alerts": [a.to_dict() for a in alerts]})

    @app.route("/alerts/<alert_id>/acknowledge", methods=["POST"])
    @require_orchestrator
    def acknowledge_alert(alert_id: str):
        alert = _orchestrator.run_command(_orchestrator.acknowledge_alert, alert_id)
        if alert is None:
            return jsonify({"error": "Alert not found"}), 404
        log.info("research.api.alert_acknowledged", alert_id=alert_id)
        return jsonify({"success": True, "alert": alert.to_dict()})

    @app.route("/modes/<mode>/trigger", methods=["POST"])
    @require_orchestrator
    def trigger_mode(mode: str):
        """Submit a mode immediately."""
        try:
            research_mode = _parse_enum(ResearchMode, mode)
        except ValueError:
            return jsonify({"error": f"Unknown mode: {mode}"}), 400

        submission = _orchestrator.run_command(_orchestrator.trigger_mode, research_mode)
        log.info("research.api.mode_triggered",
                 mode=research_mode.value, outcome=submission.outcome.value)
        status_code = 202 if submission.dispatched else 409
        return jsonify(submission.to_dict()), status_code

    @app.route("/modes/<mode>", methods=["POST"])
    @require_orchestrator
    def set_mode(mode: str):
        """Enable or disable one mode: {"enabled": bool}."""
        try:
            research_mode = _parse_enum(ResearchMode, mode)
        except ValueError:
            return jsonify({"error": f"Unknown mode: {mode}"}), 400

        enabled = _enabled_flag()
        if enabled is None:
            return jsonify({"error": "Boolean 'enabled' required"}), 400

        _orchestrator.run_command(_orchestrator.set_mode_enabled, research_mode, enabled)
        return jsonify({"success": True, "mode": research_mode.value, "enabled": enabled})

    @app.route("/full-spectrum", methods=["POST"])
    @require_orchestrator
    def set_full_spectrum():
        """Enable or disable full spectrum: {"enabled": bool}."""
        enabled = _enabled_flag()
        if enabled is None:
            return jsonify({"error": "Boolean 'enabled' required"}), 400

        _orchestrator.run_command(_orchestrator.set_full_spectrum, enabled)
        return jsonify({"success": True, "full_spectrum": enabled})

    @app.route("/metrics/soak")
    @require_orchestrator
    def soak_metrics():
        return jsonify(_orchestrator.run_command(_orchestrator.get_soak_metrics))

    return app


def run_api_server(host: str = "127.0.0.1", port: int = 9002):
    """Run the Flask API server (blocking)."""
    app = create_app()
    app.run(host=host, port=port, threaded=True)


async def run_with_api(
    orchestrator: "Orchestrator",
    host: str = "127.0.0.1",
    port: int = 9002,
    stop_event: Optional[asyncio.Event] = None,
):
    """
    Run orchestrator with HTTP API.

    Starts the orchestrator and runs the Flask API in a daemon thread
    until stop_event is set or the orchestrator stops.
    """
    set_orchestrator(orchestrator)

    await orchestrator.start()

    api_thread = threading.Thread(
        target=run_api_server,
        kwargs={"host": host, "port": port},
        daemon=True,
    )
    api_thread.start()
    log.info("research.api.server_started", host=host, port=port)

    try:
        while orchestrator.is_running:
            if stop_event is not None and stop_event.is_set():
                break
            await asyncio.sleep(1)
    finally:
        await orchestrator.stop()
