"""
State Manager for the Research Orchestrator.

Durable storage for jobs, orchestrator state, fingerprints and alerts
using Snapshot + Delta WAL persistence:
1. WAL (Deltas): one JSON line per mutation since the last checkpoint
2. Checkpoint: full in-memory state serialized every 60s
3. Atomic Writes: .tmp -> fsync -> replace

Every mutation goes through a method on this class, and the event loop
is the only writer, so each persisted field has a single owner.
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Any, Iterable

from shared.logging import get_logger

from .models import (
    Alert,
    CandidateFingerprint,
    JobStatus,
    OrchestratorState,
    ResearchJob,
    ResearchMode,
    dump_dt,
    load_dt,
)

log = get_logger("research", "state")


class WALOperation(str, Enum):
    """Types of WAL operations."""
    JOB_ADDED = "job_added"
    JOB_UPDATED = "job_updated"
    DISPATCH_RECORDED = "dispatch_recorded"
    ORCHESTRATOR_UPDATED = "orchestrator_updated"
    FINGERPRINT_UPSERTED = "fingerprint_upserted"
    FINGERPRINTS_PURGED = "fingerprints_purged"
    ALERT_UPSERTED = "alert_upserted"
    ALERT_REMOVED = "alert_removed"
    COUNTER_UPDATED = "counter_updated"


@dataclass
class WALEntry:
    """A single WAL entry."""
    timestamp: float
    operation: WALOperation
    data: dict

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "operation": self.operation.value,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WALEntry":
        return cls(
            timestamp=data["timestamp"],
            operation=WALOperation(data["operation"]),
            data=data["data"],
        )


@dataclass
class CheckpointData:
    """
    Everything the orchestrator persists, for checkpointing.
    """
    jobs: dict[str, ResearchJob] = field(default_factory=dict)
    orchestrator: OrchestratorState = field(default_factory=OrchestratorState)
    fingerprints: dict[str, CandidateFingerprint] = field(default_factory=dict)
    alerts: dict[str, Alert] = field(default_factory=dict)

    # Lifetime counters (submissions, duplicates, restarts, ...)
    counters: dict[str, float] = field(default_factory=dict)

    last_checkpoint: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "jobs": {k: v.to_dict() for k, v in self.jobs.items()},
            "orchestrator": self.orchestrator.to_dict(),
            "fingerprints": {k: v.to_dict() for k, v in self.fingerprints.items()},
            "alerts": {k: v.to_dict() for k, v in self.alerts.items()},
            "counters": self.counters,
            "last_checkpoint": self.last_checkpoint,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CheckpointData":
        return cls(
            jobs={k: ResearchJob.from_dict(v) for k, v in data.get("jobs", {}).items()},
            orchestrator=OrchestratorState.from_dict(data.get("orchestrator", {})),
            fingerprints={
                k: CandidateFingerprint.from_dict(v)
                for k, v in data.get("fingerprints", {}).items()
            },
            alerts={k: Alert.from_dict(v) for k, v in data.get("alerts", {}).items()},
            counters=dict(data.get("counters", {})),
            last_checkpoint=data.get("last_checkpoint", time.time()),
        )


class StateManager:
    """
    Manages orchestrator state with WAL + checkpoint persistence.
    """

    def __init__(self, checkpoint_dir: str = "data/research_orchestrator", checkpoint_interval: int = 60):
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

        self.checkpoint_path = self.checkpoint_dir / "checkpoint.json"
        self.wal_path = self.checkpoint_dir / "wal.jsonl"

        self.checkpoint_interval = checkpoint_interval
        self._running = False
        self._checkpoint_task: Optional[asyncio.Task] = None

        # In-memory state
        self.data = CheckpointData()

        self._wal_file: Optional[Any] = None
        self.loaded = False

    @property
    def orchestrator(self) -> OrchestratorState:
        return self.data.orchestrator

    def load(self):
        """Load state from checkpoint + WAL and open the WAL for appending."""
        if self.checkpoint_path.exists():
            try:
                with open(self.checkpoint_path, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                self.data = CheckpointData.from_dict(raw)
                log.info("research.state.checkpoint_loaded",
                         jobs=len(self.data.jobs),
                         fingerprints=len(self.data.fingerprints),
                         last_checkpoint=self.data.last_checkpoint)
            except (OSError, ValueError, KeyError) as e:
                log.error("research.state.checkpoint_load_failed", error=str(e))
                self.data = CheckpointData()

        if self.wal_path.exists():
            entries_replayed = 0
            skipped = 0
            with open(self.wal_path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = WALEntry.from_dict(json.loads(line))
                        self._apply_wal_entry(entry)
                        entries_replayed += 1
                    except (ValueError, KeyError) as e:
                        # Torn write at crash time; later lines may still be good
                        skipped += 1
                        log.warning("research.state.wal_entry_skipped", error=str(e))

            if entries_replayed or skipped:
                log.info("research.state.wal_replayed",
                         entries=entries_replayed, skipped=skipped)

        for job in self.data.jobs.values():
            if job.status == JobStatus.RUNNING:
                log.warning("research.state.job_needs_recovery",
                            job_id=job.id, mode=job.mode.value)

        self._wal_file = open(self.wal_path, "a", encoding="utf-8")
        self.loaded = True

    async def startup(self):
        """Load persisted state (unless already loaded) and start the checkpoint loop."""
        if not self.loaded:
            self.load()

        self._running = True
        self._checkpoint_task = asyncio.create_task(self._checkpoint_loop())

        log.info("research.state.started",
                 jobs=len(self.data.jobs),
                 fingerprints=len(self.data.fingerprints),
                 alerts=len(self.data.alerts))

    async def shutdown(self):
        """Save final checkpoint and stop."""
        self._running = False

        if self._checkpoint_task:
            self._checkpoint_task.cancel()
            try:
                await self._checkpoint_task
            except asyncio.CancelledError:
                pass
            self._checkpoint_task = None

        self.close()
        log.info("research.state.shutdown")

    def close(self):
        """Flush a final checkpoint and close the WAL."""
        self.save_checkpoint()

        if self._wal_file:
            self._wal_file.close()
            self._wal_file = None

    async def _checkpoint_loop(self):
        """Periodically save full checkpoint."""
        while self._running:
            try:
                await asyncio.sleep(self.checkpoint_interval)
                self.save_checkpoint()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "research.state.checkpoint_error", {})

    def save_checkpoint(self):
        """Atomically save full state to checkpoint file."""
        self.data.last_checkpoint = time.time()

        temp_path = self.checkpoint_path.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(self.data.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.replace(temp_path, self.checkpoint_path)

            # Truncate WAL, the checkpoint now covers it
            if self._wal_file:
                self._wal_file.close()
                self._wal_file = open(self.wal_path, "w", encoding="utf-8")

            log.debug("research.state.checkpoint_saved",
                      jobs=len(self.data.jobs))

        except OSError as e:
            log.error("research.state.checkpoint_save_failed", error=str(e))
            if temp_path.exists():
                temp_path.unlink()

    def _write_wal(self, operation: WALOperation, data: dict):
        """Write a WAL entry."""
        if not self._wal_file:
            return

        entry = WALEntry(
            timestamp=time.time(),
            operation=operation,
            data=data,
        )

        try:
            self._wal_file.write(json.dumps(entry.to_dict()) + "\n")
            self._wal_file.flush()
        except OSError as e:
            log.error("research.state.wal_write_failed", error=str(e))

    def _apply_wal_entry(self, entry: WALEntry):
        """Apply a WAL entry to in-memory state."""
        op = entry.operation
        data = entry.data

        if op in (WALOperation.JOB_ADDED, WALOperation.JOB_UPDATED):
            job = ResearchJob.from_dict(data)
            self.data.jobs[job.id] = job

        elif op == WALOperation.DISPATCH_RECORDED:
            if data.get("job"):
                job = ResearchJob.from_dict(data["job"])
                self.data.jobs[job.id] = job
            self.data.orchestrator.set_last_run(
                ResearchMode(data["mode"]), load_dt(data["at"])
            )

        elif op == WALOperation.ORCHESTRATOR_UPDATED:
            self.data.orchestrator = OrchestratorState.from_dict(data)

        elif op == WALOperation.FINGERPRINT_UPSERTED:
            fp = CandidateFingerprint.from_dict(data)
            self.data.fingerprints[fp.fingerprint_hash] = fp

        elif op == WALOperation.FINGERPRINTS_PURGED:
            for fingerprint_hash in data["hashes"]:
                self.data.fingerprints.pop(fingerprint_hash, None)

        elif op == WALOperation.ALERT_UPSERTED:
            alert = Alert.from_dict(data)
            self.data.alerts[alert.id] = alert

        elif op == WALOperation.ALERT_REMOVED:
            self.data.alerts.pop(data["alert_id"], None)

        elif op == WALOperation.COUNTER_UPDATED:
            self.data.counters[data["name"]] = data["value"]

    # ==================== Jobs ====================

    def add_job(self, job: ResearchJob):
        """Insert a new job."""
        self.data.jobs[job.id] = job
        self._write_wal(WALOperation.JOB_ADDED, job.to_dict())

    def save_job(self, job: ResearchJob):
        """Persist the current fields of an existing job."""
        self.data.jobs[job.id] = job
        self._write_wal(WALOperation.JOB_UPDATED, job.to_dict())

    def record_dispatch(self, mode: ResearchMode, at: datetime, job: Optional[ResearchJob] = None):
        """
        Insert a dispatched job and advance the mode's last-run time.

        One WAL entry covers both, so a crash cannot leave a job without
        its timestamp (double-scheduling on restart) or the reverse.
        """
        if job is not None:
            self.data.jobs[job.id] = job
        self.data.orchestrator.set_last_run(mode, at)
        self._write_wal(WALOperation.DISPATCH_RECORDED, {
            "mode": mode.value,
            "at": dump_dt(at),
            "job": job.to_dict() if job else None,
        })

    def get_job(self, job_id: str) -> Optional[ResearchJob]:
        return self.data.jobs.get(job_id)

    def get_all_jobs(self) -> list[ResearchJob]:
        return list(self.data.jobs.values())

    def get_jobs_by_status(self, status: JobStatus) -> list[ResearchJob]:
        return [j for j in list(self.data.jobs.values()) if j.status == status]

    # ==================== Orchestrator state ====================

    def save_orchestrator(self):
        """Persist the current orchestrator state."""
        self._write_wal(WALOperation.ORCHESTRATOR_UPDATED, self.data.orchestrator.to_dict())

    # ==================== Fingerprints ====================

    def get_fingerprint(self, fingerprint_hash: str) -> Optional[CandidateFingerprint]:
        return self.data.fingerprints.get(fingerprint_hash)

    def put_fingerprint(self, fingerprint: CandidateFingerprint):
        self.data.fingerprints[fingerprint.fingerprint_hash] = fingerprint
        self._write_wal(WALOperation.FINGERPRINT_UPSERTED, fingerprint.to_dict())

    def purge_fingerprints(self, hashes: Iterable[str]) -> int:
        hashes = [h for h in hashes if h in self.data.fingerprints]
        for fingerprint_hash in hashes:
            del self.data.fingerprints[fingerprint_hash]
        if hashes:
            self._write_wal(WALOperation.FINGERPRINTS_PURGED, {"hashes": hashes})
        return len(hashes)

    # ==================== Alerts ====================

    def get_alerts(self) -> list[Alert]:
        return list(self.data.alerts.values())

    def put_alert(self, alert: Alert):
        self.data.alerts[alert.id] = alert
        self._write_wal(WALOperation.ALERT_UPSERTED, alert.to_dict())

    def remove_alert(self, alert_id: str):
        if self.data.alerts.pop(alert_id, None) is not None:
            self._write_wal(WALOperation.ALERT_REMOVED, {"alert_id": alert_id})

    # ==================== Counters ====================

    def get_counter(self, name: str) -> float:
        return self.data.counters.get(name, 0)

    def increment_counter(self, name: str, amount: float = 1) -> float:
        """Increment a lifetime counter and return new value."""
        value = self.get_counter(name) + amount
        self.data.counters[name] = value
        self._write_wal(WALOperation.COUNTER_UPDATED, {"name": name, "value": value})
        return value
