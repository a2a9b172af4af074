"""Scheduler integration for the provisioning cleanup sweeper."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from vaults_backend.app.provisioning import SweepSummary
from vaults_backend.app.services.provisioning import get_cleanup_sweeper, get_provisioning_config

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_SweepWorker"] = None

_SWEEP_METRICS: Dict[str, object] = {
    "runs": 0,
    "scanned": 0,
    "canceled": 0,
    "promoted": 0,
    "skipped": 0,
    "failures": 0,
    "job_failures": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["runs"] = int(_SWEEP_METRICS.get("runs", 0)) + 1
        _SWEEP_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: SweepSummary) -> None:
    with _metrics_lock:
        for field_name in ("scanned", "canceled", "promoted", "skipped", "failures"):
            _SWEEP_METRICS[field_name] = int(_SWEEP_METRICS.get(field_name, 0)) + getattr(summary, field_name)
        _SWEEP_METRICS["last_success_at"] = completed_at
        _SWEEP_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _SWEEP_METRICS["job_failures"] = int(_SWEEP_METRICS.get("job_failures", 0)) + 1
        _SWEEP_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_sweep_job(*, now: Optional[datetime] = None) -> SweepSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        summary = get_cleanup_sweeper().sweep(now=current_time)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Provisioning sweep job failed")
        raise
    _record_run_success(current_time, summary)
    logger.info("Provisioning sweep job completed", extra=summary.model_dump())
    return summary


class _SweepWorker(Thread):
    def __init__(self, *, interval: float):
        super().__init__(daemon=True, name="provisioning-sweeper")
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        while not self._stop.wait(self._interval):
            try:
                run_sweep_job()
            except Exception:
                # Errors are logged inside run_sweep_job; continue schedule.
                continue


def start_sweep_scheduler(interval_seconds: Optional[float] = None) -> None:
    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return
        interval = interval_seconds or get_provisioning_config().sweep_interval_seconds
        _worker = _SweepWorker(interval=interval)
        _worker.start()
        logger.info("Provisioning sweep scheduler started", extra={"interval_seconds": interval})


def shutdown_sweep_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        worker = _worker
        _worker = None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        logger.info("Provisioning sweep scheduler stopped")


def get_sweep_metrics() -> Dict[str, object]:
    with _metrics_lock:
        return {
            **_SWEEP_METRICS,
            "last_run_at": _SWEEP_METRICS["last_run_at"].isoformat() if _SWEEP_METRICS.get("last_run_at") else None,
            "last_success_at": (
                _SWEEP_METRICS["last_success_at"].isoformat() if _SWEEP_METRICS.get("last_success_at") else None
            ),
        }


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _SWEEP_METRICS.update(
            {
                "runs": 0,
                "scanned": 0,
                "canceled": 0,
                "promoted": 0,
                "skipped": 0,
                "failures": 0,
                "job_failures": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_sweep_metrics",
    "run_sweep_job",
    "shutdown_sweep_scheduler",
    "start_sweep_scheduler",
]
