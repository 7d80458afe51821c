# Overview: Service-layer housekeeping; finalizes runs abandoned by a crashed process.

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import ReconciliationRun
from ..models.sync import OPEN_RUN_STATUSES, RUN_STATUS_FAILED
from stocksync.time_utils import utcnow
from .concurrency import run_with_retry


STALE_RUN_ERROR_CODE = "STALE_RUN"


def reap_stale_runs(*, max_age_minutes: int | None = None) -> list[int]:
    """
    Fail runs still open after max_age_minutes (default RUN_MAX_DURATION_MINUTES).

    A run is finalized by its own pass unless the process died first; this
    closes those so dashboards never show a run as running forever.
    Returns the ids it finalized.
    """
    if max_age_minutes is None:
        max_age_minutes = int(current_app.config["RUN_MAX_DURATION_MINUTES"])

    def _op() -> list[int]:
        now = utcnow()
        cutoff = now - timedelta(minutes=max_age_minutes)
        stale = db.session.query(ReconciliationRun).filter(
            ReconciliationRun.status.in_(OPEN_RUN_STATUSES),
            ReconciliationRun.started_at < cutoff,
        ).all()
        for run in stale:
            run.status = RUN_STATUS_FAILED
            run.completed_at = now
            run.error_code = STALE_RUN_ERROR_CODE
            run.error_message = f"Run exceeded {max_age_minutes} minutes without finishing"
        db.session.commit()
        return [run.id for run in stale]

    reaped = run_with_retry(_op)
    if reaped:
        current_app.logger.warning("[RUNS] finalized %d stale runs: %s", len(reaped), reaped)
    return reaped
