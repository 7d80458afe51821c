from __future__ import annotations

from ..extensions import db
from stocksync.time_utils import to_utc_z


# Run status lifecycle:
#   running  -> completed | failed
#   dry_run  -> dry_run_completed | failed
RUN_STATUS_RUNNING = "running"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"
RUN_STATUS_DRY_RUN = "dry_run"
RUN_STATUS_DRY_RUN_COMPLETED = "dry_run_completed"

OPEN_RUN_STATUSES = (RUN_STATUS_RUNNING, RUN_STATUS_DRY_RUN)

LOCK_TYPES = ("push", "bulk_transfer", "recount", "reconciliation", "manual_adjustment")


class ReconciliationRun(db.Model):
    """
    One reconciliation pass over one store.

    Created when the store's pass starts and finalized exactly once, either
    at the end of the pass, in its exception handler, or by the stale-run
    reaper (maintenance_service.reap_stale_runs) if the process died mid-run.
    """
    __tablename__ = "reconciliation_runs"
    __table_args__ = (
        db.Index("ix_reconciliation_runs_store_started", "store_key", "started_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_key = db.Column(db.String(64), nullable=False, index=True)

    mode = db.Column(db.String(16), nullable=False)
    run_type = db.Column(db.String(48), nullable=False)
    dry_run = db.Column(db.Boolean, nullable=False, default=False)
    truth_mode = db.Column(db.String(16), nullable=True)
    fetch_method = db.Column(db.String(32), nullable=True)

    status = db.Column(db.String(24), nullable=False, index=True)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    items_checked = db.Column(db.Integer, nullable=False, default=0)
    drift_detected = db.Column(db.Integer, nullable=False, default=0)
    drift_fixed = db.Column(db.Integer, nullable=False, default=0)
    errors = db.Column(db.Integer, nullable=False, default=0)
    skipped_locked = db.Column(db.Integer, nullable=False, default=0)

    error_code = db.Column(db.String(32), nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    metadata_json = db.Column(db.JSON, nullable=True)

    location_stats = db.relationship(
        "ReconciliationLocationStat",
        backref="run",
        lazy=True,
        cascade="all, delete-orphan",
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RUN_STATUSES

    def __repr__(self) -> str:
        return f"<ReconciliationRun id={self.id} store={self.store_key!r} status={self.status}>"

    def to_dict(self, include_locations: bool = False) -> dict:
        data = {
            "id": self.id,
            "store_key": self.store_key,
            "mode": self.mode,
            "run_type": self.run_type,
            "dry_run": self.dry_run,
            "truth_mode": self.truth_mode,
            "fetch_method": self.fetch_method,
            "status": self.status,
            "started_at": to_utc_z(self.started_at),
            "completed_at": to_utc_z(self.completed_at),
            "items_checked": self.items_checked,
            "drift_detected": self.drift_detected,
            "drift_fixed": self.drift_fixed,
            "errors": self.errors,
            "skipped_locked": self.skipped_locked,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "metadata": self.metadata_json or {},
        }
        if include_locations:
            data["location_stats"] = [ls.to_dict() for ls in self.location_stats]
        return data


class ReconciliationLocationStat(db.Model):
    __tablename__ = "reconciliation_location_stats"
    __table_args__ = (
        db.UniqueConstraint("run_id", "location_gid", name="uq_reconciliation_location_stats_run_location"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey("reconciliation_runs.id"), nullable=False, index=True)
    store_key = db.Column(db.String(64), nullable=False)
    location_gid = db.Column(db.String(128), nullable=False)
    location_name = db.Column(db.String(255), nullable=True)

    items_checked = db.Column(db.Integer, nullable=False, default=0)
    drift_detected = db.Column(db.Integer, nullable=False, default=0)
    drift_fixed = db.Column(db.Integer, nullable=False, default=0)
    errors = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "store_key": self.store_key,
            "location_gid": self.location_gid,
            "location_name": self.location_name,
            "items_checked": self.items_checked,
            "drift_detected": self.drift_detected,
            "drift_fixed": self.drift_fixed,
            "errors": self.errors,
        }


class InventoryWriteLock(db.Model):
    """
    Advisory lease on (store_key, sku).

    NOT a mutex: nothing in the database prevents a write to a locked SKU.
    Callers that mutate remote inventory acquire one first; readers that
    would overwrite local rows (reconciliation, resync) check and skip.
    An expired row is dead and gets deleted by the next reap.
    """
    __tablename__ = "inventory_write_locks"
    __table_args__ = (
        db.UniqueConstraint("store_key", "sku", name="uq_inventory_write_locks_store_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_key = db.Column(db.String(64), nullable=False)
    sku = db.Column(db.String(64), nullable=False)

    lock_type = db.Column(db.String(32), nullable=False)
    locked_by = db.Column(db.String(128), nullable=False)
    batch_id = db.Column(db.String(36), nullable=False, index=True)
    context_json = db.Column(db.JSON, nullable=True)

    acquired_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    def to_dict(self) -> dict:
        return {
            "store_key": self.store_key,
            "sku": self.sku,
            "lock_type": self.lock_type,
            "locked_by": self.locked_by,
            "batch_id": self.batch_id,
            "context": self.context_json or {},
            "acquired_at": to_utc_z(self.acquired_at),
            "expires_at": to_utc_z(self.expires_at),
        }
