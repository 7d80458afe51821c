# Overview: Inbound reconciliation: fetch remote levels, compare with local rows, apply the store's truth policy.

"""
Reconciliation Engine

RUN LIFECYCLE (one ReconciliationRun per store per invocation):
    running | dry_run  ->  fetch  ->  apply  ->  completed | dry_run_completed | failed

The run row is committed before anything else happens so a crash leaves
an open run behind for maintenance_service.reap_stale_runs to close.
Stores are processed one after another; an exception fails only the
current store's run.

FETCH BY MODE:
- full: bulk export; refused or timed out falls back to the paginated
  walk, capped by max_items or PAGINATED_MAX_ITEMS.
- drift_only: targeted fetch of items flagged with drift.
- missing_only: targeted fetch of items never seen remotely.

APPLY, per fact, per batch of RECONCILE_BATCH_SIZE:
1. Upsert the mirror row (audit trail). Mirror rows record remote truth
   only, so they are written for locked SKUs too.
2. Locked SKU -> skipped_locked, no InventoryItem writes.
3. Matched rows (store, inventory item id, location) get the truth
   policy: `shopify` overwrites quantity, `database` only flags drift.

DRY RUN: same fetch and comparison, same counters; the run row is the
only thing written.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from stocksync.extensions import db
from stocksync.models import InventoryItem, InventoryLevelMirror, ReconciliationLocationStat, ReconciliationRun, Store
from stocksync.models.stores import TRUTH_MODE_DATABASE
from stocksync.models.sync import (
    RUN_STATUS_COMPLETED,
    RUN_STATUS_DRY_RUN,
    RUN_STATUS_DRY_RUN_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_RUNNING,
)
from stocksync.time_utils import utcnow, elapsed_ms
from . import lock_service, maintenance_service, marketplace_client
from .concurrency import chunked, run_with_retry
from .config_resolver import CredentialsMissingError, require_credentials
from .fetch_service import (
    FETCH_METHOD_BULK,
    FETCH_METHOD_NONE,
    FETCH_METHOD_PAGINATED,
    FETCH_METHOD_TARGETED,
    BulkOperationError,
    InventoryFetcher,
    LevelFact,
    cap_items,
)
from .marketplace_client import RateLimitedError, Retrier


MODE_FULL = "full"
MODE_DRIFT_ONLY = "drift_only"
MODE_MISSING_ONLY = "missing_only"
MODES = (MODE_FULL, MODE_DRIFT_ONLY, MODE_MISSING_ONLY)

RUN_TYPES = {
    MODE_FULL: "inventory_reconcile_full",
    MODE_DRIFT_ONLY: "inventory_reconcile_drift",
    MODE_MISSING_ONLY: "inventory_reconcile_missing",
}

ERROR_CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
ERROR_BULK_OP_FAILED = "BULK_OP_FAILED"
ERROR_RATE_LIMITED = "RATE_LIMITED"
ERROR_DATABASE = "DATABASE_ERROR"
ERROR_UNKNOWN = "UNKNOWN"

SOLD_CHANNEL = "shopify_reconcile"
DRIFT_DETECTOR = "reconcile_job"

OUTCOME_DRIFT_FIXED = "drift_fixed"
OUTCOME_DRIFT_DETECTED = "drift_detected"


class ReconcileError(Exception):
    """Raised when a reconciliation request cannot start."""
    pass


class StoreNotFoundError(ReconcileError):
    """Raised when reconciliation targets a store key that does not exist."""
    pass


def classify_error(exc: BaseException) -> str:
    if isinstance(exc, CredentialsMissingError):
        return ERROR_CREDENTIALS_MISSING
    if isinstance(exc, BulkOperationError):
        return ERROR_BULK_OP_FAILED
    if isinstance(exc, RateLimitedError):
        return ERROR_RATE_LIMITED
    if isinstance(exc, SQLAlchemyError):
        return ERROR_DATABASE
    return ERROR_UNKNOWN


@dataclass
class LocationCounters:
    location_gid: str
    location_name: str | None = None
    items_checked: int = 0
    drift_detected: int = 0
    drift_fixed: int = 0
    errors: int = 0


@dataclass
class RunStats:
    items_checked: int = 0
    drift_detected: int = 0
    drift_fixed: int = 0
    errors: int = 0
    skipped_locked: int = 0
    locations: dict = field(default_factory=dict)

    def location(self, fact: LevelFact) -> LocationCounters:
        counters = self.locations.get(fact.location_gid)
        if counters is None:
            counters = LocationCounters(fact.location_gid, fact.location_name)
            self.locations[fact.location_gid] = counters
        return counters

    def count(self, fact: LevelFact, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)
        loc = self.location(fact)
        setattr(loc, outcome, getattr(loc, outcome) + 1)

    def to_dict(self) -> dict:
        return {
            "items_checked": self.items_checked,
            "drift_detected": self.drift_detected,
            "drift_fixed": self.drift_fixed,
            "errors": self.errors,
            "skipped_locked": self.skipped_locked,
            "locations_processed": len(self.locations),
        }

    def summary(self) -> str:
        return (
            f"Checked {self.items_checked} items, fixed {self.drift_fixed} drift, "
            f"detected {self.drift_detected} new drift, {self.errors} errors, "
            f"skipped {self.skipped_locked} locked"
        )


@dataclass
class StoreOutcome:
    store_key: str
    success: bool
    run_id: int | None
    fetch_method: str | None
    stats: RunStats
    duration_ms: int
    error: str | None = None
    error_code: str | None = None

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "run_id": self.run_id,
            "fetch_method": self.fetch_method,
            "stats": self.stats.to_dict(),
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            data["error"] = self.error
            data["error_code"] = self.error_code
        return data


@dataclass
class ReconcileReport:
    mode: str
    dry_run: bool
    duration_ms: int = 0
    results: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(outcome.success for outcome in self.results.values())

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "mode": self.mode,
            "dry_run": self.dry_run,
            "duration_ms": self.duration_ms,
            "stores_processed": len(self.results),
            "results": {key: outcome.to_dict() for key, outcome in self.results.items()},
        }


# --- truth policies ---------------------------------------------------------

def _plan_shopify_truth(item: InventoryItem, fact: LevelFact, now) -> tuple[dict, str | None]:
    """Remote wins: local quantity becomes the remote quantity."""
    remote = max(0, int(fact.available))
    changes: dict = {"quantity": remote, "last_shopify_seen_at": now}
    outcome = None

    if item.shopify_drift or (item.quantity or 0) != remote:
        outcome = OUTCOME_DRIFT_FIXED
    if item.shopify_drift:
        changes.update(shopify_drift=False, shopify_drift_detected_at=None, shopify_drift_details=None)
    if remote == 0 and item.sold_at is None:
        changes.update(sold_at=now, sold_channel=SOLD_CHANNEL)
    return changes, outcome


def _drift_details(expected: int, actual: int, fact: LevelFact, now) -> dict:
    return {
        "expected": expected,
        "actual": actual,
        "location_gid": fact.location_gid,
        "location_name": fact.location_name,
        "detected_by": DRIFT_DETECTOR,
        "detected_at": now.isoformat(),
        "mode": "database_truth",
    }


def _plan_database_truth(item: InventoryItem, fact: LevelFact, now) -> tuple[dict, str | None]:
    """Local wins: quantity is never touched, drift is flagged for a human."""
    local = item.quantity or 0
    remote = int(fact.available)
    changes: dict = {"last_shopify_seen_at": now}

    if local != remote and not item.shopify_drift:
        changes.update(
            shopify_drift=True,
            shopify_drift_detected_at=now,
            shopify_drift_details=_drift_details(local, remote, fact, now),
        )
        return changes, OUTCOME_DRIFT_DETECTED

    if local == remote and item.shopify_drift:
        changes.update(shopify_drift=False, shopify_drift_detected_at=None, shopify_drift_details=None)
        return changes, OUTCOME_DRIFT_FIXED

    if local != remote:
        details = item.shopify_drift_details or {}
        if details.get("expected") != local or details.get("actual") != remote:
            # Still drifted, but by a different amount than first recorded
            refreshed = _drift_details(local, remote, fact, now)
            refreshed["detected_at"] = details.get("detected_at", refreshed["detected_at"])
            changes["shopify_drift_details"] = refreshed
    return changes, None


# --- fetch ------------------------------------------------------------------

def _targeted_ids(store_key: str, mode: str, max_items: int | None) -> list[str]:
    query = db.session.query(InventoryItem.shopify_inventory_item_id).filter(
        InventoryItem.store_key == store_key,
        InventoryItem.deleted_at.is_(None),
        InventoryItem.shopify_inventory_item_id.isnot(None),
    )
    if mode == MODE_DRIFT_ONLY:
        query = query.filter(InventoryItem.shopify_drift.is_(True))
    else:
        query = query.filter(InventoryItem.last_shopify_seen_at.is_(None))

    ids: list[str] = []
    seen = set()
    for (item_id,) in query.order_by(InventoryItem.id.asc()).all():
        if item_id in seen:
            continue
        seen.add(item_id)
        ids.append(item_id)
        if max_items and len(ids) >= max_items:
            break
    return ids


def _fetch_levels(fetcher: InventoryFetcher, store_key: str, mode: str, max_items: int | None, meta: dict):
    if mode != MODE_FULL:
        ids = _targeted_ids(store_key, mode, max_items)
        current_app.logger.info("[RECONCILE] %s: %d items selected for %s", store_key, len(ids), mode)
        if not ids:
            return [], FETCH_METHOD_NONE
        return fetcher.fetch_targeted(ids), FETCH_METHOD_TARGETED

    def _progress(status: str, object_count: int) -> None:
        meta["bulk_status"] = status
        meta["bulk_object_count"] = object_count

    handle = fetcher.start_bulk_export()
    result = fetcher.poll_bulk_export(handle, _progress) if handle else None
    if result is not None:
        facts = fetcher.parse_bulk_result(result)
        return cap_items(facts, max_items), FETCH_METHOD_BULK

    cap = max_items or int(current_app.config["PAGINATED_MAX_ITEMS"])
    current_app.logger.warning("[RECONCILE] %s: bulk export unavailable, paginating (cap %d)", store_key, cap)
    return fetcher.fetch_paginated(max_items=cap), FETCH_METHOD_PAGINATED


# --- apply ------------------------------------------------------------------

def _upsert_mirror(store_key: str, batch: list[LevelFact], now) -> None:
    item_ids = {fact.inventory_item_id for fact in batch}
    existing = {
        (row.inventory_item_id, row.location_gid): row
        for row in db.session.query(InventoryLevelMirror).filter(
            InventoryLevelMirror.store_key == store_key,
            InventoryLevelMirror.inventory_item_id.in_(item_ids),
        )
    }
    for fact in batch:
        key = (fact.inventory_item_id, fact.location_gid)
        row = existing.get(key)
        if row is None:
            row = InventoryLevelMirror(
                store_key=store_key,
                inventory_item_id=fact.inventory_item_id,
                location_gid=fact.location_gid,
            )
            db.session.add(row)
            existing[key] = row
        row.location_name = fact.location_name
        row.available = int(fact.available)
        row.shopify_updated_at = fact.shopify_updated_at
        row.last_reconciled_at = now
        row.updated_at = now


def _matching_items(store_key: str, batch: list[LevelFact]) -> dict:
    item_ids = {fact.inventory_item_id for fact in batch}
    grouped: dict = defaultdict(list)
    rows = db.session.query(InventoryItem).filter(
        InventoryItem.store_key == store_key,
        InventoryItem.deleted_at.is_(None),
        InventoryItem.shopify_inventory_item_id.in_(item_ids),
    ).order_by(InventoryItem.id.asc())
    for row in rows:
        grouped[(row.shopify_inventory_item_id, row.shopify_location_gid)].append(row)
    return grouped


def apply_levels(store_key: str, truth_mode: str, facts: list[LevelFact], stats: RunStats, *, dry_run: bool = False) -> RunStats:
    """Compare facts to local rows and, unless dry_run, write the outcome. Commits per batch."""
    plan = _plan_database_truth if truth_mode == TRUTH_MODE_DATABASE else _plan_shopify_truth
    batch_size = int(current_app.config["RECONCILE_BATCH_SIZE"])

    for batch in chunked(facts, batch_size):
        now = utcnow()

        if not dry_run:
            try:
                with db.session.begin_nested():
                    _upsert_mirror(store_key, batch, now)
            except SQLAlchemyError:
                current_app.logger.exception("[RECONCILE] %s: mirror upsert failed for %d levels", store_key, len(batch))
                stats.errors += len(batch)
                continue

        matches = _matching_items(store_key, batch)
        candidate_skus = {fact.sku for fact in batch if fact.sku}
        for rows in matches.values():
            candidate_skus.update(row.sku for row in rows)
        locked = lock_service.is_locked(store_key, candidate_skus)

        for fact in batch:
            items = matches.get((fact.inventory_item_id, fact.location_gid), [])
            if (fact.sku and fact.sku in locked) or any(item.sku in locked for item in items):
                stats.skipped_locked += 1
                continue

            stats.count(fact, "items_checked")
            planned = [(item, *plan(item, fact, now)) for item in items]

            if not dry_run and planned:
                try:
                    with db.session.begin_nested():
                        for item, changes, _ in planned:
                            for attr, value in changes.items():
                                setattr(item, attr, value)
                        db.session.flush()
                except SQLAlchemyError:
                    current_app.logger.exception(
                        "[RECONCILE] %s: failed to apply level for item %s at %s",
                        store_key, fact.inventory_item_id, fact.location_gid,
                    )
                    stats.count(fact, "errors")
                    continue

            for _, _, outcome in planned:
                if outcome:
                    stats.count(fact, outcome)

        if not dry_run:
            db.session.commit()

    return stats


# --- run record -------------------------------------------------------------

def _open_run(store: Store, mode: str, dry_run: bool, triggered_by: str, max_items: int | None) -> ReconciliationRun:
    def _op() -> ReconciliationRun:
        run = ReconciliationRun(
            store_key=store.key,
            mode=mode,
            run_type=RUN_TYPES[mode],
            dry_run=dry_run,
            truth_mode=store.inventory_truth_mode,
            status=RUN_STATUS_DRY_RUN if dry_run else RUN_STATUS_RUNNING,
            started_at=utcnow(),
            metadata_json={
                "mode": mode,
                "truth_mode": store.inventory_truth_mode,
                "triggered_by": triggered_by,
                "max_items": max_items,
            },
        )
        db.session.add(run)
        db.session.commit()
        return run

    return run_with_retry(_op)


def _finalize_run(
    run_id: int,
    *,
    status: str,
    stats: RunStats,
    fetch_method: str | None,
    metadata: dict,
    persist_locations: bool,
    error_code: str | None = None,
    error_message: str | None = None,
) -> bool:
    """Close the run. Returns False if something already closed it."""
    def _op() -> bool:
        run = db.session.get(ReconciliationRun, run_id)
        if run is None or not run.is_open:
            return False
        run.status = status
        run.completed_at = utcnow()
        run.fetch_method = fetch_method
        run.items_checked = stats.items_checked
        run.drift_detected = stats.drift_detected
        run.drift_fixed = stats.drift_fixed
        run.errors = stats.errors
        run.skipped_locked = stats.skipped_locked
        run.error_code = error_code
        run.error_message = error_message
        run.metadata_json = dict(run.metadata_json or {}, **metadata)
        if persist_locations:
            for counters in stats.locations.values():
                db.session.add(
                    ReconciliationLocationStat(
                        run_id=run.id,
                        store_key=run.store_key,
                        location_gid=counters.location_gid,
                        location_name=counters.location_name,
                        items_checked=counters.items_checked,
                        drift_detected=counters.drift_detected,
                        drift_fixed=counters.drift_fixed,
                        errors=counters.errors,
                    )
                )
        db.session.commit()
        return True

    finalized = run_with_retry(_op)
    if not finalized:
        current_app.logger.warning("[RECONCILE] run %s was already finalized", run_id)
    return finalized


# --- orchestration ----------------------------------------------------------

def _reconcile_store(
    store: Store,
    mode: str,
    *,
    dry_run: bool,
    max_items: int | None,
    triggered_by: str,
    client_factory,
    sleep,
    clock,
) -> StoreOutcome:
    started = time.monotonic()
    config = current_app.config
    store_key = store.key
    run = _open_run(store, mode, dry_run, triggered_by, max_items)
    run_id = run.id

    stats = RunStats()
    fetch_method = None
    meta: dict = {}
    retrier = Retrier.from_config(config, sleep=sleep)

    try:
        credentials = require_credentials(store_key)
        meta["truth_mode"] = credentials.truth_mode

        factory = client_factory or marketplace_client.build_client
        with factory(credentials, retrier) as client:
            fetcher = InventoryFetcher.from_config(client, config, sleep=sleep, clock=clock)
            facts, fetch_method = _fetch_levels(fetcher, store_key, mode, max_items, meta)

        if fetcher.skipped_ids:
            current_app.logger.warning("[RECONCILE] %s: %d items skipped by failed fetch batches", store_key, len(fetcher.skipped_ids))
            stats.errors += len(fetcher.skipped_ids)
            meta["fetch_skipped_items"] = len(fetcher.skipped_ids)

        current_app.logger.info("[RECONCILE] %s: %d levels via %s", store_key, len(facts), fetch_method)

        if not dry_run:
            lock_service.reap_expired()
        apply_levels(store_key, credentials.truth_mode, facts, stats, dry_run=dry_run)

        duration = elapsed_ms(started, time.monotonic())
        meta.update(
            fetch_method=fetch_method,
            levels_fetched=len(facts),
            duration_ms=duration,
            locations_processed=len(stats.locations),
            http_calls=retrier.calls,
            http_retries=retrier.retries,
            summary=stats.summary(),
        )
        _finalize_run(
            run_id,
            status=RUN_STATUS_DRY_RUN_COMPLETED if dry_run else RUN_STATUS_COMPLETED,
            stats=stats,
            fetch_method=fetch_method,
            metadata=meta,
            persist_locations=not dry_run,
        )
        current_app.logger.info("[RECONCILE] %s run %s: %s", store_key, run_id, stats.summary())
        return StoreOutcome(store_key, True, run_id, fetch_method, stats, duration)

    except Exception as exc:
        db.session.rollback()
        code = classify_error(exc)
        current_app.logger.exception("[RECONCILE] %s run %s failed (%s)", store_key, run_id, code)
        duration = elapsed_ms(started, time.monotonic())
        meta.update(fetch_method=fetch_method, duration_ms=duration, error_details=repr(exc))
        _finalize_run(
            run_id,
            status=RUN_STATUS_FAILED,
            stats=stats,
            fetch_method=fetch_method,
            metadata=meta,
            persist_locations=False,
            error_code=code,
            error_message=str(exc),
        )
        return StoreOutcome(store_key, False, run_id, fetch_method, stats, duration, error=str(exc), error_code=code)


def _select_stores(store_key: str | None) -> list[Store]:
    if store_key:
        store = db.session.query(Store).filter_by(key=store_key.strip().lower()).first()
        if store is None:
            raise StoreNotFoundError(f"Unknown store: {store_key}")
        return [store]
    return db.session.query(Store).filter_by(is_active=True).order_by(Store.key.asc()).all()


def reconcile(
    mode: str = MODE_FULL,
    store_key: str | None = None,
    *,
    dry_run: bool = False,
    max_items: int | None = None,
    triggered_by: str | None = None,
    client_factory=None,
    sleep=None,
    clock=None,
) -> ReconcileReport:
    """
    Reconcile one store (store_key) or every active store, sequentially.

    client_factory(credentials, retrier) -> ShopifyClient context manager;
    defaults to marketplace_client.build_client. Each store gets its own
    Retrier so backoff state never crosses stores.
    """
    if mode not in MODES:
        raise ReconcileError(f"mode must be one of {', '.join(MODES)}")
    if max_items is not None and max_items < 1:
        raise ReconcileError("max_items must be a positive integer")

    started = time.monotonic()
    stores = _select_stores(store_key)
    triggered_by = triggered_by or ("manual" if store_key else "scheduled")

    if not dry_run:
        maintenance_service.reap_stale_runs()

    current_app.logger.info(
        "[RECONCILE] starting mode=%s dry_run=%s stores=%s",
        mode, dry_run, ",".join(s.key for s in stores) or "none",
    )
    report = ReconcileReport(mode=mode, dry_run=dry_run)
    for store in stores:
        report.results[store.key] = _reconcile_store(
            store,
            mode,
            dry_run=dry_run,
            max_items=max_items,
            triggered_by=triggered_by,
            client_factory=client_factory,
            sleep=sleep,
            clock=clock,
        )
    report.duration_ms = elapsed_ms(started, time.monotonic())
    return report


# --- history ----------------------------------------------------------------

def list_runs(*, store_key: str | None = None, status: str | None = None, limit: int = 50) -> list[ReconciliationRun]:
    query = db.session.query(ReconciliationRun)
    if store_key:
        query = query.filter(ReconciliationRun.store_key == store_key)
    if status:
        query = query.filter(ReconciliationRun.status == status)
    return query.order_by(ReconciliationRun.started_at.desc(), ReconciliationRun.id.desc()).limit(limit).all()


def get_run(run_id: int) -> ReconciliationRun | None:
    return db.session.get(ReconciliationRun, run_id)
