# Overview: Advisory (store, SKU) leases; cooperative, TTL-based, never blocking.

"""
Advisory Lock Manager

A lease says "someone is about to remote-mutate this SKU, don't overwrite
its local rows right now". It is a convention between this engine's own
writers, not a database lock:

- acquire() never waits. SKUs already leased by someone else come back in
  LockGrant.failed; the caller skips them instead of retrying.
- Leases expire after LOCK_TTL_MINUTES. A crashed holder cannot wedge a
  SKU for longer than that; its row is dead weight until reap_expired()
  (called opportunistically by reconciliation) deletes it, and acquire()
  reclaims expired rows in place.
- release() is by batch token; release_skus() exists for callers that lost
  their token.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError

from stocksync.extensions import db
from stocksync.models import InventoryWriteLock
from stocksync.models.sync import LOCK_TYPES
from stocksync.time_utils import utcnow, as_utc_naive, to_utc_z
from .concurrency import chunked, run_with_retry


_IN_CLAUSE_CHUNK = 500


class LockError(Exception):
    """Raised when a lock request is malformed."""
    pass


@dataclass
class LockGrant:
    batch_id: str | None
    acquired: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    expires_at: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "batch_id": self.batch_id,
            "acquired_count": len(self.acquired),
            "acquired_skus": self.acquired,
            "failed_skus": self.failed,
            "expires_at": to_utc_z(self.expires_at),
        }


@dataclass(frozen=True)
class LockStatus:
    sku: str
    is_locked: bool
    lock_type: str | None = None
    locked_by: str | None = None
    expires_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "sku": self.sku,
            "is_locked": self.is_locked,
            "lock_type": self.lock_type,
            "locked_by": self.locked_by,
            "expires_at": to_utc_z(self.expires_at),
        }


def lock_ttl(ttl_minutes: int | None = None) -> timedelta:
    """Requested TTL clamped to [1, LOCK_MAX_TTL_MINUTES]; default LOCK_TTL_MINUTES."""
    config = current_app.config
    minutes = ttl_minutes if ttl_minutes is not None else int(config["LOCK_TTL_MINUTES"])
    minutes = max(1, min(int(minutes), int(config["LOCK_MAX_TTL_MINUTES"])))
    return timedelta(minutes=minutes)


def _clean_skus(skus) -> list[str]:
    seen: dict[str, None] = {}
    for sku in skus or []:
        if sku is None:
            continue
        text = str(sku).strip()
        if text:
            seen.setdefault(text, None)
    return list(seen)


def acquire(
    store_key: str,
    skus,
    *,
    lock_type: str = "push",
    locked_by: str = "system",
    ttl_minutes: int | None = None,
    context: dict | None = None,
) -> LockGrant:
    """
    Try to lease every SKU. Partial success is normal: check LockGrant.failed.

    Re-acquiring a SKU the caller does not hold fails even if the same
    `locked_by` holds it; leases are per batch, not per holder.
    """
    if lock_type not in LOCK_TYPES:
        raise LockError(f"lock_type must be one of {', '.join(LOCK_TYPES)}")
    if not store_key:
        raise LockError("store_key is required")

    wanted = _clean_skus(skus)
    if not wanted:
        return LockGrant(batch_id=None)

    ttl = lock_ttl(ttl_minutes)

    def _op() -> LockGrant:
        now = utcnow()
        expires_at = now + ttl
        batch_id = str(uuid.uuid4())
        grant = LockGrant(batch_id=batch_id, expires_at=expires_at)

        for sku in wanted:
            existing = db.session.query(InventoryWriteLock).filter_by(store_key=store_key, sku=sku).first()
            if existing is not None and as_utc_naive(existing.expires_at) > now:
                grant.failed.append(sku)
                continue

            try:
                with db.session.begin_nested():
                    if existing is not None:
                        # Expired lease: reclaim the row in place
                        existing.lock_type = lock_type
                        existing.locked_by = locked_by
                        existing.batch_id = batch_id
                        existing.context_json = context or {}
                        existing.acquired_at = now
                        existing.expires_at = expires_at
                    else:
                        db.session.add(
                            InventoryWriteLock(
                                store_key=store_key,
                                sku=sku,
                                lock_type=lock_type,
                                locked_by=locked_by,
                                batch_id=batch_id,
                                context_json=context or {},
                                acquired_at=now,
                                expires_at=expires_at,
                            )
                        )
            except IntegrityError:
                # Another writer inserted the same (store, sku) between our read and write
                grant.failed.append(sku)
                continue
            grant.acquired.append(sku)

        db.session.commit()
        if not grant.acquired:
            grant.batch_id = None
        return grant

    grant = run_with_retry(_op)
    current_app.logger.info(
        "[LOCK] %s acquired %d/%d leases for %s (batch %s)",
        store_key, len(grant.acquired), len(wanted), lock_type, grant.batch_id,
    )
    return grant


def release(batch_id: str | None) -> int:
    if not batch_id:
        return 0

    def _op() -> int:
        deleted = db.session.query(InventoryWriteLock).filter_by(batch_id=batch_id).delete(synchronize_session=False)
        db.session.commit()
        return deleted

    released = run_with_retry(_op)
    current_app.logger.info("[LOCK] released %d leases for batch %s", released, batch_id)
    return released


def release_skus(store_key: str, skus) -> int:
    wanted = _clean_skus(skus)
    if not wanted:
        return 0

    def _op() -> int:
        deleted = 0
        for chunk in chunked(wanted, _IN_CLAUSE_CHUNK):
            deleted += db.session.query(InventoryWriteLock).filter(
                InventoryWriteLock.store_key == store_key,
                InventoryWriteLock.sku.in_(chunk),
            ).delete(synchronize_session=False)
        db.session.commit()
        return deleted

    return run_with_retry(_op)


def _live_locks(store_key: str, skus: list[str]) -> list[InventoryWriteLock]:
    now = utcnow()
    rows: list[InventoryWriteLock] = []
    for chunk in chunked(skus, _IN_CLAUSE_CHUNK):
        rows.extend(
            db.session.query(InventoryWriteLock).filter(
                InventoryWriteLock.store_key == store_key,
                InventoryWriteLock.sku.in_(chunk),
                InventoryWriteLock.expires_at > now,
            ).all()
        )
    return rows


def is_locked(store_key: str, skus) -> set[str]:
    """Subset of `skus` currently under a live lease. Read-only."""
    wanted = _clean_skus(skus)
    if not wanted:
        return set()
    return {row.sku for row in _live_locks(store_key, wanted)}


def check_locks(store_key: str, skus) -> list[LockStatus]:
    wanted = _clean_skus(skus)
    live = {row.sku: row for row in _live_locks(store_key, wanted)} if wanted else {}
    statuses = []
    for sku in wanted:
        row = live.get(sku)
        if row is None:
            statuses.append(LockStatus(sku=sku, is_locked=False))
        else:
            statuses.append(
                LockStatus(
                    sku=sku,
                    is_locked=True,
                    lock_type=row.lock_type,
                    locked_by=row.locked_by,
                    expires_at=as_utc_naive(row.expires_at),
                )
            )
    return statuses


def filter_locked(store_key: str, skus) -> tuple[list[str], list[str]]:
    """Split `skus` into (unlocked, locked), preserving order."""
    wanted = _clean_skus(skus)
    locked = is_locked(store_key, wanted)
    if locked:
        current_app.logger.info("[LOCK] %s: %d locked SKUs filtered, %d unlocked", store_key, len(locked), len(wanted) - len(locked))
    return [s for s in wanted if s not in locked], [s for s in wanted if s in locked]


def reap_expired() -> int:
    """Delete leases past their expiry. Safe to call from anywhere, any time."""
    def _op() -> int:
        deleted = db.session.query(InventoryWriteLock).filter(
            InventoryWriteLock.expires_at <= utcnow()
        ).delete(synchronize_session=False)
        db.session.commit()
        return deleted

    cleaned = run_with_retry(_op)
    if cleaned:
        current_app.logger.info("[LOCK] reaped %d expired leases", cleaned)
    return cleaned


def list_locks(store_key: str | None = None, *, include_expired: bool = False) -> list[InventoryWriteLock]:
    query = db.session.query(InventoryWriteLock)
    if store_key:
        query = query.filter(InventoryWriteLock.store_key == store_key)
    if not include_expired:
        query = query.filter(InventoryWriteLock.expires_at > utcnow())
    return query.order_by(InventoryWriteLock.store_key.asc(), InventoryWriteLock.sku.asc()).all()
