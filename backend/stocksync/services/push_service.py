# Overview: Outbound push: sum sellable rows per location, set absolute levels remotely.

"""
Push Engine

push_sku() makes the marketplace's available quantity for one SKU equal
to the local sellable total, location by location.

STEPS:
1. Resolve credentials (config_resolver). Missing credentials are terminal.
2. Sum active rows (not deleted, released, quantity > 0) per location.
3. Resolve the remote inventory item id: cached on a row, else looked up
   by SKU. Zero or several matching variants are terminal and recorded.
4. Resolve a remote location id per bucket: the bucket's own gid, else the
   store's configured primary location, else the marketplace's primary,
   first active, or first location. Buckets that land on the same remote
   location are summed.
5. Lease the SKU, then one absolute "set available" call per location.
6. `synced` only if every location call succeeded; otherwise `error` with
   the per-location outcomes joined into one message.

validate_only stops after step 4 and writes `validated` onto the rows.
That write is the point: a pre-flight check the dashboard can show.

INVARIANT: this module never writes InventoryItem.quantity.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field

from flask import current_app

from stocksync.extensions import db
from stocksync.models import InventoryItem
from stocksync.models.inventory import SYNC_STATUS_ERROR, SYNC_STATUS_SYNCED, SYNC_STATUS_VALIDATED
from stocksync.time_utils import utcnow, elapsed_ms
from . import lock_service, marketplace_client
from .concurrency import run_with_retry
from .config_resolver import resolve_store_config
from .marketplace_client import ClientRequestError, MarketplaceError, location_gid as to_location_gid


_LOCATION_ID = re.compile(r"/(\d+)$")

OUTCOME_SUCCESS = "success"

PUSH_LOCKED_BY = "push_engine"


class PushError(Exception):
    """Raised when a push request is malformed."""
    pass


@dataclass
class LocationPush:
    location: str | None
    location_id: str | None
    computed_available: int
    outcome: str = "pending"

    @property
    def ok(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS

    def to_dict(self) -> dict:
        return {
            "location": self.location,
            "location_id": self.location_id,
            "computed_available": self.computed_available,
            "outcome": self.outcome,
        }


@dataclass
class PushResult:
    store_key: str
    sku: str
    success: bool = False
    code: str | None = None
    message: str | None = None
    validate_only: bool = False
    sync_status: str | None = None
    inventory_item_id: str | None = None
    results: list[LocationPush] = field(default_factory=list)
    rows_considered: int = 0
    query_ms: int = 0
    remote_calls_ms: int = 0
    total_ms: int = 0
    diagnostics: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "sku": self.sku,
            "storeKey": self.store_key,
            "validateOnly": self.validate_only,
            "inventoryItemId": self.inventory_item_id,
            "results": [r.to_dict() for r in self.results],
            "syncStatus": self.sync_status,
            "stats": {
                "rowsConsidered": self.rows_considered,
                "queryMs": self.query_ms,
                "remoteCallsMs": self.remote_calls_ms,
                "totalMs": self.total_ms,
            },
        }
        if self.code:
            data["code"] = self.code
        if self.message:
            data["message"] = self.message
        if self.diagnostics:
            data["diagnostics"] = self.diagnostics
        return data


def compute_location_totals(rows) -> dict:
    """
    {location_gid: sellable total} for one SKU's rows.

    Only sellable rows add quantity. A location that still has released,
    non-deleted rows but nothing sellable gets a 0 bucket, so a sold-out
    SKU is zeroed remotely instead of left stale.
    """
    totals: dict = {}
    for row in rows:
        if row.deleted_at is not None or row.released_at is None:
            continue
        key = row.shopify_location_gid or None
        totals.setdefault(key, 0)
        if row.is_sellable:
            totals[key] += int(row.quantity)
    return totals


def _sku_rows(store_key: str, sku: str):
    return db.session.query(InventoryItem).filter(
        InventoryItem.store_key == store_key,
        InventoryItem.sku == sku,
        InventoryItem.deleted_at.is_(None),
    )


def _mark_rows(store_key: str, sku: str, values: dict) -> int:
    def _op() -> int:
        updated = _sku_rows(store_key, sku).update(values, synchronize_session=False)
        db.session.commit()
        return updated

    return run_with_retry(_op)


def _record_failure(result: PushResult, code: str, message: str) -> PushResult:
    result.success = False
    result.code = code
    result.message = message
    result.sync_status = SYNC_STATUS_ERROR
    _mark_rows(result.store_key, result.sku, {
        "shopify_sync_status": SYNC_STATUS_ERROR,
        "last_shopify_sync_error": message,
    })
    current_app.logger.warning("[PUSH] %s/%s %s: %s", result.store_key, result.sku, code, message)
    return result


def _cached_remote_ids(store_key: str, sku: str) -> tuple[str | None, str | None, str | None]:
    row = (
        db.session.query(InventoryItem)
        .filter(
            InventoryItem.store_key == store_key,
            InventoryItem.sku == sku,
            InventoryItem.shopify_inventory_item_id.isnot(None),
        )
        .order_by(InventoryItem.id.asc())
        .first()
    )
    if row is None:
        return None, None, None
    return row.shopify_inventory_item_id, row.shopify_product_id, row.shopify_variant_id


class _LocationResolver:
    """Bucket gid -> numeric location id, fetching the remote list at most once."""

    def __init__(self, client, primary_location_gid: str | None):
        self.client = client
        self.primary_location_gid = primary_location_gid
        self._fallback: str | None = None
        self._fetched = False

    def _remote_default(self) -> str | None:
        if not self._fetched:
            self._fetched = True
            locations = self.client.list_locations()
            chosen = (
                next((loc for loc in locations if loc.primary), None)
                or next((loc for loc in locations if loc.active), None)
                or (locations[0] if locations else None)
            )
            self._fallback = chosen.location_id if chosen else None
        return self._fallback

    def resolve(self, gid: str | None) -> str | None:
        for candidate in (gid, self.primary_location_gid):
            if candidate:
                match = _LOCATION_ID.search(candidate)
                if match:
                    return match.group(1)
        return self._remote_default()


def push_sku(
    store_key: str,
    sku: str,
    *,
    location_gid: str | None = None,
    validate_only: bool = False,
    client_factory=None,
    sleep=None,
) -> PushResult:
    if not store_key or not sku:
        raise PushError("storeKey and sku are required")

    started = time.monotonic()
    result = PushResult(store_key=store_key, sku=sku, validate_only=validate_only)

    resolved = resolve_store_config(store_key)
    result.diagnostics = resolved.diagnostics
    if not resolved.ok:
        _record_failure(result, resolved.code, resolved.message)
        result.total_ms = elapsed_ms(started, time.monotonic())
        return result
    credentials = resolved.credentials

    query_started = time.monotonic()
    rows = _sku_rows(store_key, sku).all()
    if location_gid:
        rows = [r for r in rows if r.shopify_location_gid == location_gid]
    totals = compute_location_totals(rows)
    result.rows_considered = sum(1 for r in rows if r.is_sellable)
    result.query_ms = elapsed_ms(query_started, time.monotonic())

    # No released rows is a no-op, not a failure; nothing is written anywhere
    if not totals:
        result.success = True
        result.code = "NOTHING_TO_SYNC"
        result.message = f"No released rows for SKU {sku}"
        result.total_ms = elapsed_ms(started, time.monotonic())
        return result

    factory = client_factory or marketplace_client.build_client
    with factory(credentials) as client:
        inventory_item_id, product_id, variant_id = _cached_remote_ids(store_key, sku)
        if not inventory_item_id:
            try:
                variants = client.find_variants_by_sku(sku)
            except MarketplaceError as exc:
                return _finish(_record_failure(result, "LOOKUP_FAILED", f"Variant lookup failed: {exc}"), started)

            if len(variants) > 1:
                result.diagnostics = dict(result.diagnostics, variants=[v.to_dict() for v in variants])
                return _finish(
                    _record_failure(
                        result,
                        "DUPLICATE_SKU",
                        f"Multiple variants found for SKU {sku} - attach the item to a specific variant",
                    ),
                    started,
                )
            if not variants or not variants[0].inventory_item_id:
                return _finish(
                    _record_failure(result, "SKU_NOT_FOUND", f"No marketplace variant found for SKU {sku}"),
                    started,
                )

            variant = variants[0]
            inventory_item_id, product_id, variant_id = variant.inventory_item_id, variant.product_id, variant.variant_id
            _mark_rows(store_key, sku, {
                "shopify_inventory_item_id": inventory_item_id,
                "shopify_product_id": product_id,
                "shopify_variant_id": variant_id,
            })
        result.inventory_item_id = inventory_item_id

        resolver = _LocationResolver(client, credentials.primary_location_gid)
        try:
            # Unlocated rows can resolve to a location that also has its own
            # bucket; one absolute set per remote location carries their sum
            by_location: dict[str, LocationPush] = {}
            for gid, total in totals.items():
                location_id = resolver.resolve(gid)
                if not location_id:
                    result.results.append(
                        LocationPush(location=gid, location_id=None, computed_available=total, outcome="error: no location_id")
                    )
                    continue
                push = by_location.get(location_id)
                if push is None:
                    push = LocationPush(location=to_location_gid(location_id), location_id=location_id, computed_available=0)
                    by_location[location_id] = push
                    result.results.append(push)
                push.computed_available += total
        except MarketplaceError as exc:
            return _finish(_record_failure(result, "LOCATION_LOOKUP_FAILED", f"Location lookup failed: {exc}"), started)

        if validate_only:
            unresolved = [r for r in result.results if not r.location_id]
            if unresolved:
                return _finish(
                    _record_failure(result, "LOCATION_UNRESOLVED", "; ".join(r.outcome for r in unresolved)),
                    started,
                )
            _mark_rows(store_key, sku, {
                "shopify_sync_status": SYNC_STATUS_VALIDATED,
                "last_shopify_sync_error": None,
            })
            result.success = True
            result.sync_status = SYNC_STATUS_VALIDATED
            current_app.logger.info("[PUSH] %s/%s validated for %d locations", store_key, sku, len(result.results))
            return _finish(result, started)

        grant = lock_service.acquire(
            store_key,
            [sku],
            lock_type="push",
            locked_by=PUSH_LOCKED_BY,
            context={"location_gid": location_gid},
        )
        if not grant.acquired:
            return _finish(
                _record_failure(result, "SKU_LOCKED", f"SKU {sku} is locked by another operation"),
                started,
            )

        remote_started = time.monotonic()
        delay = float(current_app.config["PUSH_CALL_DELAY_SECONDS"])
        pause = sleep or time.sleep
        try:
            calls = 0
            for push in result.results:
                if not push.location_id:
                    continue
                if calls and delay > 0:
                    pause(delay)
                calls += 1
                try:
                    client.set_inventory_level(inventory_item_id, push.location_id, push.computed_available)
                    push.outcome = OUTCOME_SUCCESS
                except ClientRequestError as exc:
                    push.outcome = f"error: {exc.status_code}"
                    current_app.logger.warning("[PUSH] %s/%s location %s rejected: %s", store_key, sku, push.location_id, exc)
                except MarketplaceError as exc:
                    push.outcome = f"error: {exc}"
                    current_app.logger.warning("[PUSH] %s/%s location %s failed: %s", store_key, sku, push.location_id, exc)
        finally:
            lock_service.release(grant.batch_id)
        result.remote_calls_ms = elapsed_ms(remote_started, time.monotonic())

    failures = [r.outcome for r in result.results if not r.ok]
    if failures:
        result.sync_status = SYNC_STATUS_ERROR
        result.message = "; ".join(failures)
        _mark_rows(store_key, sku, {
            "shopify_sync_status": SYNC_STATUS_ERROR,
            "last_shopify_sync_error": result.message,
        })
    else:
        result.sync_status = SYNC_STATUS_SYNCED
        _mark_rows(store_key, sku, {
            "shopify_sync_status": SYNC_STATUS_SYNCED,
            "last_shopify_sync_error": None,
            "last_shopify_synced_at": utcnow(),
        })

    # The request itself succeeded; per-location failures live in syncStatus
    result.success = True
    current_app.logger.info(
        "[PUSH] %s/%s %s: %s",
        store_key, sku, result.sync_status,
        ", ".join(f"{r.location_id}={r.computed_available} ({r.outcome})" for r in result.results),
    )
    return _finish(result, started)


def _finish(result: PushResult, started: float) -> PushResult:
    result.total_ms = elapsed_ms(started, time.monotonic())
    return result
