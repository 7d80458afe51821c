# Overview: Targeted per-item resync; pulls remote levels for selected rows and overwrites local quantity.

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from stocksync.extensions import db
from stocksync.models import InventoryItem
from stocksync.models.inventory import SYNC_STATUS_SYNCED
from stocksync.time_utils import utcnow
from . import lock_service, marketplace_client
from .config_resolver import require_credentials
from .fetch_service import InventoryFetcher
from .marketplace_client import Retrier


STATUS_UPDATED = "updated"
STATUS_UNCHANGED = "unchanged"
STATUS_NOT_FOUND = "not_found"
STATUS_ERROR = "error"
STATUS_LOCKED = "skipped_locked"


@dataclass
class ResyncResult:
    total_checked: int = 0
    updated: int = 0
    unchanged: int = 0
    not_found: int = 0
    errors: int = 0
    skipped_locked: int = 0
    details: list = field(default_factory=list)

    def add(self, item: InventoryItem, status: str, **extra) -> None:
        entry = {"item_id": item.id, "sku": item.sku, "status": status}
        entry.update(extra)
        self.details.append(entry)
        if status == STATUS_LOCKED:
            self.skipped_locked += 1
            return
        self.total_checked += 1
        if status == STATUS_ERROR:
            self.errors += 1
        else:
            setattr(self, status, getattr(self, status) + 1)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "results": {
                "total_checked": self.total_checked,
                "updated": self.updated,
                "unchanged": self.unchanged,
                "not_found": self.not_found,
                "errors": self.errors,
                "skipped_locked": self.skipped_locked,
            },
            "details": self.details,
        }


def _selected_items(store_key: str, item_ids, location_gid: str | None) -> list[InventoryItem]:
    query = db.session.query(InventoryItem).filter(
        InventoryItem.store_key == store_key,
        InventoryItem.deleted_at.is_(None),
        InventoryItem.shopify_inventory_item_id.isnot(None),
    )
    if item_ids:
        query = query.filter(InventoryItem.id.in_(list(item_ids)))
    if location_gid:
        query = query.filter(InventoryItem.shopify_location_gid == location_gid)
    return query.order_by(InventoryItem.id.asc()).all()


def _resync_changes(item: InventoryItem, remote: int | None, now) -> tuple[str, dict]:
    if remote is None:
        # Level gone remotely: the unit is no longer listed at this location
        changes = {"quantity": 0, "shopify_removed_at": now, "last_shopify_synced_at": now}
        if item.sold_at is None:
            changes["sold_at"] = now
        return STATUS_NOT_FOUND, changes

    remote = max(0, remote)
    changes = {
        "shopify_sync_status": SYNC_STATUS_SYNCED,
        "last_shopify_synced_at": now,
        "last_shopify_seen_at": now,
    }
    if remote == (item.quantity or 0):
        return STATUS_UNCHANGED, changes

    changes["quantity"] = remote
    if remote == 0 and item.sold_at is None:
        changes["sold_at"] = now
    elif remote > 0 and item.sold_at is not None:
        changes.update(sold_at=None, sold_channel=None)
    return STATUS_UPDATED, changes


def resync_items(
    store_key: str,
    item_ids=None,
    location_gid: str | None = None,
    *,
    client_factory=None,
    sleep=None,
) -> ResyncResult:
    """
    Make selected rows match the marketplace, remote wins.

    Rows of locked SKUs are skipped untouched. Raises CredentialsMissingError
    when the store cannot be reached at all.
    """
    credentials = require_credentials(store_key)
    store_key = credentials.store_key
    result = ResyncResult()

    items = _selected_items(store_key, item_ids, location_gid)
    if not items:
        return result

    locked = lock_service.is_locked(store_key, {item.sku for item in items})
    candidates = []
    for item in items:
        if item.sku in locked:
            result.add(item, STATUS_LOCKED)
        elif not (item.shopify_location_gid or location_gid):
            result.add(item, STATUS_ERROR, error="Missing location GID")
        else:
            candidates.append(item)

    if not candidates:
        return result

    config = current_app.config
    factory = client_factory or marketplace_client.build_client
    with factory(credentials, Retrier.from_config(config, sleep=sleep)) as client:
        fetcher = InventoryFetcher.from_config(client, config, sleep=sleep)
        facts = fetcher.fetch_targeted({item.shopify_inventory_item_id for item in candidates})

    levels = {(fact.inventory_item_id, fact.location_gid): fact.available for fact in facts}
    failed_ids = set(fetcher.skipped_ids)
    now = utcnow()

    for item in candidates:
        if item.shopify_inventory_item_id in failed_ids:
            result.add(item, STATUS_ERROR, error="Remote fetch failed")
            continue

        location = item.shopify_location_gid or location_gid
        old_qty = item.quantity
        status, changes = _resync_changes(item, levels.get((item.shopify_inventory_item_id, location)), now)
        try:
            with db.session.begin_nested():
                for attr, value in changes.items():
                    setattr(item, attr, value)
                db.session.flush()
        except SQLAlchemyError as exc:
            current_app.logger.exception("[RESYNC] %s: item %s update failed", store_key, item.id)
            result.add(item, STATUS_ERROR, error=str(exc))
            continue

        if status == STATUS_UNCHANGED:
            result.add(item, status)
        else:
            result.add(item, status, old_qty=old_qty, new_qty=item.quantity)

    db.session.commit()
    current_app.logger.info(
        "[RESYNC] %s: %d checked, %d updated, %d not found, %d errors, %d locked",
        store_key, result.total_checked, result.updated, result.not_found, result.errors, result.skipped_locked,
    )
    return result
