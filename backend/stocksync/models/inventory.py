from __future__ import annotations

from ..extensions import db
from stocksync.time_utils import to_utc_z


SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_VALIDATED = "validated"
SYNC_STATUS_SYNCED = "synced"
SYNC_STATUS_ERROR = "error"


class InventoryItem(db.Model):
    """
    One physical unit or batch line owned by the intake workflow.

    Only rows that are released from their intake batch, not soft-deleted and
    with quantity > 0 count toward the sellable total pushed to the marketplace.

    WRITERS:
    - Intake/sales: quantity, sold_at, released_at, deleted_at
    - Push engine: shopify_sync_status, last_shopify_sync_error,
      last_shopify_synced_at and the resolved shopify_* ids. Never quantity.
    - Reconciliation: quantity (shopify truth only), drift fields,
      last_shopify_seen_at, sold_at
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.Index("ix_inventory_items_store_sku", "store_key", "sku"),
        db.Index("ix_inventory_items_remote_level", "shopify_inventory_item_id", "shopify_location_gid"),
        db.CheckConstraint("quantity >= 0", name="ck_inventory_items_quantity_nonnegative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_key = db.Column(db.String(64), nullable=False, index=True)
    sku = db.Column(db.String(64), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)

    # Target location chosen at intake (gid://shopify/Location/<id>)
    shopify_location_gid = db.Column(db.String(128), nullable=True)

    # Remote identifiers, null until the first successful resolution
    shopify_product_id = db.Column(db.String(64), nullable=True)
    shopify_variant_id = db.Column(db.String(64), nullable=True)
    shopify_inventory_item_id = db.Column(db.String(64), nullable=True)

    shopify_sync_status = db.Column(db.String(16), nullable=False, default=SYNC_STATUS_PENDING, index=True)
    last_shopify_sync_error = db.Column(db.Text, nullable=True)
    last_shopify_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    shopify_drift = db.Column(db.Boolean, nullable=False, default=False, index=True)
    shopify_drift_detected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # {expected, actual, location_gid, location_name, detected_by, detected_at, mode}
    shopify_drift_details = db.Column(db.JSON, nullable=True)

    last_shopify_seen_at = db.Column(db.DateTime(timezone=True), nullable=True)
    shopify_removed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    sold_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sold_channel = db.Column(db.String(64), nullable=True)

    # Set when the row leaves its intake batch; unreleased rows are not sellable
    released_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} store={self.store_key!r} sku={self.sku!r} qty={self.quantity}>"

    @property
    def is_sellable(self) -> bool:
        return self.deleted_at is None and self.released_at is not None and (self.quantity or 0) > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_key": self.store_key,
            "sku": self.sku,
            "quantity": self.quantity,
            "shopify_location_gid": self.shopify_location_gid,
            "shopify_product_id": self.shopify_product_id,
            "shopify_variant_id": self.shopify_variant_id,
            "shopify_inventory_item_id": self.shopify_inventory_item_id,
            "shopify_sync_status": self.shopify_sync_status,
            "last_shopify_sync_error": self.last_shopify_sync_error,
            "last_shopify_synced_at": to_utc_z(self.last_shopify_synced_at),
            "shopify_drift": self.shopify_drift,
            "shopify_drift_detected_at": to_utc_z(self.shopify_drift_detected_at),
            "shopify_drift_details": self.shopify_drift_details,
            "last_shopify_seen_at": to_utc_z(self.last_shopify_seen_at),
            "shopify_removed_at": to_utc_z(self.shopify_removed_at),
            "sold_at": to_utc_z(self.sold_at),
            "sold_channel": self.sold_channel,
            "released_at": to_utc_z(self.released_at),
            "deleted_at": to_utc_z(self.deleted_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryLevelMirror(db.Model):
    """
    Last-observed remote level for (store, inventory item, location).

    Audit/drift read-replica only. The business record is InventoryItem;
    nothing reads quantities from here to decide what to push.
    """
    __tablename__ = "shopify_inventory_levels"
    __table_args__ = (
        db.UniqueConstraint("store_key", "inventory_item_id", "location_gid", name="uq_shopify_levels_item_location"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_key = db.Column(db.String(64), nullable=False, index=True)
    inventory_item_id = db.Column(db.String(64), nullable=False)
    location_gid = db.Column(db.String(128), nullable=False)
    location_name = db.Column(db.String(255), nullable=True)
    available = db.Column(db.Integer, nullable=False, default=0)

    shopify_updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_key": self.store_key,
            "inventory_item_id": self.inventory_item_id,
            "location_gid": self.location_gid,
            "location_name": self.location_name,
            "available": self.available,
            "shopify_updated_at": to_utc_z(self.shopify_updated_at),
            "last_reconciled_at": to_utc_z(self.last_reconciled_at),
            "updated_at": to_utc_z(self.updated_at),
        }
