from __future__ import annotations

from ..extensions import db
from stocksync.time_utils import to_utc_z


TRUTH_MODE_SHOPIFY = "shopify"
TRUTH_MODE_DATABASE = "database"
TRUTH_MODES = (TRUTH_MODE_SHOPIFY, TRUTH_MODE_DATABASE)


class Store(db.Model):
    """
    A marketplace storefront whose inventory is mirrored locally.

    `key` is the stable identifier every other table uses (store_key);
    credentials are NOT stored here, they live in StoreConfig and are only
    read through services.config_resolver.

    inventory_truth_mode decides which side wins during reconciliation:
    - "shopify": the marketplace is authoritative, local quantities are overwritten
    - "database": local quantities are authoritative, divergence is only flagged
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("key", name="uq_stores_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(64), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    inventory_truth_mode = db.Column(db.String(16), nullable=False, default=TRUTH_MODE_SHOPIFY)

    # Fallback target for push buckets that carry no location of their own
    primary_location_gid = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    configs = db.relationship("StoreConfig", backref="store", lazy=True, cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Store id={self.id} key={self.key!r} truth={self.inventory_truth_mode}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "is_active": self.is_active,
            "inventory_truth_mode": self.inventory_truth_mode,
            "primary_location_gid": self.primary_location_gid,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StoreConfig(db.Model):
    __tablename__ = "store_configs"
    __table_args__ = (
        db.UniqueConstraint("store_id", "key", name="uq_store_configs_store_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    key = db.Column(db.String(128), nullable=False)
    value = db.Column(db.Text, nullable=True)
    is_secret = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "key": self.key,
            "value": "********" if self.is_secret and self.value else self.value,
            "is_secret": self.is_secret,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
