from __future__ import annotations

from stocksync.extensions import db
from stocksync.models import Store, StoreConfig
from stocksync.models.stores import TRUTH_MODES, TRUTH_MODE_SHOPIFY
from stocksync.services.concurrency import run_with_retry


DOMAIN_CONFIG_KEY = "SHOPIFY_STORE_DOMAIN"
TOKEN_CONFIG_KEY = "SHOPIFY_ACCESS_TOKEN"

SECRET_CONFIG_KEYS = {TOKEN_CONFIG_KEY}


class StoreError(Exception):
    """Raised when store operations fail."""
    pass


def _normalize_key(key: str | None) -> str:
    return (key or "").strip().lower()


def create_store(
    key: str,
    name: str,
    *,
    inventory_truth_mode: str = TRUTH_MODE_SHOPIFY,
    primary_location_gid: str | None = None,
) -> Store:
    def _op():
        store_key = _normalize_key(key)
        if not store_key:
            raise StoreError("Store key is required")
        if not name:
            raise StoreError("Store name is required")
        if inventory_truth_mode not in TRUTH_MODES:
            raise StoreError(f"inventory_truth_mode must be one of {', '.join(TRUTH_MODES)}")
        if db.session.query(Store).filter_by(key=store_key).first():
            raise StoreError(f"Store '{store_key}' already exists")

        store = Store(
            key=store_key,
            name=name,
            inventory_truth_mode=inventory_truth_mode,
            primary_location_gid=primary_location_gid,
        )
        db.session.add(store)
        db.session.commit()
        return store

    return run_with_retry(_op)


def update_store(
    store_key: str,
    *,
    name: str | None = None,
    is_active: bool | None = None,
    inventory_truth_mode: str | None = None,
    primary_location_gid: str | None = None,
) -> Store:
    def _op():
        store = get_store(store_key)
        if not store:
            raise StoreError("Store not found")

        if inventory_truth_mode is not None:
            if inventory_truth_mode not in TRUTH_MODES:
                raise StoreError(f"inventory_truth_mode must be one of {', '.join(TRUTH_MODES)}")
            store.inventory_truth_mode = inventory_truth_mode
        if name is not None:
            store.name = name
        if is_active is not None:
            store.is_active = is_active
        if primary_location_gid is not None:
            store.primary_location_gid = primary_location_gid or None

        db.session.commit()
        return store

    return run_with_retry(_op)


def get_store(store_key: str) -> Store | None:
    return db.session.query(Store).filter_by(key=_normalize_key(store_key)).first()


def list_stores(*, active_only: bool = False) -> list[Store]:
    query = db.session.query(Store)
    if active_only:
        query = query.filter(Store.is_active.is_(True))
    return query.order_by(Store.key.asc()).all()


def set_store_config(store_key: str, key: str, value: str | None) -> StoreConfig:
    def _op():
        if not key:
            raise StoreError("Config key is required")

        store = get_store(store_key)
        if not store:
            raise StoreError("Store not found")

        config = db.session.query(StoreConfig).filter_by(store_id=store.id, key=key).first()
        if config:
            config.value = value
        else:
            config = StoreConfig(store_id=store.id, key=key, value=value, is_secret=key in SECRET_CONFIG_KEYS)
            db.session.add(config)

        db.session.commit()
        return config

    return run_with_retry(_op)


def set_credentials(store_key: str, *, domain: str, access_token: str) -> None:
    set_store_config(store_key, DOMAIN_CONFIG_KEY, domain)
    set_store_config(store_key, TOKEN_CONFIG_KEY, access_token)


def get_store_config_values(store_id: int) -> dict[str, str | None]:
    rows = db.session.query(StoreConfig).filter_by(store_id=store_id).all()
    return {row.key: row.value for row in rows}
