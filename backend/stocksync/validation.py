from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from stocksync.models.sync import LOCK_TYPES


# Hard ceiling on item ids / skus accepted in one request body
MAX_LIST_ITEMS = 5000

RECONCILE_MODES = ("full", "drift_only", "missing_only")


class ValidationError(ValueError):
    """400-level input problem."""


def _require_dict(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _coerce_int(name: str, value: Any, *, minimum: int | None = None) -> int | None:
    """Strict integer: rejects bools, floats, decimals and scientific notation."""
    if value is None:
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        # Reject scientific notation (e.g., "1e5")
        if "e" in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{name} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{name} must be at least {minimum}")
    return result


def _coerce_bool(name: str, value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", ""):
        return False
    raise ValidationError(f"{name} must be a boolean")


def _coerce_str(name: str, value: Any, *, required: bool = False) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{name} is required")
        return None
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValidationError(f"{name} must be a string")
    return str(value).strip()


def _coerce_list(name: str, value: Any) -> list | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValidationError(f"{name} must be a list")
    if len(value) > MAX_LIST_ITEMS:
        raise ValidationError(f"{name} accepts at most {MAX_LIST_ITEMS} entries")
    return value


@dataclass(frozen=True)
class ReconcileRequest:
    mode: str
    store_key: str | None
    dry_run: bool
    max_items: int | None


@dataclass(frozen=True)
class PushRequest:
    store_key: str
    sku: str
    location_gid: str | None
    validate_only: bool


@dataclass(frozen=True)
class ResyncRequest:
    store_key: str
    item_ids: list[int] | None
    location_gid: str | None


@dataclass(frozen=True)
class LockRequest:
    store_key: str
    skus: list[str]
    lock_type: str
    locked_by: str
    ttl_minutes: int | None
    context: dict | None


def parse_reconcile_request(payload: Any) -> ReconcileRequest:
    data = _require_dict(payload)
    mode = _coerce_str("mode", data.get("mode")) or "full"
    if mode not in RECONCILE_MODES:
        raise ValidationError(f"mode must be one of {', '.join(RECONCILE_MODES)}")
    return ReconcileRequest(
        mode=mode,
        store_key=_coerce_str("store_key", data.get("store_key")),
        dry_run=_coerce_bool("dry_run", data.get("dry_run")),
        max_items=_coerce_int("max_items", data.get("max_items"), minimum=1),
    )


def parse_push_request(payload: Any) -> PushRequest:
    """Push bodies use camelCase keys: storeKey, sku, locationGid, validateOnly."""
    data = _require_dict(payload)
    return PushRequest(
        store_key=_coerce_str("storeKey", data.get("storeKey"), required=True),
        sku=_coerce_str("sku", data.get("sku"), required=True),
        location_gid=_coerce_str("locationGid", data.get("locationGid")),
        validate_only=_coerce_bool("validateOnly", data.get("validateOnly")),
    )


def parse_resync_request(payload: Any) -> ResyncRequest:
    data = _require_dict(payload)
    raw_ids = _coerce_list("item_ids", data.get("item_ids"))
    item_ids = None
    if raw_ids:
        item_ids = [_coerce_int("item_ids", v, minimum=1) for v in raw_ids]
    return ResyncRequest(
        store_key=_coerce_str("store_key", data.get("store_key"), required=True),
        item_ids=item_ids,
        location_gid=_coerce_str("location_gid", data.get("location_gid")),
    )


def parse_lock_request(payload: Any) -> LockRequest:
    data = _require_dict(payload)
    skus = _coerce_list("skus", data.get("skus"))
    if not skus:
        raise ValidationError("skus is required")
    skus = [_coerce_str("skus", s, required=True) for s in skus]

    lock_type = _coerce_str("lock_type", data.get("lock_type")) or "manual_adjustment"
    if lock_type not in LOCK_TYPES:
        raise ValidationError(f"lock_type must be one of {', '.join(LOCK_TYPES)}")

    context = data.get("context")
    if context is not None and not isinstance(context, dict):
        raise ValidationError("context must be an object")

    return LockRequest(
        store_key=_coerce_str("store_key", data.get("store_key"), required=True),
        skus=skus,
        lock_type=lock_type,
        locked_by=_coerce_str("locked_by", data.get("locked_by")) or "api",
        ttl_minutes=_coerce_int("ttl_minutes", data.get("ttl_minutes"), minimum=1),
        context=context,
    )
