# Overview: Flask API routes for advisory SKU leases; parses input and returns JSON responses.

from flask import Blueprint, jsonify, request

from stocksync.decorators import require_service_token
from stocksync.services import lock_service
from stocksync.validation import ValidationError, parse_lock_request


locks_bp = Blueprint("locks", __name__, url_prefix="/api/sync/locks")


@locks_bp.post("")
@require_service_token
def acquire_locks():
    try:
        params = parse_lock_request(request.get_json(silent=True))
        grant = lock_service.acquire(
            params.store_key,
            params.skus,
            lock_type=params.lock_type,
            locked_by=params.locked_by,
            ttl_minutes=params.ttl_minutes,
            context=params.context,
        )
    except (ValidationError, lock_service.LockError) as exc:
        return jsonify({"error": str(exc)}), 400

    # Partial grants are still 200; the caller decides what to do with failed_skus
    status = 200 if grant.acquired else 409
    return jsonify(grant.to_dict()), status


@locks_bp.delete("/<batch_id>")
@require_service_token
def release_locks(batch_id: str):
    released = lock_service.release(batch_id)
    return jsonify({"batch_id": batch_id, "released": released}), 200


@locks_bp.get("")
@require_service_token
def check_locks():
    store_key = request.args.get("store_key")
    skus = request.args.getlist("sku")
    if skus:
        if not store_key:
            return jsonify({"error": "store_key is required"}), 400
        statuses = lock_service.check_locks(store_key, skus)
        return jsonify([s.to_dict() for s in statuses]), 200

    locks = lock_service.list_locks(store_key)
    return jsonify([lock.to_dict() for lock in locks]), 200


@locks_bp.post("/reap")
@require_service_token
def reap_locks():
    cleaned = lock_service.reap_expired()
    return jsonify({"cleaned": cleaned}), 200
