# Overview: Flask API routes for reconciliation, push and resync triggers; parses input and returns JSON responses.

from flask import Blueprint, current_app, jsonify, request

from stocksync.decorators import require_service_token
from stocksync.services import push_service, reconcile_service, resync_service
from stocksync.services.config_resolver import CredentialsMissingError, FAILURE_STORE_NOT_FOUND
from stocksync.validation import (
    ValidationError,
    parse_push_request,
    parse_reconcile_request,
    parse_resync_request,
)


sync_bp = Blueprint("sync", __name__, url_prefix="/api/sync")

# Push failure code -> HTTP status; anything unlisted is a 400 validation failure
PUSH_FAILURE_STATUS = {
    FAILURE_STORE_NOT_FOUND: 404,
    "SKU_LOCKED": 409,
    "LOOKUP_FAILED": 502,
    "LOCATION_LOOKUP_FAILED": 502,
}


@sync_bp.post("/reconcile")
@require_service_token
def reconcile():
    try:
        params = parse_reconcile_request(request.get_json(silent=True))
        report = reconcile_service.reconcile(
            params.mode,
            params.store_key,
            dry_run=params.dry_run,
            max_items=params.max_items,
        )
        return jsonify(report.to_dict()), 200
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    except reconcile_service.StoreNotFoundError as exc:
        return jsonify({"error": str(exc)}), 404
    except reconcile_service.ReconcileError as exc:
        return jsonify({"error": str(exc)}), 400
    except Exception:
        current_app.logger.exception("Reconciliation trigger failed")
        return jsonify({"error": "Reconciliation failed"}), 500


@sync_bp.post("/push")
@require_service_token
def push():
    try:
        params = parse_push_request(request.get_json(silent=True))
        result = push_service.push_sku(
            params.store_key,
            params.sku,
            location_gid=params.location_gid,
            validate_only=params.validate_only,
        )
    except (ValidationError, push_service.PushError) as exc:
        return jsonify({"error": str(exc)}), 400
    except Exception:
        current_app.logger.exception("Push failed")
        return jsonify({"error": "Push failed"}), 500

    if result.success:
        return jsonify(result.to_dict()), 200
    return jsonify(result.to_dict()), PUSH_FAILURE_STATUS.get(result.code, 400)


@sync_bp.post("/resync")
@require_service_token
def resync():
    try:
        params = parse_resync_request(request.get_json(silent=True))
        result = resync_service.resync_items(
            params.store_key,
            params.item_ids,
            params.location_gid,
        )
        return jsonify(result.to_dict()), 200
    except ValidationError as exc:
        return jsonify({"error": str(exc)}), 400
    except CredentialsMissingError as exc:
        status = 404 if exc.failure.code == FAILURE_STORE_NOT_FOUND else 400
        return jsonify(exc.failure.to_dict()), status
    except Exception:
        current_app.logger.exception("Resync failed")
        return jsonify({"error": "Resync failed"}), 500


@sync_bp.get("/runs")
@require_service_token
def list_runs():
    limit = request.args.get("limit", type=int) or 50
    runs = reconcile_service.list_runs(
        store_key=request.args.get("store_key"),
        status=request.args.get("status"),
        limit=max(1, min(limit, 500)),
    )
    return jsonify([run.to_dict() for run in runs]), 200


@sync_bp.get("/runs/<int:run_id>")
@require_service_token
def get_run(run_id: int):
    run = reconcile_service.get_run(run_id)
    if not run:
        return jsonify({"error": "Run not found"}), 404
    return jsonify(run.to_dict(include_locations=True)), 200
