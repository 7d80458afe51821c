# Overview: Pytest coverage for the sync, lock and health HTTP endpoints.

"""
API Route Tests

Every /api/sync endpoint requires the shared service token. These tests
check status codes and response shapes; service behaviour is covered by
the service test modules.
"""

import pytest

from conftest import L1
from stocksync.services import lock_service, store_service


class TestServiceToken:
    """Bearer token enforcement."""

    def test_missing_token_401(self, client, db_session):
        response = client.get("/api/sync/runs")

        assert response.status_code == 401

    def test_wrong_token_401(self, client, db_session, auth_headers):
        response = client.get("/api/sync/runs", headers=auth_headers("nope"))

        assert response.status_code == 401

    def test_unconfigured_token_503(self, app, client, db_session, auth_headers, monkeypatch):
        monkeypatch.setitem(app.config, "SYNC_SERVICE_TOKEN", None)

        response = client.get("/api/sync/runs", headers=auth_headers())

        assert response.status_code == 503

    def test_health_is_public(self, client, db_session):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["details"] == {"stores": 0, "open_runs": 0}


class TestReconcileEndpoint:

    def test_reconcile_single_store(self, client, store, make_item, shopify, auth_headers):
        make_item(sku="X", quantity=4, inventory_item_id="300")
        shopify.add_level("300", L1, 1, sku="X")

        response = client.post("/api/sync/reconcile", json={"store_key": "main"}, headers=auth_headers())

        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is True
        assert data["stores_processed"] == 1
        assert data["results"]["main"]["stats"]["drift_fixed"] == 1
        assert data["results"]["main"]["fetch_method"] == "bulk_operation"

    def test_reconcile_unknown_store_404(self, client, db_session, auth_headers):
        response = client.post("/api/sync/reconcile", json={"store_key": "ghost"}, headers=auth_headers())

        assert response.status_code == 404

    def test_reconcile_bad_mode_400(self, client, db_session, auth_headers):
        response = client.post("/api/sync/reconcile", json={"mode": "all"}, headers=auth_headers())

        assert response.status_code == 400

    def test_reconcile_store_failure_is_reported_not_raised(self, client, db_session, auth_headers, shopify):
        store_service.create_store("bare", "Bare")

        response = client.post("/api/sync/reconcile", json={"store_key": "bare"}, headers=auth_headers())

        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is False
        assert data["results"]["bare"]["error_code"] == "CREDENTIALS_MISSING"


class TestPushEndpoint:

    def test_push(self, client, store, make_item, shopify, auth_headers):
        make_item(sku="ABC", quantity=5)
        shopify.add_variant("ABC", "100")

        response = client.post("/api/sync/push", json={"storeKey": "main", "sku": "ABC"}, headers=auth_headers())

        assert response.status_code == 200
        data = response.get_json()
        assert data["syncStatus"] == "synced"
        assert data["results"][0]["computed_available"] == 5
        assert data["stats"]["rowsConsidered"] == 1

    def test_push_missing_fields_400(self, client, db_session, auth_headers):
        response = client.post("/api/sync/push", json={"sku": "ABC"}, headers=auth_headers())

        assert response.status_code == 400

    def test_push_unknown_store_404(self, client, db_session, auth_headers, shopify):
        response = client.post("/api/sync/push", json={"storeKey": "ghost", "sku": "ABC"}, headers=auth_headers())

        assert response.status_code == 404
        assert response.get_json()["code"] == "STORE_NOT_FOUND"

    def test_push_nothing_to_sync_200(self, client, store, shopify, auth_headers):
        response = client.post("/api/sync/push", json={"storeKey": "main", "sku": "NOPE"}, headers=auth_headers())

        assert response.status_code == 200
        data = response.get_json()
        assert data["code"] == "NOTHING_TO_SYNC"
        assert data["results"] == []
        assert shopify.requests == []

    def test_push_locked_409(self, client, store, make_item, shopify, auth_headers):
        make_item(sku="ABC", quantity=5)
        shopify.add_variant("ABC", "100")
        lock_service.acquire("main", ["ABC"], lock_type="recount")

        response = client.post("/api/sync/push", json={"storeKey": "main", "sku": "ABC"}, headers=auth_headers())

        assert response.status_code == 409

    def test_push_sku_not_found_400(self, client, store, make_item, shopify, auth_headers):
        make_item(sku="ABC", quantity=5)

        response = client.post("/api/sync/push", json={"storeKey": "main", "sku": "ABC"}, headers=auth_headers())

        assert response.status_code == 400
        assert response.get_json()["code"] == "SKU_NOT_FOUND"


class TestResyncEndpoint:

    def test_resync(self, client, store, make_item, shopify, auth_headers):
        item = make_item(sku="A", quantity=1, inventory_item_id="100")
        shopify.add_level("100", L1, 3, sku="A")

        response = client.post("/api/sync/resync", json={"store_key": "main", "item_ids": [item.id]}, headers=auth_headers())

        assert response.status_code == 200
        assert response.get_json()["results"]["updated"] == 1

    def test_resync_unknown_store_404(self, client, db_session, auth_headers, shopify):
        response = client.post("/api/sync/resync", json={"store_key": "ghost"}, headers=auth_headers())

        assert response.status_code == 404
        assert response.get_json()["code"] == "STORE_NOT_FOUND"

    def test_resync_requires_store_key(self, client, db_session, auth_headers):
        response = client.post("/api/sync/resync", json={}, headers=auth_headers())

        assert response.status_code == 400


class TestRunsEndpoint:

    def test_list_and_get(self, client, store, shopify, auth_headers):
        client.post("/api/sync/reconcile", json={"store_key": "main"}, headers=auth_headers())

        listed = client.get("/api/sync/runs?store_key=main", headers=auth_headers()).get_json()
        assert len(listed) == 1
        run_id = listed[0]["id"]

        response = client.get(f"/api/sync/runs/{run_id}", headers=auth_headers())
        assert response.status_code == 200
        assert response.get_json()["status"] == "completed"
        assert "location_stats" in response.get_json()

    def test_get_missing_run_404(self, client, db_session, auth_headers):
        assert client.get("/api/sync/runs/999", headers=auth_headers()).status_code == 404


class TestLockEndpoints:

    def test_acquire_check_release(self, client, db_session, auth_headers):
        response = client.post(
            "/api/sync/locks",
            json={"store_key": "main", "skus": ["A", "B"], "locked_by": "recount-tool"},
            headers=auth_headers(),
        )
        assert response.status_code == 200
        grant = response.get_json()
        assert grant["acquired_count"] == 2

        checked = client.get("/api/sync/locks?store_key=main&sku=A&sku=C", headers=auth_headers()).get_json()
        assert [(c["sku"], c["is_locked"]) for c in checked] == [("A", True), ("C", False)]

        released = client.delete(f"/api/sync/locks/{grant['batch_id']}", headers=auth_headers()).get_json()
        assert released["released"] == 2

    def test_conflict_409(self, client, db_session, auth_headers):
        lock_service.acquire("main", ["A"])

        response = client.post("/api/sync/locks", json={"store_key": "main", "skus": ["A"]}, headers=auth_headers())

        assert response.status_code == 409
        assert response.get_json()["failed_skus"] == ["A"]

    def test_partial_grant_200(self, client, db_session, auth_headers):
        lock_service.acquire("main", ["A"])

        response = client.post("/api/sync/locks", json={"store_key": "main", "skus": ["A", "B"]}, headers=auth_headers())

        assert response.status_code == 200
        data = response.get_json()
        assert data["success"] is False
        assert data["acquired_skus"] == ["B"]

    @pytest.mark.parametrize("payload", [{}, {"store_key": "main", "skus": ["A"], "lock_type": "forever"}])
    def test_invalid_400(self, client, db_session, auth_headers, payload):
        response = client.post("/api/sync/locks", json=payload, headers=auth_headers())

        assert response.status_code == 400

    def test_list_and_reap(self, client, db_session, auth_headers):
        lock_service.acquire("main", ["A"])

        listed = client.get("/api/sync/locks", headers=auth_headers()).get_json()
        assert [l["sku"] for l in listed] == ["A"]

        reaped = client.post("/api/sync/locks/reap", headers=auth_headers()).get_json()
        assert reaped == {"cleaned": 0}
