# Overview: Pytest coverage for inbound reconciliation runs.

"""
Reconciliation Tests

Each test seeds local rows plus a FakeShopify catalogue, runs
reconcile(), then checks the run record, the counters and the rows.

Truth policies:
- shopify:  remote wins, quantity overwritten, sold stamped at 0
- database: local wins, quantity untouched, drift flagged with details
"""

from datetime import timedelta

import pytest

from conftest import L1, L2
from stocksync.models import InventoryItem, InventoryLevelMirror, InventoryWriteLock, ReconciliationRun
from stocksync.services import lock_service, store_service
from stocksync.services.maintenance_service import STALE_RUN_ERROR_CODE
from stocksync.services.reconcile_service import (
    ReconcileError,
    StoreNotFoundError,
    get_run,
    list_runs,
    reconcile,
)
from stocksync.time_utils import utcnow


def _item(db_session, item_id):
    db_session.expire_all()
    return db_session.get(InventoryItem, item_id)


def _snapshot(db_session):
    db_session.expire_all()
    items = [
        (i.id, i.quantity, i.shopify_drift, i.shopify_drift_details, i.last_shopify_seen_at, i.sold_at)
        for i in db_session.query(InventoryItem).order_by(InventoryItem.id)
    ]
    mirror = db_session.query(InventoryLevelMirror).count()
    locks = db_session.query(InventoryWriteLock).count()
    return items, mirror, locks


class TestScenarios:
    """Reference scenarios for both truth policies and the fetch fallbacks."""

    def test_shopify_truth_overwrites_and_stamps_sold(self, store, make_item, shopify, db_session):
        item = make_item(sku="X", quantity=4, location=L2, inventory_item_id="300")
        shopify.add_level("300", L2, 0, sku="X")

        report = reconcile("full", "main")

        outcome = report.results["main"]
        assert outcome.success
        assert outcome.stats.drift_fixed == 1
        assert outcome.stats.items_checked == 1
        row = _item(db_session, item.id)
        assert row.quantity == 0
        assert row.sold_at is not None
        assert row.sold_channel == "shopify_reconcile"
        assert row.last_shopify_seen_at is not None

    def test_database_truth_flags_drift(self, db_truth_store, make_item, shopify, db_session):
        item = make_item(store_key="outlet", sku="X", quantity=4, location=L2, inventory_item_id="300")
        shopify.add_level("300", L2, 0, sku="X")

        report = reconcile("full", "outlet")

        outcome = report.results["outlet"]
        assert outcome.stats.drift_detected == 1
        assert outcome.stats.drift_fixed == 0
        row = _item(db_session, item.id)
        assert row.quantity == 4
        assert row.shopify_drift is True
        assert row.shopify_drift_detected_at is not None
        details = row.shopify_drift_details
        assert details["expected"] == 4
        assert details["actual"] == 0
        assert details["location_gid"] == L2
        assert details["detected_by"] == "reconcile_job"
        assert details["mode"] == "database_truth"
        assert row.sold_at is None

    def test_bulk_refused_falls_back_to_pagination(self, store, make_item, shopify, db_session):
        for i in range(1, 6):
            shopify.add_level(str(i), L1, i)
        shopify.bulk_mode = "refuse"

        report = reconcile("full", "main", max_items=3)

        outcome = report.results["main"]
        assert outcome.success
        assert outcome.fetch_method == "paginated_fallback"
        run = get_run(outcome.run_id)
        assert run.status == "completed"
        assert run.fetch_method == "paginated_fallback"
        assert run.metadata_json["levels_fetched"] == 3

    def test_refused_bulk_status_falls_back_to_pagination(self, store, make_item, shopify, db_session):
        item = make_item(sku="X", quantity=4, inventory_item_id="300")
        shopify.add_level("300", L1, 1, sku="X")
        shopify.fail_next["graphql"] = [None, 404]

        outcome = reconcile("full", "main").results["main"]

        assert outcome.success
        assert outcome.fetch_method == "paginated_fallback"
        assert get_run(outcome.run_id).status == "completed"
        assert _item(db_session, item.id).quantity == 1

    def test_max_items_never_splits_an_item(self, store, make_item, shopify, db_session):
        first_l1 = make_item(sku="A", quantity=9, inventory_item_id="100", location=L1)
        first_l2 = make_item(sku="A", quantity=9, inventory_item_id="100", location=L2)
        second = make_item(sku="B", quantity=9, inventory_item_id="200", location=L1)
        shopify.add_level("100", L1, 1, sku="A")
        shopify.add_level("100", L2, 2)
        shopify.add_level("200", L1, 3, sku="B")

        outcome = reconcile("full", "main", max_items=1).results["main"]

        assert outcome.fetch_method == "bulk_operation"
        assert get_run(outcome.run_id).metadata_json["levels_fetched"] == 2
        assert _item(db_session, first_l1.id).quantity == 1
        assert _item(db_session, first_l2.id).quantity == 2
        assert _item(db_session, second.id).quantity == 9

    def test_empty_catalogue_completes(self, store, shopify, db_session):
        report = reconcile("full", "main")

        outcome = report.results["main"]
        run = get_run(outcome.run_id)
        assert run.status == "completed"
        assert run.fetch_method == "bulk_operation"
        assert (run.items_checked, run.drift_detected, run.drift_fixed, run.errors, run.skipped_locked) == (0, 0, 0, 0, 0)


class TestTruthPolicies:
    """Per-row outcomes beyond the reference scenarios."""

    def test_shopify_truth_matching_quantity_is_not_drift(self, store, make_item, shopify, db_session):
        item = make_item(sku="X", quantity=3, inventory_item_id="300")
        shopify.add_level("300", L1, 3, sku="X")

        outcome = reconcile("full", "main").results["main"]

        assert outcome.stats.items_checked == 1
        assert outcome.stats.drift_fixed == 0
        assert _item(db_session, item.id).last_shopify_seen_at is not None

    def test_shopify_truth_clears_existing_flag(self, store, make_item, shopify, db_session):
        item = make_item(
            sku="X", quantity=3, inventory_item_id="300",
            shopify_drift=True, shopify_drift_details={"expected": 3, "actual": 1},
        )
        shopify.add_level("300", L1, 3, sku="X")

        outcome = reconcile("full", "main").results["main"]

        assert outcome.stats.drift_fixed == 1
        row = _item(db_session, item.id)
        assert row.shopify_drift is False
        assert row.shopify_drift_details is None

    def test_shopify_truth_negative_remote_clamps_to_zero(self, store, make_item, shopify, db_session):
        item = make_item(sku="X", quantity=2, inventory_item_id="300")
        shopify.add_level("300", L1, -3, sku="X")

        reconcile("full", "main")

        assert _item(db_session, item.id).quantity == 0

    def test_database_truth_clears_flag_when_back_in_line(self, db_truth_store, make_item, shopify, db_session):
        item = make_item(
            store_key="outlet", sku="X", quantity=4, inventory_item_id="300",
            shopify_drift=True, shopify_drift_details={"expected": 4, "actual": 0},
        )
        shopify.add_level("300", L1, 4, sku="X")

        outcome = reconcile("full", "outlet").results["outlet"]

        assert outcome.stats.drift_fixed == 1
        assert outcome.stats.drift_detected == 0
        assert _item(db_session, item.id).shopify_drift is False

    def test_database_truth_existing_drift_is_not_recounted(self, db_truth_store, make_item, shopify, db_session):
        item = make_item(
            store_key="outlet", sku="X", quantity=4, inventory_item_id="300",
            shopify_drift=True,
            shopify_drift_details={"expected": 4, "actual": 0, "detected_at": "2026-01-01T00:00:00"},
        )
        shopify.add_level("300", L1, 2, sku="X")

        outcome = reconcile("full", "outlet").results["outlet"]

        assert outcome.stats.drift_detected == 0
        details = _item(db_session, item.id).shopify_drift_details
        assert details["actual"] == 2
        assert details["detected_at"] == "2026-01-01T00:00:00"

    def test_every_matching_row_gets_the_policy(self, store, make_item, shopify, db_session):
        a = make_item(sku="X", quantity=1, inventory_item_id="300")
        b = make_item(sku="X", quantity=1, inventory_item_id="300")
        shopify.add_level("300", L1, 6, sku="X")

        outcome = reconcile("full", "main").results["main"]

        assert outcome.stats.items_checked == 1
        assert outcome.stats.drift_fixed == 2
        assert _item(db_session, a.id).quantity == 6
        assert _item(db_session, b.id).quantity == 6

    def test_deleted_rows_and_other_locations_untouched(self, store, make_item, shopify, db_session):
        deleted = make_item(sku="X", quantity=5, inventory_item_id="300", deleted_at=utcnow())
        elsewhere = make_item(sku="X", quantity=5, location=L2, inventory_item_id="300")
        shopify.add_level("300", L1, 1, sku="X")

        reconcile("full", "main")

        assert _item(db_session, deleted.id).quantity == 5
        assert _item(db_session, elsewhere.id).quantity == 5


class TestLocks:
    """Locked SKUs are counted and skipped."""

    def test_locked_sku_is_skipped(self, store, make_item, shopify, db_session):
        item = make_item(sku="X", quantity=4, inventory_item_id="300")
        shopify.add_level("300", L1, 0, sku="X")
        lock_service.acquire("main", ["X"], lock_type="bulk_transfer")

        outcome = reconcile("full", "main").results["main"]

        assert outcome.stats.skipped_locked == 1
        assert outcome.stats.items_checked == 0
        assert _item(db_session, item.id).quantity == 4

    def test_mirror_is_written_for_locked_sku(self, store, make_item, shopify, db_session):
        make_item(sku="X", quantity=4, inventory_item_id="300")
        shopify.add_level("300", L1, 0, sku="X")
        lock_service.acquire("main", ["X"])

        reconcile("full", "main")

        mirror = db_session.query(InventoryLevelMirror).filter_by(inventory_item_id="300").one()
        assert mirror.available == 0

    def test_expired_leases_are_reaped(self, store, shopify, db_session):
        db_session.add(InventoryWriteLock(
            store_key="main", sku="OLD", lock_type="push", locked_by="ghost", batch_id="b",
            acquired_at=utcnow() - timedelta(hours=2), expires_at=utcnow() - timedelta(hours=1),
        ))
        db_session.commit()

        reconcile("full", "main")

        assert db_session.query(InventoryWriteLock).count() == 0


class TestModes:
    """drift_only and missing_only fetch a targeted subset."""

    @pytest.fixture
    def two_items(self, store, make_item, shopify):
        flagged = make_item(sku="A", quantity=5, inventory_item_id="100", shopify_drift=True,
                            last_shopify_seen_at=utcnow())
        unseen = make_item(sku="B", quantity=1, inventory_item_id="200")
        shopify.add_level("100", L1, 3, sku="A")
        shopify.add_level("200", L1, 9, sku="B")
        return flagged, unseen

    def test_drift_only(self, two_items, shopify, db_session):
        flagged, unseen = two_items

        outcome = reconcile("drift_only", "main").results["main"]

        assert outcome.fetch_method == "targeted_graphql"
        assert "bulk_start" not in shopify.graphql_ops
        assert _item(db_session, flagged.id).quantity == 3
        assert _item(db_session, flagged.id).shopify_drift is False
        assert _item(db_session, unseen.id).quantity == 1
        assert get_run(outcome.run_id).run_type == "inventory_reconcile_drift"

    def test_missing_only(self, two_items, shopify, db_session):
        flagged, unseen = two_items

        outcome = reconcile("missing_only", "main").results["main"]

        assert outcome.fetch_method == "targeted_graphql"
        assert _item(db_session, unseen.id).quantity == 9
        assert _item(db_session, unseen.id).last_shopify_seen_at is not None
        assert _item(db_session, flagged.id).quantity == 5

    def test_nothing_selected_completes_without_fetch(self, store, make_item, shopify, db_session):
        make_item(sku="A", quantity=1, inventory_item_id="100")

        outcome = reconcile("drift_only", "main").results["main"]

        assert outcome.success
        assert outcome.fetch_method == "none"
        assert shopify.requests == []

    def test_failed_targeted_batch_counts_errors(self, two_items, shopify, db_session):
        shopify.fail_next["graphql"] = [400]

        outcome = reconcile("drift_only", "main").results["main"]

        assert outcome.success
        assert outcome.stats.errors == 1


class TestDryRun:
    """Dry runs compute the same counters and write only the run row."""

    @pytest.mark.parametrize("mode", ["full", "drift_only", "missing_only"])
    def test_no_mutation(self, mode, store, make_item, shopify, db_session):
        make_item(sku="A", quantity=5, inventory_item_id="100", shopify_drift=True)
        make_item(sku="B", quantity=1, inventory_item_id="200")
        shopify.add_level("100", L1, 3, sku="A")
        shopify.add_level("200", L1, 0, sku="B")
        db_session.add(InventoryWriteLock(
            store_key="main", sku="OLD", lock_type="push", locked_by="ghost", batch_id="b",
            acquired_at=utcnow() - timedelta(hours=2), expires_at=utcnow() - timedelta(hours=1),
        ))
        db_session.commit()
        before = _snapshot(db_session)

        report = reconcile(mode, "main", dry_run=True)

        assert _snapshot(db_session) == before
        run = get_run(report.results["main"].run_id)
        assert run.dry_run is True
        assert run.status == "dry_run_completed"
        assert run.location_stats == []

    def test_counters_match_real_run(self, store, make_item, shopify, db_session):
        item = make_item(sku="X", quantity=4, location=L2, inventory_item_id="300")
        shopify.add_level("300", L2, 0, sku="X")

        dry = reconcile("full", "main", dry_run=True).results["main"]

        assert dry.stats.drift_fixed == 1
        assert _item(db_session, item.id).quantity == 4

        real = reconcile("full", "main").results["main"]
        assert real.stats.to_dict() == dry.stats.to_dict()

    def test_dry_run_skips_stale_run_reaping(self, store, shopify, db_session):
        stale = ReconciliationRun(
            store_key="main", mode="full", run_type="inventory_reconcile_full",
            status="running", started_at=utcnow() - timedelta(days=1),
        )
        db_session.add(stale)
        db_session.commit()

        reconcile("full", "main", dry_run=True)

        assert get_run(stale.id).status == "running"


class TestRunRecord:
    """Run lifecycle, metadata and failure classification."""

    def test_location_stats_persisted(self, store, make_item, shopify, db_session):
        make_item(sku="A", quantity=1, location=L1, inventory_item_id="100")
        make_item(sku="A", quantity=1, location=L2, inventory_item_id="100")
        shopify.add_level("100", L1, 1, sku="A")
        shopify.add_level("100", L2, 7, sku="A")

        outcome = reconcile("full", "main").results["main"]

        data = get_run(outcome.run_id).to_dict(include_locations=True)
        stats = {s["location_gid"]: s for s in data["location_stats"]}
        assert stats[L1]["items_checked"] == 1
        assert stats[L1]["drift_fixed"] == 0
        assert stats[L2]["drift_fixed"] == 1
        assert stats[L2]["location_name"] == "Back Room"
        assert data["metadata"]["locations_processed"] == 2

    def test_metadata(self, store, shopify, db_session):
        outcome = reconcile("full", "main", triggered_by="cron").results["main"]

        meta = get_run(outcome.run_id).metadata_json
        assert meta["triggered_by"] == "cron"
        assert meta["fetch_method"] == "bulk_operation"
        assert meta["http_calls"] >= 3
        assert meta["bulk_status"] == "COMPLETED"
        assert "summary" in meta

    def test_mirror_upserted_not_duplicated(self, store, shopify, db_session):
        shopify.add_level("100", L1, 2, sku="A")
        shopify.add_level("999", L2, 8)

        reconcile("full", "main")
        shopify.add_level("100", L1, 5)
        reconcile("full", "main")

        rows = {(m.inventory_item_id, m.location_gid): m for m in db_session.query(InventoryLevelMirror)}
        assert len(rows) == 2
        assert rows[("100", L1)].available == 5
        assert rows[("100", L1)].location_name == "Main Floor"
        assert rows[("999", L2)].last_reconciled_at is not None

    def test_bulk_download_failure(self, store, shopify, db_session):
        shopify.add_level("100", L1, 2, sku="A")
        shopify.fail_next["download"] = [500, 500, 500]

        outcome = reconcile("full", "main").results["main"]

        assert not outcome.success
        assert outcome.error_code == "BULK_OP_FAILED"
        run = get_run(outcome.run_id)
        assert run.status == "failed"
        assert run.error_code == "BULK_OP_FAILED"
        assert run.completed_at is not None

    def test_bulk_failed_status_falls_back(self, store, shopify, db_session):
        shopify.add_level("100", L1, 2, sku="A")
        shopify.bulk_mode = "fail"

        outcome = reconcile("full", "main").results["main"]

        assert outcome.success
        assert outcome.fetch_method == "paginated_fallback"

    def test_rate_limited(self, store, shopify, db_session):
        shopify.fail_next["graphql"] = [429, 429, 429]

        outcome = reconcile("full", "main").results["main"]

        assert outcome.error_code == "RATE_LIMITED"
        assert get_run(outcome.run_id).status == "failed"

    def test_stale_runs_are_reaped_first(self, store, shopify, db_session):
        stale = ReconciliationRun(
            store_key="main", mode="full", run_type="inventory_reconcile_full",
            status="running", started_at=utcnow() - timedelta(days=1),
        )
        db_session.add(stale)
        db_session.commit()

        reconcile("full", "main")

        run = get_run(stale.id)
        assert run.status == "failed"
        assert run.error_code == STALE_RUN_ERROR_CODE

    def test_list_runs(self, store, shopify, db_session):
        reconcile("full", "main")
        reconcile("full", "main", dry_run=True)

        assert len(list_runs(store_key="main")) == 2
        assert [r.status for r in list_runs(status="dry_run_completed")] == ["dry_run_completed"]
        assert len(list_runs(limit=1)) == 1


class TestStoreSelection:
    """Store targeting and multi-store isolation."""

    def test_unknown_store_raises(self, db_session):
        with pytest.raises(StoreNotFoundError):
            reconcile("full", "ghost")

    def test_invalid_arguments(self, store):
        with pytest.raises(ReconcileError):
            reconcile("everything", "main")
        with pytest.raises(ReconcileError):
            reconcile("full", "main", max_items=0)

    def test_failing_store_does_not_stop_others(self, store, make_item, shopify, db_session):
        store_service.create_store("broken", "Broken")
        item = make_item(sku="X", quantity=4, inventory_item_id="300")
        shopify.add_level("300", L1, 1, sku="X")

        report = reconcile("full")

        assert set(report.results) == {"broken", "main"}
        assert report.results["broken"].error_code == "CREDENTIALS_MISSING"
        assert report.results["main"].success
        assert not report.success
        assert _item(db_session, item.id).quantity == 1
        assert get_run(report.results["broken"].run_id).status == "failed"

    def test_all_stores_skips_inactive(self, store, db_truth_store, shopify, db_session):
        store_service.update_store("outlet", is_active=False)

        report = reconcile("full")

        assert list(report.results) == ["main"]
        assert report.success

    def test_explicit_inactive_store_fails_its_run(self, store, shopify, db_session):
        store_service.update_store("main", is_active=False)

        outcome = reconcile("full", "main").results["main"]

        assert outcome.error_code == "CREDENTIALS_MISSING"

    def test_report_to_dict(self, store, shopify, db_session):
        data = reconcile("full", "main", dry_run=True).to_dict()

        assert data["success"] is True
        assert data["mode"] == "full"
        assert data["dry_run"] is True
        assert data["stores_processed"] == 1
        assert set(data["results"]["main"]["stats"]) == {
            "items_checked", "drift_detected", "drift_fixed", "errors", "skipped_locked", "locations_processed",
        }
