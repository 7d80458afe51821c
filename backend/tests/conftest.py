"""
Pytest fixtures for stocksync backend tests.

Provides the test app on in-memory SQLite, per-test table wipe, seeded
stores and inventory rows, and FakeShopify: an in-process Admin API behind
httpx.MockTransport, so no test ever touches the network or sleeps.
"""

import json
import re
from datetime import timedelta

import httpx
import pytest

from stocksync import create_app
from stocksync.extensions import db
from stocksync.models import InventoryItem
from stocksync.models.stores import TRUTH_MODE_DATABASE
from stocksync.services import store_service
from stocksync.services.concurrency import Backoff
from stocksync.services.marketplace_client import Retrier, ShopifyClient
from stocksync.time_utils import utcnow


SERVICE_TOKEN = "test-service-token"

L1 = "gid://shopify/Location/1001"
L2 = "gid://shopify/Location/1002"

EXPORT_URL = "https://storage.example.com/bulk/export.jsonl"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SYNC_SERVICE_TOKEN': SERVICE_TOKEN,
        'PUSH_CALL_DELAY_SECONDS': 0,
        'BULK_POLL_INTERVAL_SECONDS': 0,
        'FETCH_RATE_DELAY_SECONDS': 0,
        'HTTP_BACKOFF_BASE_SECONDS': 0,
        'HTTP_RETRY_AFTER_CAP_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        db.session.expunge_all()
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    """Shopify-truth store with working credentials."""
    store = store_service.create_store("main", "Main Store")
    store_service.set_credentials("main", domain="main-store.myshopify.com", access_token="shpat_main_token")
    return store


@pytest.fixture(scope='function')
def db_truth_store(db_session):
    """Database-truth store with working credentials."""
    store = store_service.create_store("outlet", "Outlet", inventory_truth_mode=TRUTH_MODE_DATABASE)
    store_service.set_credentials("outlet", domain="outlet.myshopify.com", access_token="shpat_outlet_token")
    return store


@pytest.fixture(scope='function')
def make_item(db_session):
    """Factory for InventoryItem rows; released and live unless told otherwise."""
    def _make(store_key="main", sku="ABC", quantity=1, location=L1, inventory_item_id=None, **fields):
        fields.setdefault("released_at", utcnow() - timedelta(days=1))
        item = InventoryItem(
            store_key=store_key,
            sku=sku,
            quantity=quantity,
            shopify_location_gid=location,
            shopify_inventory_item_id=inventory_item_id,
            **fields,
        )
        db_session.add(item)
        db_session.commit()
        return item

    return _make


@pytest.fixture
def auth_headers():
    """Helper to create Authorization headers."""
    def _headers(token: str = SERVICE_TOKEN) -> dict:
        return {'Authorization': f'Bearer {token}'}
    return _headers


class FakeShopify:
    """
    In-memory Shopify Admin API.

    levels:    {(inventory_item_id, location_gid): available}
    skus:      {inventory_item_id: sku}
    variants:  list of {"id", "sku", "product_id", "inventory_item_id"}
    locations: list of {"id", "name", "active", "primary"}

    bulk_mode: "complete" | "refuse" | "fail" | "running"
    fail_next: {route_name: [status, ...]} consumed one status per request,
    route_name in "graphql", "set", "locations", "download". A None entry
    lets that request through.
    """

    def __init__(self):
        self.levels: dict = {}
        self.skus: dict = {}
        self.variants: list = []
        self.locations: list = [
            {"id": 1001, "name": "Main Floor", "active": True, "primary": True},
            {"id": 1002, "name": "Back Room", "active": True, "primary": False},
        ]
        self.bulk_mode = "complete"
        self.export_url = EXPORT_URL
        self.fail_next: dict = {}
        self.throttle = None

        self.requests: list = []
        self.set_calls: list = []
        self.graphql_ops: list = []

    # --- seeding helpers ---------------------------------------------------

    def add_level(self, inventory_item_id, location_gid, available, sku=None):
        self.levels[(str(inventory_item_id), location_gid)] = available
        if sku is not None:
            self.skus[str(inventory_item_id)] = sku
        return self

    def add_variant(self, sku, inventory_item_id, variant_id=None, product_id=None):
        self.variants.append({
            "id": variant_id or f"9{inventory_item_id}",
            "sku": sku,
            "product_id": product_id or f"7{inventory_item_id}",
            "inventory_item_id": str(inventory_item_id),
        })
        self.skus.setdefault(str(inventory_item_id), sku)
        return self

    # --- client wiring -----------------------------------------------------

    def client_factory(self, credentials, retrier=None):
        return ShopifyClient(
            credentials.domain,
            credentials.access_token,
            api_version=credentials.api_version,
            retrier=retrier or Retrier(Backoff(attempts=3, base=0), retry_after_cap=0, sleep=lambda s: None),
            transport=httpx.MockTransport(self.handler),
        )

    # --- payload builders --------------------------------------------------

    def _item_ids(self):
        ids = sorted({item_id for item_id, _ in self.levels} | set(self.skus), key=int)
        return ids

    def _location_name(self, gid):
        numeric = int(gid.rsplit("/", 1)[1])
        for loc in self.locations:
            if loc["id"] == numeric:
                return loc["name"]
        return None

    def _level_nodes(self, item_id):
        nodes = []
        for (level_item, location_gid), available in sorted(self.levels.items()):
            if level_item != item_id:
                continue
            nodes.append({
                "id": f"gid://shopify/InventoryLevel/{item_id}?location={location_gid.rsplit('/', 1)[1]}",
                "quantities": [{"name": "available", "quantity": available}],
                "updatedAt": "2026-10-01T12:00:00Z",
                "location": {"id": location_gid, "name": self._location_name(location_gid)},
            })
        return nodes

    def _item_node(self, item_id):
        return {
            "id": f"gid://shopify/InventoryItem/{item_id}",
            "sku": self.skus.get(item_id),
            "inventoryLevels": {"edges": [{"node": n} for n in self._level_nodes(item_id)]},
        }

    def export_jsonl(self):
        lines = []
        for item_id in self._item_ids():
            gid = f"gid://shopify/InventoryItem/{item_id}"
            lines.append(json.dumps({"id": gid, "sku": self.skus.get(item_id)}))
            for node in self._level_nodes(item_id):
                lines.append(json.dumps(dict(node, __parentId=gid)))
        return "\n".join(lines) + ("\n" if lines else "")

    def _graphql(self, body):
        query = body.get("query", "")
        variables = body.get("variables") or {}
        extensions = {}
        if self.throttle is not None:
            extensions = {"cost": {"throttleStatus": dict(self.throttle)}}

        if "bulkOperationRunQuery" in query:
            self.graphql_ops.append("bulk_start")
            if self.bulk_mode == "refuse":
                return {"data": {"bulkOperationRunQuery": {
                    "bulkOperation": None,
                    "userErrors": [{"field": None, "message": "A bulk query operation is already in progress"}],
                }}}
            return {"data": {"bulkOperationRunQuery": {
                "bulkOperation": {"id": "gid://shopify/BulkOperation/1", "status": "CREATED"},
                "userErrors": [],
            }}}

        if "currentBulkOperation" in query:
            self.graphql_ops.append("bulk_poll")
            status = {"complete": "COMPLETED", "fail": "FAILED", "running": "RUNNING"}[self.bulk_mode]
            count = len(self.export_jsonl().splitlines())
            return {"data": {"currentBulkOperation": {
                "id": "gid://shopify/BulkOperation/1",
                "status": status,
                "errorCode": "INTERNAL_SERVER_ERROR" if status == "FAILED" else None,
                "objectCount": str(count),
                "url": self.export_url if status == "COMPLETED" else None,
                "partialDataUrl": None,
            }}}

        if "productVariants" in query:
            self.graphql_ops.append("variants")
            match = re.match(r"sku:'(.*)'$", variables.get("query", ""))
            wanted = match.group(1) if match else ""
            edges = [{
                "node": {
                    "id": f"gid://shopify/ProductVariant/{v['id']}",
                    "sku": v["sku"],
                    "title": "Default",
                    "product": {"id": f"gid://shopify/Product/{v['product_id']}"},
                    "inventoryItem": {"id": f"gid://shopify/InventoryItem/{v['inventory_item_id']}"},
                }
            } for v in self.variants if v["sku"].startswith(wanted)]
            return {"data": {"productVariants": {"edges": edges}}}

        if "inventoryItems(first" in query:
            self.graphql_ops.append("page")
            ids = self._item_ids()
            start = int(variables.get("after") or 0)
            page = ids[start:start + int(variables["first"])]
            end = start + len(page)
            return {
                "data": {"inventoryItems": {
                    "edges": [{"node": self._item_node(i)} for i in page],
                    "pageInfo": {"hasNextPage": end < len(ids), "endCursor": str(end)},
                }},
                "extensions": extensions,
            }

        if "nodes(ids" in query:
            self.graphql_ops.append("nodes")
            nodes = []
            for gid in variables.get("ids", []):
                item_id = gid.rsplit("/", 1)[1]
                nodes.append(self._item_node(item_id) if item_id in self._item_ids() else None)
            return {"data": {"nodes": nodes}, "extensions": extensions}

        return {"errors": [{"message": "unsupported query"}]}

    def _failure(self, route):
        queue = self.fail_next.get(route)
        if queue:
            status = queue.pop(0)
            if status is None:
                return None
            headers = {"Retry-After": "1"} if status == 429 else {}
            return httpx.Response(status, json={"errors": "injected"}, headers=headers)
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == "storage.example.com":
            return self._failure("download") or httpx.Response(200, text=self.export_jsonl())

        if path.endswith("/graphql.json"):
            return self._failure("graphql") or httpx.Response(200, json=self._graphql(json.loads(request.content)))

        if path.endswith("/locations.json"):
            return self._failure("locations") or httpx.Response(200, json={"locations": self.locations})

        if path.endswith("/inventory_levels/set.json"):
            failure = self._failure("set")
            if failure is not None:
                return failure
            body = json.loads(request.content)
            self.set_calls.append(body)
            location_gid = f"gid://shopify/Location/{body['location_id']}"
            self.levels[(str(body["inventory_item_id"]), location_gid)] = body["available"]
            return httpx.Response(200, json={"inventory_level": body})

        return httpx.Response(404, json={"errors": "Not Found"})


@pytest.fixture(scope='function')
def shopify(monkeypatch):
    """FakeShopify wired in as the default client factory."""
    from stocksync.services import marketplace_client

    fake = FakeShopify()
    monkeypatch.setattr(marketplace_client, "build_client", fake.client_factory)
    return fake
