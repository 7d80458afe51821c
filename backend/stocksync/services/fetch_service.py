# Overview: Remote inventory-level retrieval: bulk export + poll, paginated walk, targeted by id.

"""
Remote Fetch Strategy

Three tactics, chosen by the caller (reconcile_service picks by mode):

- start_bulk_export / poll_bulk_export / parse_bulk_result: asynchronous
  JSONL export of every inventory item and its levels. Refusal, failure
  and timeout all come back as None so the caller can fall back.
- fetch_paginated: cursor walk over inventoryItems, bounded by max_items
  whole items (an item is never cut between its locations).
- fetch_targeted: `nodes(ids:)` lookups in batches for an explicit id list.

Every tactic returns LevelFact values. Raw GraphQL payloads never leave
this module.

NOT FOUND IS END OF DATA: a 404 on a page, a batch or an expired export
file ends that stream quietly. Remote totals are approximate and a
vanished page is not worth failing a run over.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from flask import current_app

from stocksync.time_utils import parse_iso_datetime
from .concurrency import chunked
from .marketplace_client import (
    ClientRequestError,
    MarketplaceError,
    ShopifyClient,
    inventory_item_gid,
    strip_gid,
)


FETCH_METHOD_BULK = "bulk_operation"
FETCH_METHOD_PAGINATED = "paginated_fallback"
FETCH_METHOD_TARGETED = "targeted_graphql"
FETCH_METHOD_NONE = "none"

BULK_TERMINAL_FAILURES = ("FAILED", "CANCELED", "CANCELLED", "EXPIRED")


class BulkOperationError(Exception):
    """Raised when a completed bulk export cannot be downloaded or read."""
    pass


@dataclass(frozen=True)
class LevelFact:
    """One remote (inventory item, location) -> available observation."""
    inventory_item_id: str
    location_gid: str
    location_name: str | None
    available: int
    shopify_updated_at: datetime | None = None
    sku: str | None = None


@dataclass(frozen=True)
class BulkHandle:
    operation_id: str
    status: str | None = None


@dataclass(frozen=True)
class BulkResult:
    url: str | None
    object_count: int = 0
    partial_data_url: str | None = None


BULK_EXPORT_MUTATION = '''
mutation {
  bulkOperationRunQuery(
    query: """
    {
      inventoryItems {
        edges {
          node {
            id
            sku
            inventoryLevels {
              edges {
                node {
                  id
                  quantities(names: ["available"]) { name quantity }
                  updatedAt
                  location { id name }
                }
              }
            }
          }
        }
      }
    }
    """
  ) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
'''

BULK_STATUS_QUERY = """
query {
  currentBulkOperation {
    id
    status
    errorCode
    objectCount
    url
    partialDataUrl
  }
}
"""

_LEVEL_FIELDS = """
inventoryLevels(first: 50) {
  edges {
    node {
      id
      quantities(names: ["available"]) { name quantity }
      updatedAt
      location { id name }
    }
  }
}
"""

PAGINATED_LEVELS_QUERY = """
query inventoryLevelsPage($first: Int!, $after: String) {
  inventoryItems(first: $first, after: $after) {
    edges {
      node {
        id
        sku
        %s
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
""" % _LEVEL_FIELDS

TARGETED_LEVELS_QUERY = """
query inventoryLevelsByIds($ids: [ID!]!) {
  nodes(ids: $ids) {
    ... on InventoryItem {
      id
      sku
      %s
    }
  }
}
""" % _LEVEL_FIELDS


def _available(level: dict) -> int:
    for q in level.get("quantities") or []:
        if q.get("name") == "available":
            try:
                return int(q.get("quantity") or 0)
            except (TypeError, ValueError):
                return 0
    return 0


def _to_fact(item_gid: str, sku: str | None, level: dict) -> LevelFact | None:
    location = level.get("location") or {}
    item_id = strip_gid(item_gid)
    if not item_id or not location.get("id"):
        return None
    try:
        updated_at = parse_iso_datetime(level.get("updatedAt"))
    except ValueError:
        updated_at = None
    return LevelFact(
        inventory_item_id=item_id,
        location_gid=location["id"],
        location_name=location.get("name"),
        available=_available(level),
        shopify_updated_at=updated_at,
        sku=sku or None,
    )


def _facts_from_item_node(node: dict) -> list[LevelFact]:
    facts = []
    for edge in ((node.get("inventoryLevels") or {}).get("edges") or []):
        fact = _to_fact(node["id"], node.get("sku"), edge.get("node") or {})
        if fact is not None:
            facts.append(fact)
    return facts


def cap_items(facts: list[LevelFact], max_items: int | None) -> list[LevelFact]:
    """Every level of the first `max_items` distinct inventory items."""
    if not max_items:
        return facts
    kept: set[str] = set()
    capped = []
    for fact in facts:
        if fact.inventory_item_id not in kept:
            if len(kept) >= max_items:
                continue
            kept.add(fact.inventory_item_id)
        capped.append(fact)
    return capped


class InventoryFetcher:
    """
    Level retrieval for one store. Wraps one ShopifyClient; all HTTP retry
    behaviour comes from the client's Retrier.

    `sleep` and `clock` are injectable so tests never wait.
    """

    def __init__(
        self,
        client: ShopifyClient,
        *,
        poll_interval: float = 2.0,
        max_wait: float = 300.0,
        page_size: int = 50,
        rate_delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.page_size = max(1, int(page_size))
        self.rate_delay = rate_delay
        self.sleep = sleep
        self.clock = clock

        # Ids whose targeted batch failed; the caller counts them as errors
        self.skipped_ids: list[str] = []

    @classmethod
    def from_config(cls, client: ShopifyClient, config, *, sleep=None, clock=None) -> "InventoryFetcher":
        return cls(
            client,
            poll_interval=float(config["BULK_POLL_INTERVAL_SECONDS"]),
            max_wait=float(config["BULK_MAX_WAIT_SECONDS"]),
            page_size=int(config["FETCH_PAGE_SIZE"]),
            rate_delay=float(config["FETCH_RATE_DELAY_SECONDS"]),
            sleep=sleep or time.sleep,
            clock=clock or time.monotonic,
        )

    def _pause(self, seconds: float) -> None:
        if seconds > 0:
            self.sleep(seconds)

    # --- bulk export ------------------------------------------------------

    def start_bulk_export(self) -> BulkHandle | None:
        """Request the export. None when the marketplace refuses it."""
        try:
            result = self.client.graphql(BULK_EXPORT_MUTATION, label="bulk export start")
        except ClientRequestError as exc:
            current_app.logger.warning("[BULK] start refused: %s", exc)
            return None

        payload = result.data.get("bulkOperationRunQuery") or {}
        user_errors = payload.get("userErrors") or []
        if not result.ok or user_errors:
            current_app.logger.warning("[BULK] start rejected: %s", result.errors or user_errors)
            return None

        operation = payload.get("bulkOperation") or {}
        if not operation.get("id"):
            return None
        current_app.logger.info("[BULK] started %s", operation["id"])
        return BulkHandle(operation_id=operation["id"], status=operation.get("status"))

    def poll_bulk_export(
        self,
        handle: BulkHandle | None = None,
        on_progress: Callable[[str, int], None] | None = None,
    ) -> BulkResult | None:
        """
        Poll every `poll_interval` seconds until COMPLETED, a terminal failure,
        or `max_wait` elapses. Only COMPLETED returns a result; a refused
        status query ends polling the same way a failed export does.
        """
        started = self.clock()
        while self.clock() - started < self.max_wait:
            self._pause(self.poll_interval)

            try:
                result = self.client.graphql(BULK_STATUS_QUERY, label="bulk export status")
            except ClientRequestError as exc:
                current_app.logger.warning("[BULK] status query refused: %s", exc)
                return None
            op = result.data.get("currentBulkOperation")
            if not op:
                current_app.logger.warning("[BULK] no current operation")
                return None
            if handle is not None and op.get("id") != handle.operation_id:
                current_app.logger.warning("[BULK] current operation %s is not ours (%s)", op.get("id"), handle.operation_id)
                return None

            status = op.get("status") or "UNKNOWN"
            object_count = int(op.get("objectCount") or 0)
            if on_progress is not None:
                on_progress(status, object_count)

            if status == "COMPLETED":
                current_app.logger.info("[BULK] completed with %d objects", object_count)
                return BulkResult(
                    url=op.get("url"),
                    object_count=object_count,
                    partial_data_url=op.get("partialDataUrl"),
                )
            if status in BULK_TERMINAL_FAILURES:
                current_app.logger.warning("[BULK] ended %s (%s)", status, op.get("errorCode"))
                return None

        current_app.logger.warning("[BULK] timed out after %.0fs", self.max_wait)
        return None

    def parse_bulk_result(self, result: BulkResult) -> list[LevelFact]:
        # An export over an empty catalogue completes without a file
        if not result.url:
            return []

        try:
            text = self.client.download(result.url, label="bulk export download")
        except ClientRequestError as exc:
            if exc.is_not_found:
                current_app.logger.warning("[BULK] export file gone: %s", exc)
                return []
            raise BulkOperationError(f"bulk export download failed: {exc}") from exc
        except MarketplaceError as exc:
            raise BulkOperationError(f"bulk export download failed: {exc}") from exc

        skus: dict[str, str | None] = {}
        raw_levels: list[dict] = []
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                current_app.logger.warning("[BULK] skipping unreadable line")
                continue
            obj_id = obj.get("id") or ""
            parent = obj.get("__parentId")
            if "InventoryItem" in obj_id and not parent:
                skus[obj_id] = obj.get("sku")
            elif "InventoryLevel" in obj_id and parent:
                raw_levels.append(obj)

        facts = []
        for level in raw_levels:
            parent = level["__parentId"]
            fact = _to_fact(parent, skus.get(parent), level)
            if fact is not None:
                facts.append(fact)

        current_app.logger.info("[BULK] parsed %d levels from %d items", len(facts), len(skus))
        return facts

    # --- paginated --------------------------------------------------------

    def fetch_paginated(self, max_items: int | None = None) -> list[LevelFact]:
        facts: list[LevelFact] = []
        cursor = None
        pages = 0
        items = 0

        while True:
            try:
                result = self.client.graphql(
                    PAGINATED_LEVELS_QUERY,
                    {"first": self.page_size, "after": cursor},
                    label=f"inventory page {pages + 1}",
                )
            except ClientRequestError as exc:
                if exc.is_not_found:
                    current_app.logger.info("[FETCH] page %d not found, treating as end of data", pages + 1)
                    break
                raise

            if not result.ok:
                raise MarketplaceError(f"inventory page {pages + 1}: {result.errors}")

            connection = result.data.get("inventoryItems")
            if not connection:
                break

            for edge in connection.get("edges") or []:
                if max_items and items >= max_items:
                    break
                node = edge.get("node") or {}
                facts.extend(_facts_from_item_node(node))
                items += 1
            pages += 1

            if max_items and items >= max_items:
                current_app.logger.info("[FETCH] reached max items %d", max_items)
                break

            page_info = connection.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")

            self._pause(max(self.rate_delay, result.throttle_wait_seconds()))

        current_app.logger.info("[FETCH] %d pages, %d items, %d levels", pages, items, len(facts))
        return facts

    # --- targeted ---------------------------------------------------------

    def fetch_targeted(self, inventory_item_ids) -> list[LevelFact]:
        """
        Levels for an explicit id list. A failing batch is logged and its ids
        land in `skipped_ids`; later batches still run.
        """
        ids = [i for i in (strip_gid(str(x)) for x in inventory_item_ids or []) if i]
        facts: list[LevelFact] = []
        if not ids:
            return facts

        batches = list(chunked(ids, self.page_size))
        for index, batch in enumerate(batches):
            gids = [inventory_item_gid(i) for i in batch]
            try:
                result = self.client.graphql(TARGETED_LEVELS_QUERY, {"ids": gids}, label=f"targeted batch {index + 1}")
            except ClientRequestError as exc:
                if exc.is_not_found:
                    continue
                current_app.logger.warning("[FETCH] targeted batch %d failed: %s", index + 1, exc)
                self.skipped_ids.extend(batch)
                continue

            if not result.ok:
                current_app.logger.warning("[FETCH] targeted batch %d errors: %s", index + 1, result.errors)
                self.skipped_ids.extend(batch)
                continue

            for node in result.data.get("nodes") or []:
                # Unknown ids come back as null nodes
                if not node or not node.get("id"):
                    continue
                facts.extend(_facts_from_item_node(node))

            if index < len(batches) - 1:
                self._pause(max(self.rate_delay, result.throttle_wait_seconds()))

        current_app.logger.info("[FETCH] targeted: %d levels from %d items", len(facts), len(ids))
        return facts
