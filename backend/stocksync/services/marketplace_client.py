# Overview: Shopify Admin API client; every marketplace call goes through one Retrier.

"""
Marketplace HTTP client.

RETRY POLICY (Retrier.send):
- 429: wait for the Retry-After hint (capped), then retry
- 5xx and transport errors: bounded exponential backoff, then retry
- any other 4xx: raised immediately as ClientRequestError, never retried

A Retrier is a plain value created per run/request and passed to the
client. Nothing about backoff is kept at module level, so two runs in the
same process never share attempt counters or sleep state.

Payloads are turned into the dataclasses below before they leave this
module; callers never index into raw JSON.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from flask import current_app

from .concurrency import Backoff


INVENTORY_ITEM_GID_PREFIX = "gid://shopify/InventoryItem/"
LOCATION_GID_PREFIX = "gid://shopify/Location/"

_TRAILING_ID = re.compile(r"/(\d+)$")


class MarketplaceError(Exception):
    """Raised when a marketplace call fails."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class RateLimitedError(MarketplaceError):
    """Raised when 429 responses outlast every retry."""


class ClientRequestError(MarketplaceError):
    """4xx other than 429. Terminal: the same request will fail again."""

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def strip_gid(value: str | None) -> str | None:
    """'gid://shopify/InventoryItem/123' -> '123'; plain ids pass through."""
    if not value:
        return None
    match = _TRAILING_ID.search(value)
    if match:
        return match.group(1)
    return value if value.isdigit() else None


def inventory_item_gid(item_id: str) -> str:
    return item_id if item_id.startswith("gid://") else f"{INVENTORY_ITEM_GID_PREFIX}{item_id}"


def location_gid(location_id: str | int) -> str:
    text = str(location_id)
    return text if text.startswith("gid://") else f"{LOCATION_GID_PREFIX}{text}"


@dataclass
class Retrier:
    backoff: Backoff
    retry_after_cap: float = 5.0
    sleep: Callable[[float], None] = time.sleep

    # Per-instance counters, surfaced in run metadata
    calls: int = 0
    retries: int = 0
    slept_seconds: float = 0.0

    @classmethod
    def from_config(cls, config, *, sleep: Callable[[float], None] | None = None) -> "Retrier":
        return cls(
            backoff=Backoff(
                attempts=int(config["HTTP_MAX_ATTEMPTS"]),
                base=float(config["HTTP_BACKOFF_BASE_SECONDS"]),
                cap=float(config["HTTP_BACKOFF_MAX_SECONDS"]),
            ),
            retry_after_cap=float(config["HTTP_RETRY_AFTER_CAP_SECONDS"]),
            sleep=sleep or time.sleep,
        )

    def _pause(self, seconds: float) -> None:
        self.retries += 1
        self.slept_seconds += seconds
        if seconds > 0:
            self.sleep(seconds)

    def _retry_after(self, response: httpx.Response) -> float:
        raw = response.headers.get("Retry-After", "2")
        try:
            seconds = float(raw)
        except ValueError:
            seconds = 2.0
        return max(0.0, min(seconds, self.retry_after_cap))

    def send(self, request: Callable[[], httpx.Response], *, label: str) -> httpx.Response:
        attempts = max(1, self.backoff.attempts)
        for attempt in range(attempts):
            last = attempt >= attempts - 1
            self.calls += 1
            try:
                response = request()
            except httpx.TransportError as exc:
                if last:
                    raise MarketplaceError(f"{label}: transport error: {exc}", retryable=True) from exc
                current_app.logger.warning("%s: transport error (%s), retrying", label, exc)
                self._pause(self.backoff.delay(attempt))
                continue

            status = response.status_code
            if status == 429:
                if last:
                    raise RateLimitedError(f"{label}: rate limited", status_code=status, retryable=True)
                delay = self._retry_after(response)
                current_app.logger.info("%s: rate limited, waiting %.2fs", label, delay)
                self._pause(delay)
                continue

            if status >= 500:
                if last:
                    raise MarketplaceError(f"{label}: server error {status}", status_code=status, retryable=True)
                current_app.logger.warning("%s: server error %s, retrying", label, status)
                self._pause(self.backoff.delay(attempt))
                continue

            if status >= 400:
                raise ClientRequestError(
                    f"{label}: {status} {_short_body(response)}",
                    status_code=status,
                )

            return response

        raise MarketplaceError(f"{label}: no attempts made")


def _short_body(response: httpx.Response, limit: int = 200) -> str:
    text = response.text or ""
    return text[:limit]


@dataclass(frozen=True)
class GraphQLResponse:
    data: dict
    errors: list = field(default_factory=list)
    extensions: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def throttle_wait_seconds(self, min_available: float = 100) -> float:
        """Seconds to wait for the query budget to refill to `min_available`."""
        status = (self.extensions.get("cost") or {}).get("throttleStatus") or {}
        available = status.get("currentlyAvailable")
        if available is None or available >= min_available:
            return 0.0
        restore_rate = status.get("restoreRate") or 50
        return (min_available - available) / float(restore_rate)


@dataclass(frozen=True)
class RemoteVariant:
    variant_id: str
    product_id: str | None
    inventory_item_id: str | None
    sku: str | None
    title: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.variant_id,
            "product_id": self.product_id,
            "inventory_item_id": self.inventory_item_id,
            "sku": self.sku,
            "title": self.title,
        }


@dataclass(frozen=True)
class RemoteLocation:
    location_id: str
    name: str | None
    active: bool
    primary: bool

    @property
    def gid(self) -> str:
        return location_gid(self.location_id)


VARIANTS_BY_SKU_QUERY = """
query variantsBySku($query: String!) {
  productVariants(first: 10, query: $query) {
    edges {
      node {
        id
        sku
        title
        product { id }
        inventoryItem { id }
      }
    }
  }
}
"""


class ShopifyClient:
    """Thin Admin API wrapper. One instance per store per run."""

    def __init__(
        self,
        domain: str,
        access_token: str,
        *,
        api_version: str,
        retrier: Retrier,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.domain = domain
        self.api_version = api_version
        self.retrier = retrier
        self._access_token = access_token
        self._http = httpx.Client(timeout=timeout, transport=transport)

    def __enter__(self) -> "ShopifyClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def __repr__(self) -> str:
        return f"<ShopifyClient domain={self.domain!r} api={self.api_version}>"

    def _admin_url(self, path: str) -> str:
        return f"https://{self.domain}/admin/api/{self.api_version}/{path.lstrip('/')}"

    def _headers(self) -> dict:
        return {
            "X-Shopify-Access-Token": self._access_token,
            "Content-Type": "application/json",
        }

    def _json(self, response: httpx.Response, label: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise MarketplaceError(f"{label}: invalid JSON response", status_code=response.status_code) from exc

    # --- transport-level helpers -------------------------------------------

    def graphql(self, query: str, variables: dict | None = None, *, label: str = "graphql") -> GraphQLResponse:
        url = self._admin_url("graphql.json")
        body = {"query": query, "variables": variables or {}}
        response = self.retrier.send(
            lambda: self._http.post(url, json=body, headers=self._headers()),
            label=label,
        )
        payload = self._json(response, label)
        if not isinstance(payload, dict):
            raise MarketplaceError(f"{label}: unexpected payload")
        return GraphQLResponse(
            data=payload.get("data") or {},
            errors=list(payload.get("errors") or []),
            extensions=payload.get("extensions") or {},
        )

    def rest_get(self, path: str, params: dict | None = None, *, label: str | None = None) -> dict:
        label = label or f"GET {path}"
        url = self._admin_url(path)
        response = self.retrier.send(
            lambda: self._http.get(url, params=params, headers=self._headers()),
            label=label,
        )
        return self._json(response, label)

    def rest_post(self, path: str, payload: dict, *, label: str | None = None) -> dict:
        label = label or f"POST {path}"
        url = self._admin_url(path)
        response = self.retrier.send(
            lambda: self._http.post(url, json=payload, headers=self._headers()),
            label=label,
        )
        if not response.content:
            return {}
        return self._json(response, label)

    def download(self, url: str, *, label: str = "download") -> str:
        """Fetch an export file. No admin token: the URL is pre-signed storage."""
        response = self.retrier.send(lambda: self._http.get(url), label=label)
        return response.text

    # --- typed endpoints ---------------------------------------------------

    def find_variants_by_sku(self, sku: str) -> list[RemoteVariant]:
        escaped = sku.replace("\\", "\\\\").replace("'", "\\'")
        result = self.graphql(VARIANTS_BY_SKU_QUERY, {"query": f"sku:'{escaped}'"}, label=f"variants sku={sku}")
        if not result.ok:
            raise MarketplaceError(f"variant lookup failed: {result.errors}")

        variants = []
        for edge in ((result.data.get("productVariants") or {}).get("edges") or []):
            node = edge.get("node") or {}
            # Search is tokenized; keep exact matches only
            if (node.get("sku") or "") != sku:
                continue
            variants.append(
                RemoteVariant(
                    variant_id=strip_gid(node.get("id")),
                    product_id=strip_gid((node.get("product") or {}).get("id")),
                    inventory_item_id=strip_gid((node.get("inventoryItem") or {}).get("id")),
                    sku=node.get("sku"),
                    title=node.get("title"),
                )
            )
        return variants

    def list_locations(self) -> list[RemoteLocation]:
        payload = self.rest_get("locations.json", label="list locations")
        locations = []
        for loc in payload.get("locations") or []:
            if loc.get("id") is None:
                continue
            locations.append(
                RemoteLocation(
                    location_id=str(loc["id"]),
                    name=loc.get("name"),
                    active=bool(loc.get("active", True)),
                    primary=bool(loc.get("primary", False)),
                )
            )
        return locations

    def set_inventory_level(self, inventory_item_id: str, location_id: str, available: int) -> dict:
        """Absolute set. Replaying the same call leaves the remote state unchanged."""
        payload = {
            "inventory_item_id": int(inventory_item_id),
            "location_id": int(location_id),
            "available": int(available),
        }
        body = self.rest_post(
            "inventory_levels/set.json",
            payload,
            label=f"set level item={inventory_item_id} location={location_id}",
        )
        return body.get("inventory_level") or {}


def build_client(credentials, retrier: Retrier | None = None) -> ShopifyClient:
    """Default client factory; tests swap in one backed by httpx.MockTransport."""
    config = current_app.config
    return ShopifyClient(
        credentials.domain,
        credentials.access_token,
        api_version=credentials.api_version,
        retrier=retrier or Retrier.from_config(config),
        timeout=float(config["HTTP_TIMEOUT_SECONDS"]),
    )
