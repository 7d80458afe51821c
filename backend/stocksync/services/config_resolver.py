# Overview: The one place that turns a store key into marketplace credentials.

"""
Credential/config resolution.

Push, reconciliation and resync all start here; none of them read
StoreConfig rows or app settings for credentials on their own. The result
is a tagged value: ConfigResolved (typed credentials) or ConfigFailure
(code + message). Callers that cannot proceed without credentials use
require_credentials(), which raises CredentialsMissingError carrying the
failure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from flask import current_app

from stocksync.models.stores import TRUTH_MODES, TRUTH_MODE_SHOPIFY
from . import store_service


FAILURE_STORE_NOT_FOUND = "STORE_NOT_FOUND"
FAILURE_STORE_INACTIVE = "STORE_INACTIVE"
FAILURE_CREDENTIALS_MISSING = "CREDENTIALS_MISSING"
FAILURE_INVALID_DOMAIN = "INVALID_DOMAIN"

_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9.-]*\.[a-z]{2,}$")


class CredentialsMissingError(Exception):
    """Raised when a store has no usable marketplace credentials."""

    def __init__(self, failure: "ConfigFailure"):
        super().__init__(failure.message)
        self.failure = failure


@dataclass(frozen=True)
class StoreCredentials:
    store_key: str
    domain: str
    access_token: str = field(repr=False)
    api_version: str
    truth_mode: str = TRUTH_MODE_SHOPIFY
    primary_location_gid: str | None = None


@dataclass(frozen=True)
class ConfigResolved:
    credentials: StoreCredentials
    diagnostics: dict

    ok = True


@dataclass(frozen=True)
class ConfigFailure:
    code: str
    message: str
    diagnostics: dict

    ok = False

    def to_dict(self) -> dict:
        return {"ok": False, "code": self.code, "message": self.message, "diagnostics": self.diagnostics}


def normalize_domain(raw: str | None) -> str | None:
    """'https://Shop.myshopify.com/' -> 'shop.myshopify.com'; bare handles get '.myshopify.com'."""
    if not raw:
        return None
    value = raw.strip().lower()
    value = re.sub(r"^https?://", "", value).split("/", 1)[0]
    if not value:
        return None
    if "." not in value:
        value = f"{value}.myshopify.com"
    return value


def resolve_store_config(store_key: str) -> ConfigResolved | ConfigFailure:
    diagnostics: dict = {"store_key": store_key}

    store = store_service.get_store(store_key)
    if store is None:
        return ConfigFailure(FAILURE_STORE_NOT_FOUND, f"Unknown store: {store_key}", diagnostics)
    if not store.is_active:
        return ConfigFailure(FAILURE_STORE_INACTIVE, f"Store is inactive: {store.key}", diagnostics)

    values = store_service.get_store_config_values(store.id)
    raw_domain = values.get(store_service.DOMAIN_CONFIG_KEY)
    token = (values.get(store_service.TOKEN_CONFIG_KEY) or "").strip()

    diagnostics.update(
        {
            "has_domain": bool(raw_domain),
            "has_token": bool(token),
            "token_length": len(token),
        }
    )

    if not raw_domain or not token:
        missing = [
            name for name, present in (("domain", bool(raw_domain)), ("access token", bool(token))) if not present
        ]
        return ConfigFailure(
            FAILURE_CREDENTIALS_MISSING,
            f"Shopify {' and '.join(missing)} not configured for store: {store.key}",
            diagnostics,
        )

    domain = normalize_domain(raw_domain)
    if not domain or not _DOMAIN_RE.match(domain):
        return ConfigFailure(FAILURE_INVALID_DOMAIN, f"Invalid Shopify domain for store {store.key}: {raw_domain!r}", diagnostics)

    diagnostics["domain"] = domain
    truth_mode = store.inventory_truth_mode if store.inventory_truth_mode in TRUTH_MODES else TRUTH_MODE_SHOPIFY

    return ConfigResolved(
        credentials=StoreCredentials(
            store_key=store.key,
            domain=domain,
            access_token=token,
            api_version=current_app.config["SHOPIFY_API_VERSION"],
            truth_mode=truth_mode,
            primary_location_gid=store.primary_location_gid,
        ),
        diagnostics=diagnostics,
    )


def require_credentials(store_key: str) -> StoreCredentials:
    result = resolve_store_config(store_key)
    if not result.ok:
        raise CredentialsMissingError(result)
    return result.credentials
