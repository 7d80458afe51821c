# Overview: Flask CLI command groups for store setup, sync triggers, lease and run maintenance.

# backend/stocksync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Apply migrations first: python -m flask db upgrade
# - Use: python -m flask <group> <command> [options]
#
# Stores:
# - python -m flask stores create --key main --name "Main Store" [--truth-mode database] [--primary-location gid://shopify/Location/1]
#   Register a storefront.
# - python -m flask stores list
#   List stores with truth mode and credential presence.
# - python -m flask stores set-credentials main --domain main.myshopify.com --token shpat_xxx
#   Store the Shopify domain and admin token for a store (prompts for the token if omitted).
# - python -m flask stores set-truth-mode main database
#   Switch which side wins during reconciliation.
#
# Sync triggers:
# - python -m flask sync reconcile [--mode full|drift_only|missing_only] [--store main] [--dry-run] [--max-items 500]
#   Run reconciliation for one store or every active store.
# - python -m flask sync push main SKU-123 [--location gid://shopify/Location/1] [--validate-only]
#   Push one SKU's sellable totals.
# - python -m flask sync resync main [--item-id 4 --item-id 5] [--location gid://shopify/Location/1]
#   Pull remote levels for selected rows.
#
# Leases:
# - python -m flask locks list [--store main] [--all]
# - python -m flask locks reap
# - python -m flask locks release <batch_id>  |  python -m flask locks release --store main --sku SKU-1
#
# Runs:
# - python -m flask runs list [--store main] [--status failed] [--limit 20]
# - python -m flask runs reap-stale [--max-age-minutes 60]
#   Fail runs left open by a crashed process.

import click
from flask.cli import with_appcontext

from .services import store_service, lock_service, maintenance_service
from .services import push_service, reconcile_service, resync_service
from .services.config_resolver import CredentialsMissingError, resolve_store_config
from .models.stores import TRUTH_MODES
from .validation import RECONCILE_MODES


@click.group('stores')
def stores_group():
    """Store registration and credentials."""


@stores_group.command('create')
@click.option('--key', required=True, help='Stable store key (lowercased)')
@click.option('--name', required=True, help='Display name')
@click.option('--truth-mode', type=click.Choice(TRUTH_MODES), default='shopify', show_default=True)
@click.option('--primary-location', default=None, help='Fallback location gid for unlocated rows')
@with_appcontext
def create_store(key, name, truth_mode, primary_location):
    """Register a storefront."""
    try:
        store = store_service.create_store(
            key,
            name,
            inventory_truth_mode=truth_mode,
            primary_location_gid=primary_location,
        )
    except store_service.StoreError as exc:
        click.echo(f"FAIL {exc}")
        raise SystemExit(1)
    click.echo(f"PASS Created store {store.key} ({store.name}), truth mode: {store.inventory_truth_mode}")


@stores_group.command('list')
@with_appcontext
def list_stores():
    """List stores with truth mode and credential presence."""
    stores = store_service.list_stores()
    if not stores:
        click.echo("No stores configured.")
        return
    for store in stores:
        resolved = resolve_store_config(store.key)
        creds = "ok" if resolved.ok else resolved.code
        state = "active" if store.is_active else "inactive"
        click.echo(f"{store.key:<16} {store.name:<24} {state:<8} truth={store.inventory_truth_mode:<8} credentials={creds}")


@stores_group.command('set-credentials')
@click.argument('store_key')
@click.option('--domain', required=True, help='shop.myshopify.com')
@click.option('--token', prompt=True, hide_input=True, help='Admin API access token')
@with_appcontext
def set_credentials(store_key, domain, token):
    """Store the Shopify domain and admin token for a store."""
    try:
        store_service.set_credentials(store_key, domain=domain, access_token=token)
    except store_service.StoreError as exc:
        click.echo(f"FAIL {exc}")
        raise SystemExit(1)

    resolved = resolve_store_config(store_key)
    if resolved.ok:
        click.echo(f"PASS Credentials saved for {store_key} ({resolved.credentials.domain})")
    else:
        click.echo(f"WARN Credentials saved but not usable: {resolved.message}")


@stores_group.command('set-truth-mode')
@click.argument('store_key')
@click.argument('truth_mode', type=click.Choice(TRUTH_MODES))
@with_appcontext
def set_truth_mode(store_key, truth_mode):
    """Switch which side wins during reconciliation."""
    try:
        store = store_service.update_store(store_key, inventory_truth_mode=truth_mode)
    except store_service.StoreError as exc:
        click.echo(f"FAIL {exc}")
        raise SystemExit(1)
    click.echo(f"PASS {store.key} truth mode: {store.inventory_truth_mode}")


@click.group('sync')
def sync_group():
    """Reconciliation, push and resync triggers."""


@sync_group.command('reconcile')
@click.option('--mode', type=click.Choice(RECONCILE_MODES), default='full', show_default=True)
@click.option('--store', 'store_key', default=None, help='Only this store (default: every active store)')
@click.option('--dry-run', is_flag=True, help='Compare and count without writing')
@click.option('--max-items', type=click.IntRange(min=1), default=None)
@with_appcontext
def reconcile(mode, store_key, dry_run, max_items):
    """Run reconciliation."""
    try:
        report = reconcile_service.reconcile(
            mode,
            store_key,
            dry_run=dry_run,
            max_items=max_items,
            triggered_by="cli",
        )
    except reconcile_service.ReconcileError as exc:
        click.echo(f"FAIL {exc}")
        raise SystemExit(1)

    if not report.results:
        click.echo("No active stores to reconcile.")
        return
    for key, outcome in report.results.items():
        stats = outcome.stats
        if outcome.success:
            click.echo(
                f"PASS {key} run {outcome.run_id} via {outcome.fetch_method}: "
                f"checked={stats.items_checked} drift_detected={stats.drift_detected} "
                f"drift_fixed={stats.drift_fixed} errors={stats.errors} skipped_locked={stats.skipped_locked}"
            )
        else:
            click.echo(f"FAIL {key} run {outcome.run_id} [{outcome.error_code}]: {outcome.error}")
    click.echo(f"Done in {report.duration_ms} ms")
    if not report.success:
        raise SystemExit(1)


@sync_group.command('push')
@click.argument('store_key')
@click.argument('sku')
@click.option('--location', 'location_gid', default=None, help='Only this location gid')
@click.option('--validate-only', is_flag=True, help='Resolve ids and locations, no remote writes')
@with_appcontext
def push(store_key, sku, location_gid, validate_only):
    """Push one SKU's sellable totals."""
    result = push_service.push_sku(store_key, sku, location_gid=location_gid, validate_only=validate_only)
    if result.code == "NOTHING_TO_SYNC":
        click.echo(f"SKIP {store_key}/{sku}: {result.message}")
        return
    if not result.success:
        click.echo(f"FAIL {store_key}/{sku} [{result.code}]: {result.message}")
        raise SystemExit(1)

    for loc in result.results:
        click.echo(f"  {loc.location or '-'} -> {loc.computed_available} ({loc.outcome})")
    label = "PASS" if result.sync_status != "error" else "FAIL"
    click.echo(f"{label} {store_key}/{sku}: {result.sync_status} in {result.total_ms} ms")
    if result.sync_status == "error":
        raise SystemExit(1)


@sync_group.command('resync')
@click.argument('store_key')
@click.option('--item-id', 'item_ids', type=int, multiple=True, help='Repeatable; default is every linked row')
@click.option('--location', 'location_gid', default=None)
@with_appcontext
def resync(store_key, item_ids, location_gid):
    """Pull remote levels for selected rows."""
    try:
        result = resync_service.resync_items(store_key, list(item_ids) or None, location_gid)
    except CredentialsMissingError as exc:
        click.echo(f"FAIL [{exc.failure.code}] {exc}")
        raise SystemExit(1)

    summary = result.to_dict()["results"]
    click.echo("PASS " + ", ".join(f"{k}={v}" for k, v in summary.items()))
    for entry in result.details:
        if entry["status"] in ("updated", "not_found", "error"):
            click.echo(f"  item {entry['item_id']} {entry['sku']}: {entry['status']} {entry.get('error', '')}".rstrip())


@click.group('locks')
def locks_group():
    """Advisory SKU lease inspection and cleanup."""


@locks_group.command('list')
@click.option('--store', 'store_key', default=None)
@click.option('--all', 'include_expired', is_flag=True, help='Include expired leases')
@with_appcontext
def list_locks(store_key, include_expired):
    """List leases."""
    locks = lock_service.list_locks(store_key, include_expired=include_expired)
    if not locks:
        click.echo("No leases.")
        return
    for lock in locks:
        data = lock.to_dict()
        click.echo(
            f"{data['store_key']:<16} {data['sku']:<24} {data['lock_type']:<18} "
            f"by={data['locked_by']} expires={data['expires_at']} batch={data['batch_id']}"
        )


@locks_group.command('reap')
@with_appcontext
def reap_locks():
    """Delete expired leases."""
    cleaned = lock_service.reap_expired()
    click.echo(f"PASS Deleted {cleaned} expired leases")


@locks_group.command('release')
@click.argument('batch_id', required=False)
@click.option('--store', 'store_key', default=None)
@click.option('--sku', 'skus', multiple=True)
@with_appcontext
def release_locks(batch_id, store_key, skus):
    """Release by batch id, or by store and SKU."""
    if batch_id:
        released = lock_service.release(batch_id)
    elif store_key and skus:
        released = lock_service.release_skus(store_key, skus)
    else:
        click.echo("FAIL Pass a batch id, or --store with at least one --sku")
        raise SystemExit(1)
    click.echo(f"PASS Released {released} leases")


@click.group('runs')
def runs_group():
    """Reconciliation run history and maintenance."""


@runs_group.command('list')
@click.option('--store', 'store_key', default=None)
@click.option('--status', default=None)
@click.option('--limit', type=click.IntRange(min=1, max=500), default=20, show_default=True)
@with_appcontext
def list_runs(store_key, status, limit):
    """List recent runs."""
    runs = reconcile_service.list_runs(store_key=store_key, status=status, limit=limit)
    if not runs:
        click.echo("No runs.")
        return
    for run in runs:
        data = run.to_dict()
        click.echo(
            f"#{data['id']:<5} {data['store_key']:<16} {data['mode']:<13} {data['status']:<18} "
            f"started={data['started_at']} checked={data['items_checked']} errors={data['errors']}"
            + (f" [{data['error_code']}]" if data['error_code'] else "")
        )


@runs_group.command('reap-stale')
@click.option('--max-age-minutes', type=click.IntRange(min=1), default=None)
@with_appcontext
def reap_stale(max_age_minutes):
    """Fail runs left open by a crashed process."""
    reaped = maintenance_service.reap_stale_runs(max_age_minutes=max_age_minutes)
    click.echo(f"PASS Finalized {len(reaped)} stale runs")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(stores_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(locks_group)
    app.cli.add_command(runs_group)
