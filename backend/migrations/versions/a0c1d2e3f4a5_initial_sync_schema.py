"""initial sync schema

Revision ID: a0c1d2e3f4a5
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the inventory sync schema:
- stores / store_configs: storefronts and their marketplace credentials
- inventory_items: local units/lines, with push status and drift fields
- shopify_inventory_levels: mirror of last-observed remote levels
- reconciliation_runs / reconciliation_location_stats: run history
- inventory_write_locks: advisory (store, sku) leases
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a0c1d2e3f4a5'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # stores
    # ============================================================================
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('inventory_truth_mode', sa.String(length=16), nullable=False, server_default='shopify'),
        sa.Column('primary_location_gid', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key', name='uq_stores_key'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stores', schema=None) as batch_op:
        batch_op.create_index('ix_stores_key', ['key'], unique=False)
        batch_op.create_index('ix_stores_is_active', ['is_active'], unique=False)

    op.create_table(
        'store_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('is_secret', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'key', name='uq_store_configs_store_key'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('store_configs', schema=None) as batch_op:
        batch_op.create_index('ix_store_configs_store_id', ['store_id'], unique=False)

    # ============================================================================
    # inventory_items: quantity is owned by intake; sync writes status/drift
    # ============================================================================
    op.create_table(
        'inventory_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('shopify_location_gid', sa.String(length=128), nullable=True),
        sa.Column('shopify_product_id', sa.String(length=64), nullable=True),
        sa.Column('shopify_variant_id', sa.String(length=64), nullable=True),
        sa.Column('shopify_inventory_item_id', sa.String(length=64), nullable=True),
        sa.Column('shopify_sync_status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('last_shopify_sync_error', sa.Text(), nullable=True),
        sa.Column('last_shopify_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shopify_drift', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('shopify_drift_detected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shopify_drift_details', sa.JSON(), nullable=True),
        sa.Column('last_shopify_seen_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('shopify_removed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sold_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sold_channel', sa.String(length=64), nullable=True),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('quantity >= 0', name='ck_inventory_items_quantity_nonnegative'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('inventory_items', schema=None) as batch_op:
        batch_op.create_index('ix_inventory_items_store_key', ['store_key'], unique=False)
        batch_op.create_index('ix_inventory_items_store_sku', ['store_key', 'sku'], unique=False)
        batch_op.create_index('ix_inventory_items_remote_level',
                              ['shopify_inventory_item_id', 'shopify_location_gid'], unique=False)
        batch_op.create_index('ix_inventory_items_shopify_sync_status', ['shopify_sync_status'], unique=False)
        batch_op.create_index('ix_inventory_items_shopify_drift', ['shopify_drift'], unique=False)

    # ============================================================================
    # shopify_inventory_levels: remote mirror, audit only
    # ============================================================================
    op.create_table(
        'shopify_inventory_levels',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=False),
        sa.Column('inventory_item_id', sa.String(length=64), nullable=False),
        sa.Column('location_gid', sa.String(length=128), nullable=False),
        sa.Column('location_name', sa.String(length=255), nullable=True),
        sa.Column('available', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('shopify_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_reconciled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_key', 'inventory_item_id', 'location_gid',
                            name='uq_shopify_levels_item_location'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('shopify_inventory_levels', schema=None) as batch_op:
        batch_op.create_index('ix_shopify_inventory_levels_store_key', ['store_key'], unique=False)

    # ============================================================================
    # reconciliation_runs / reconciliation_location_stats
    # ============================================================================
    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=False),
        sa.Column('mode', sa.String(length=16), nullable=False),
        sa.Column('run_type', sa.String(length=48), nullable=False),
        sa.Column('dry_run', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('truth_mode', sa.String(length=16), nullable=True),
        sa.Column('fetch_method', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=24), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('items_checked', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('drift_detected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('drift_fixed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_locked', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_code', sa.String(length=32), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('reconciliation_runs', schema=None) as batch_op:
        batch_op.create_index('ix_reconciliation_runs_store_key', ['store_key'], unique=False)
        batch_op.create_index('ix_reconciliation_runs_status', ['status'], unique=False)
        batch_op.create_index('ix_reconciliation_runs_store_started', ['store_key', 'started_at'], unique=False)

    op.create_table(
        'reconciliation_location_stats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.Integer(), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=False),
        sa.Column('location_gid', sa.String(length=128), nullable=False),
        sa.Column('location_name', sa.String(length=255), nullable=True),
        sa.Column('items_checked', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('drift_detected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('drift_fixed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('errors', sa.Integer(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['run_id'], ['reconciliation_runs.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id', 'location_gid', name='uq_reconciliation_location_stats_run_location'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('reconciliation_location_stats', schema=None) as batch_op:
        batch_op.create_index('ix_reconciliation_location_stats_run_id', ['run_id'], unique=False)

    # ============================================================================
    # inventory_write_locks: advisory leases, expired rows are reaped
    # ============================================================================
    op.create_table(
        'inventory_write_locks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_key', sa.String(length=64), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('lock_type', sa.String(length=32), nullable=False),
        sa.Column('locked_by', sa.String(length=128), nullable=False),
        sa.Column('batch_id', sa.String(length=36), nullable=False),
        sa.Column('context_json', sa.JSON(), nullable=True),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_key', 'sku', name='uq_inventory_write_locks_store_sku'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('inventory_write_locks', schema=None) as batch_op:
        batch_op.create_index('ix_inventory_write_locks_batch_id', ['batch_id'], unique=False)
        batch_op.create_index('ix_inventory_write_locks_expires_at', ['expires_at'], unique=False)


def downgrade():
    op.drop_table('inventory_write_locks')
    op.drop_table('reconciliation_location_stats')
    op.drop_table('reconciliation_runs')
    op.drop_table('shopify_inventory_levels')
    op.drop_table('inventory_items')
    op.drop_table('store_configs')
    op.drop_table('stores')
