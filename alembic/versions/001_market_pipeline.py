"""Market data pipeline schema

Revision ID: 001_market_pipeline
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_market_pipeline'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_JOBS = "status IN ('pending', 'running')"


def _price_columns() -> list:
    """Columns shared by master_market_data and market_latest_prices."""
    price = sa.Numeric(precision=12, scale=2)
    return [
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('provider_source', sa.String(length=64), nullable=False),
        sa.Column('subject', sa.String(length=128), nullable=False),
        sa.Column('provider_product_id', sa.String(length=128), nullable=True),
        sa.Column('provider_variant_id', sa.String(length=128), nullable=True),
        sa.Column('size_key', sa.String(length=32), nullable=False),
        sa.Column('size_numeric', sa.Numeric(precision=6, scale=2), nullable=True),
        sa.Column('size_system', sa.String(length=32), nullable=True),
        sa.Column('currency_code', sa.String(length=3), nullable=False),
        sa.Column('region_code', sa.String(length=8), nullable=True),
        sa.Column('is_expedited', sa.Boolean(), nullable=False),
        sa.Column('is_consigned', sa.Boolean(), nullable=False),
        sa.Column('lowest_ask', price, nullable=True),
        sa.Column('highest_bid', price, nullable=True),
        sa.Column('last_sale_price', price, nullable=True),
        sa.Column('sell_faster_price', price, nullable=True),
        sa.Column('earn_more_price', price, nullable=True),
        sa.Column('global_indicator_price', price, nullable=True),
        sa.Column('ask_count', sa.Integer(), nullable=True),
        sa.Column('bid_count', sa.Integer(), nullable=True),
        sa.Column('sales_last_72h', sa.Integer(), nullable=True),
        sa.Column('sales_last_30d', sa.Integer(), nullable=True),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.Column('raw_snapshot_id', sa.Integer(), nullable=True),
    ]


def _series_key() -> list:
    return [
        'provider',
        'subject',
        'size_key',
        'currency_code',
        sa.text("coalesce(region_code, 'global')"),
        'is_expedited',
        'is_consigned',
    ]


def upgrade() -> None:
    # Job queue
    op.create_table(
        'market_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('subject', sa.String(length=128), nullable=False),
        sa.Column('variant', sa.String(length=32), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('dedupe_key', sa.String(length=64), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('retryable', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name='ck_market_jobs_status',
        ),
    )
    op.create_index(
        'uq_market_jobs_active_dedupe',
        'market_jobs',
        ['dedupe_key'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_JOBS),
        sqlite_where=sa.text(ACTIVE_JOBS),
    )
    op.create_index(
        'ix_market_jobs_ready',
        'market_jobs',
        ['provider', 'status', 'priority', 'created_at'],
    )

    # Hourly budgets
    op.create_table(
        'market_budgets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('hour_window', sa.DateTime(), nullable=False),
        sa.Column('rate_limit', sa.Integer(), nullable=False),
        sa.Column('used', sa.Integer(), nullable=False),
        sa.Column('last_reserved', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'hour_window', name='uq_market_budget_window'),
        sa.CheckConstraint('used >= 0', name='ck_market_budget_used'),
    )

    # Raw provider responses
    op.create_table(
        'raw_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('endpoint', sa.String(length=64), nullable=False),
        sa.Column('subject', sa.String(length=128), nullable=False),
        sa.Column('variant', sa.String(length=32), nullable=True),
        sa.Column('request_params', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('raw_payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('http_status', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('request_duration_ms', sa.Integer(), nullable=True),
        sa.Column('job_id', sa.Integer(), nullable=True),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['job_id'], ['market_jobs.id'], ondelete='SET NULL'),
    )
    op.create_index(
        'ix_raw_snapshots_lookup',
        'raw_snapshots',
        ['provider', 'subject', 'requested_at'],
    )

    # Canonical time series
    op.create_table(
        'master_market_data',
        sa.Column('id', sa.Integer(), nullable=False),
        *_price_columns(),
        sa.Column('observed_minute', sa.DateTime(), nullable=False),
        sa.Column('ingested_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'uq_master_market_observation',
        'master_market_data',
        [*_series_key(), 'observed_minute'],
        unique=True,
    )
    op.create_index(
        'ix_master_market_history',
        'master_market_data',
        ['provider', 'subject', 'size_key', 'observed_at'],
    )

    # Latest-price view
    op.create_table(
        'market_latest_prices',
        sa.Column('id', sa.Integer(), nullable=False),
        *_price_columns(),
        sa.Column('source_record_id', sa.Integer(), nullable=False),
        sa.Column('refreshed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('uq_market_latest_key', 'market_latest_prices', _series_key(), unique=True)
    op.create_index(
        'ix_market_latest_lookup',
        'market_latest_prices',
        ['provider', 'subject', 'size_key'],
    )

    # Run observability
    op.create_table(
        'market_job_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('jobs_reclaimed', sa.Integer(), nullable=False),
        sa.Column('jobs_selected', sa.Integer(), nullable=False),
        sa.Column('jobs_succeeded', sa.Integer(), nullable=False),
        sa.Column('jobs_failed', sa.Integer(), nullable=False),
        sa.Column('jobs_deferred', sa.Integer(), nullable=False),
        sa.Column('provider_breakdown', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id'),
    )

    op.create_table(
        'market_provider_metrics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=True),
        sa.Column('batch_size', sa.Integer(), nullable=False),
        sa.Column('succeeded', sa.Integer(), nullable=False),
        sa.Column('failed', sa.Integer(), nullable=False),
        sa.Column('deferred', sa.Integer(), nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_market_provider_metrics_run', 'market_provider_metrics', ['run_id'])


def downgrade() -> None:
    op.drop_index('ix_market_provider_metrics_run', table_name='market_provider_metrics')
    op.drop_table('market_provider_metrics')
    op.drop_table('market_job_runs')
    op.drop_index('ix_market_latest_lookup', table_name='market_latest_prices')
    op.drop_index('uq_market_latest_key', table_name='market_latest_prices')
    op.drop_table('market_latest_prices')
    op.drop_index('ix_master_market_history', table_name='master_market_data')
    op.drop_index('uq_master_market_observation', table_name='master_market_data')
    op.drop_table('master_market_data')
    op.drop_index('ix_raw_snapshots_lookup', table_name='raw_snapshots')
    op.drop_table('raw_snapshots')
    op.drop_table('market_budgets')
    op.drop_index('ix_market_jobs_ready', table_name='market_jobs')
    op.drop_index('uq_market_jobs_active_dedupe', table_name='market_jobs')
    op.drop_table('market_jobs')
