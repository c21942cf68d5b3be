"""SQLAlchemy database models."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

PRICE = Numeric(12, 2)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns below."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class JobStatus:
    """Lifecycle states of a market job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    ACTIVE = (PENDING, RUNNING)
    ALL = (PENDING, RUNNING, COMPLETED, FAILED)


class MarketJob(Base):
    """A unit of fetch work for one (provider, subject, variant)."""

    __tablename__ = "market_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)  # SKU or provider product id
    variant: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # size
    priority: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), default=JobStatus.PENDING, nullable=False
    )
    dedupe_key: Mapped[str] = mapped_column(String(64), nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retryable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_market_jobs_status",
        ),
        # At most one active job per dedupe key; finished jobs never block re-enqueue
        Index(
            "uq_market_jobs_active_dedupe",
            "dedupe_key",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running')"),
            sqlite_where=text("status IN ('pending', 'running')"),
        ),
        Index("ix_market_jobs_ready", "provider", "status", "priority", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<MarketJob id={self.id} {self.provider}:{self.subject}"
            f"/{self.variant or '*'} p={self.priority} {self.status}>"
        )


class MarketBudget(Base):
    """Per-provider call budget for one UTC hour window."""

    __tablename__ = "market_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    hour_window: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    rate_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Tokens granted by the most recent reservation
    last_reserved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("provider", "hour_window", name="uq_market_budget_window"),
        CheckConstraint("used >= 0", name="ck_market_budget_used"),
    )

    @property
    def remaining(self) -> int:
        return max(self.rate_limit - self.used, 0)


class RawSnapshot(Base):
    """Verbatim provider response, stored before any parsing."""

    __tablename__ = "raw_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    variant: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    request_params: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    http_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    job_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("market_jobs.id", ondelete="SET NULL"), nullable=True
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_raw_snapshots_lookup", "provider", "subject", "requested_at"),
    )


class MarketPriceFields:
    """Columns shared by the master table and the latest-price view."""

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_source: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_product_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    provider_variant_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    size_key: Mapped[str] = mapped_column(String(32), nullable=False)
    size_numeric: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    size_system: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False)
    region_code: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)  # None = global

    # Tier flags
    is_expedited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_consigned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Prices in major units
    lowest_ask: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    highest_bid: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    last_sale_price: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    sell_faster_price: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    earn_more_price: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)
    global_indicator_price: Mapped[Optional[Decimal]] = mapped_column(PRICE, nullable=True)

    # Depth and volume
    ask_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bid_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sales_last_72h: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    sales_last_30d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    observed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    raw_snapshot_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    @property
    def spread(self) -> Optional[Decimal]:
        if self.lowest_ask is None or self.highest_bid is None:
            return None
        return self.lowest_ask - self.highest_bid

    @property
    def spread_percent(self) -> Optional[float]:
        spread = self.spread
        if spread is None or not self.lowest_ask:
            return None
        return round(float(spread / self.lowest_ask * 100), 2)


class MasterMarketRecord(MarketPriceFields, Base):
    """Append-only canonical market observation."""

    __tablename__ = "master_market_data"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    observed_minute: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_master_market_history", "provider", "subject", "size_key", "observed_at"),
    )


class LatestMarketPrice(MarketPriceFields, Base):
    """Newest master row per key; rebuilt wholesale by the refresh job."""

    __tablename__ = "market_latest_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_record_id: Mapped[int] = mapped_column(Integer, nullable=False)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_market_latest_lookup", "provider", "subject", "size_key"),
    )


# Natural key of an observation. region_code NULL means global and must collide with itself.
Index(
    "uq_master_market_observation",
    MasterMarketRecord.provider,
    MasterMarketRecord.subject,
    MasterMarketRecord.size_key,
    MasterMarketRecord.currency_code,
    func.coalesce(MasterMarketRecord.region_code, "global"),
    MasterMarketRecord.is_expedited,
    MasterMarketRecord.is_consigned,
    MasterMarketRecord.observed_minute,
    unique=True,
)

Index(
    "uq_market_latest_key",
    LatestMarketPrice.provider,
    LatestMarketPrice.subject,
    LatestMarketPrice.size_key,
    LatestMarketPrice.currency_code,
    func.coalesce(LatestMarketPrice.region_code, "global"),
    LatestMarketPrice.is_expedited,
    LatestMarketPrice.is_consigned,
    unique=True,
)


class MarketJobRun(Base):
    """Summary of one scheduler tick."""

    __tablename__ = "market_job_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    jobs_reclaimed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    jobs_selected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    jobs_succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    jobs_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    jobs_deferred: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    provider_breakdown: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ProviderBatchMetric(Base):
    """Per-provider batch outcome within a scheduler tick."""

    __tablename__ = "market_provider_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    batch_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deferred: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_market_provider_metrics_run", "run_id"),)
