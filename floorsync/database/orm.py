"""SQLAlchemy ORM models for floorsync.

This module defines all database tables using SQLAlchemy 2.0 ORM style.
The same models run on SQLite (aiosqlite) and PostgreSQL (asyncpg).

Usage:
    from floorsync.database.orm import Collection, PriceRecord

    async with db.session() as session:
        collection = await session.get(Collection, "azuki")
"""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Naming convention for constraints and indexes (deterministic names)
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ORM models with naming convention."""
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


# =============================================================================
# COLLECTIONS
# =============================================================================


class Collection(Base):
    """Tracked collection. Retired by clearing is_selected, never deleted."""
    __tablename__ = "collections"

    slug: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer)  # upstream display ranking
    image: Mapped[str | None] = mapped_column(Text)
    total_supply: Mapped[int | None] = mapped_column(BigInteger)
    owners: Mapped[int | None] = mapped_column(Integer)
    market_cap: Mapped[float | None] = mapped_column(Float)  # USD
    market_cap_rank: Mapped[int | None] = mapped_column(Integer)  # rank within selection
    is_selected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    selection_period: Mapped[str | None] = mapped_column(String(8))  # YYYY-Qn
    selected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_collections_selected", "is_selected", "market_cap_rank"),
        Index("idx_collections_market_cap", "market_cap"),
    )


# =============================================================================
# PRICE HISTORY
# =============================================================================


class PriceRecord(Base):
    """One daily floor-price observation for a collection."""
    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection_slug: Mapped[str] = mapped_column(
        String(255),
        ForeignKey("collections.slug", ondelete="CASCADE"),
        nullable=False,
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)  # unix seconds
    floor_eth: Mapped[float | None] = mapped_column(Float)
    floor_usd: Mapped[float | None] = mapped_column(Float)
    volume_eth: Mapped[float | None] = mapped_column(Float)
    volume_usd: Mapped[float | None] = mapped_column(Float)
    sales_count: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("collection_slug", "date", name="uq_price_history_slug_date"),
        Index("idx_price_history_date", "date", postgresql_ops={"date": "DESC"}),
        Index("idx_price_history_timestamp", "timestamp"),
    )


# =============================================================================
# SELECTION & SYNC BOOKKEEPING
# =============================================================================


class SelectionPeriod(Base):
    """Quarterly selection. Exactly one row is active after a committed selection."""
    __tablename__ = "selection_periods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period: Mapped[str] = mapped_column(String(8), unique=True, nullable=False)
    selection_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_selected: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    criteria: Mapped[str] = mapped_column(String(50), default="market_cap_usd", nullable=False)
    min_market_cap: Mapped[float | None] = mapped_column(Float)
    max_market_cap: Mapped[float | None] = mapped_column(Float)
    avg_market_cap: Mapped[float | None] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)  # active, expired
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_selection_periods_status", "status"),
    )


class SyncLog(Base):
    """Audit row for one run: opened as started, closed exactly once."""
    __tablename__ = "sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # daily, weekly_cleanup, quarterly_selection, collection, backfill
    sync_type: Mapped[str] = mapped_column("type", String(32), nullable=False)
    target_slug: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # started, completed, failed
    processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    inserted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    duration_seconds: Mapped[float | None] = mapped_column(Float)

    __table_args__ = (
        Index("idx_sync_log_started", "started_at"),
        Index("idx_sync_log_status_type", "status", "type"),
    )
