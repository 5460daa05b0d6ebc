"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# PostgreSQL array column with a portable fallback for SQLite test databases
EmbeddingType = JSON().with_variant(ARRAY(Float), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Product(Base):
    """Canonical ammunition catalog entry (read-only for search)."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    upc: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Caliber as listed and its normalized form used for filtering
    caliber: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    caliber_norm: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    grain_weight: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    case_material: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    purpose: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    round_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Ballistic attributes
    bullet_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    pressure_rating: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # STANDARD, +P, +P+, NATO
    muzzle_velocity_fps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_subsonic: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    # Performance characteristics
    short_barrel_optimized: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    suppressor_safe: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    low_flash: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    low_recoil: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    controlled_expansion: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    match_grade: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    factory_new: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    # Data quality
    data_source: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    data_confidence: Mapped[Optional[Decimal]] = mapped_column(Numeric(4, 3), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class ProductEmbedding(Base):
    """Semantic embedding for a canonical product."""

    __tablename__ = "product_embeddings"

    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True
    )
    embedding: Mapped[list] = mapped_column(EmbeddingType, nullable=False)
    model_name: Mapped[str] = mapped_column(String(128), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Retailer(Base):
    """Retailer whose prices may be shown to consumers."""

    __tablename__ = "retailers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    website_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logo_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tier: Mapped[str] = mapped_column(String(16), default="STANDARD", nullable=False)  # STANDARD, PREMIUM
    visibility_status: Mapped[str] = mapped_column(
        String(16), default="ELIGIBLE", nullable=False
    )  # ELIGIBLE, INELIGIBLE, SUSPENDED
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class MerchantRetailer(Base):
    """Link between a merchant account and the retailer it lists."""

    __tablename__ = "merchant_retailers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    retailer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailers.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    listing_status: Mapped[str] = mapped_column(String(16), default="LISTED", nullable=False)  # LISTED, UNLISTED
    status: Mapped[str] = mapped_column(String(16), default="ACTIVE", nullable=False)  # ACTIVE, SUSPENDED


class ScrapeAdapterStatus(Base):
    """Runtime enablement of a scrape adapter."""

    __tablename__ = "scrape_adapter_status"

    adapter_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Source(Base):
    """Ingestion source for a retailer, with compliance review state."""

    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    retailer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailers.id", ondelete="CASCADE"), nullable=False
    )
    adapter_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    robots_compliant: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tos_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    tos_approved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)


class AffiliateFeedRun(Base):
    """One affiliate feed ingestion run."""

    __tablename__ = "affiliate_feed_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    feed_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    ignored_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class SourceProduct(Base):
    """Raw listing as reported by a source."""

    __tablename__ = "source_products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("sources.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ProductLink(Base):
    """Resolution link from one source listing to one canonical product."""

    __tablename__ = "product_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("source_products.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # MATCHED, CREATED, UNMATCHED, REJECTED
    confidence: Mapped[Decimal] = mapped_column(Numeric(4, 3), default=Decimal("0"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Price(Base):
    """One retailer-reported price observation."""

    __tablename__ = "prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("source_products.id", ondelete="CASCADE"), nullable=False
    )
    retailer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("retailers.id", ondelete="CASCADE"), nullable=False
    )
    source_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("sources.id", ondelete="SET NULL"), nullable=True
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    in_stock: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    shipping_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    # Ingestion provenance
    ingestion_run_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # AFFILIATE_FEED, SCRAPE, MANUAL
    ingestion_run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    affiliate_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    affiliate_feed_run_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("affiliate_feed_runs.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        Index("ix_prices_source_product_observed", "source_product_id", "observed_at"),
    )


class PriceCorrection(Base):
    """Scoped, time-boxed manual override on price observations."""

    __tablename__ = "price_corrections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scope_type: Mapped[str] = mapped_column(String(16), nullable=False)  # PRODUCT, RETAILER, SOURCE, AFFILIATE, FEED_RUN
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)  # IGNORE, MULTIPLIER
    value: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 4), nullable=True)
    start_ts: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_ts: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_price_corrections_scope_window", "scope_type", "scope_id", "start_ts", "end_ts"),
    )
