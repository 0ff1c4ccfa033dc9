"""Package, price history and sync log models."""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

REQUOTE_STATUSES = ("pending", "checking", "needs_manual", "completed")


class Package(Base):
    __tablename__ = "packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tc_package_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    large_title: Mapped[str | None] = mapped_column(String(500))
    image_url: Mapped[str | None] = mapped_column(Text)
    departure_date: Mapped[date | None] = mapped_column(Date)
    date_range_start: Mapped[date | None] = mapped_column(Date)
    date_range_end: Mapped[date | None] = mapped_column(Date)

    # Pricing
    current_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    original_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    total_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    price_variance_pct: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    needs_manual_quote: Mapped[bool] = mapped_column(Boolean, default=False)
    last_price_change_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Requote (written by the requote bot and the run completion handler)
    requote_status: Mapped[str | None] = mapped_column(String(20))
    requote_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    requote_variance_pct: Mapped[Decimal | None] = mapped_column(Numeric(10, 4))
    last_requote_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Flags
    monitor_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    tc_active: Mapped[bool] = mapped_column(Boolean, default=True)
    send_to_marketing: Mapped[bool] = mapped_column(Boolean, default=False)

    # Counters
    adults_count: Mapped[int | None] = mapped_column(Integer)
    children_count: Mapped[int | None] = mapped_column(Integer)
    nights_count: Mapped[int | None] = mapped_column(Integer)
    destinations_count: Mapped[int | None] = mapped_column(Integer)
    transports_count: Mapped[int | None] = mapped_column(Integer)
    hotels_count: Mapped[int | None] = mapped_column(Integer)
    transfers_count: Mapped[int | None] = mapped_column(Integer)
    cars_count: Mapped[int | None] = mapped_column(Integer)
    tickets_count: Mapped[int | None] = mapped_column(Integer)
    tours_count: Mapped[int | None] = mapped_column(Integer)

    themes: Mapped[list] = mapped_column(JSONB, default=list)
    tc_idea_url: Mapped[str | None] = mapped_column(Text)

    # Cost breakdown
    air_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    land_cost: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    agency_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    flight_departure_date: Mapped[date | None] = mapped_column(Date)
    airline_code: Mapped[str | None] = mapped_column(String(10))
    airline_name: Mapped[str | None] = mapped_column(String(100))
    flight_numbers: Mapped[str | None] = mapped_column(String(200))

    # Creative workflow
    creative_update_needed: Mapped[bool] = mapped_column(Boolean, default=False)
    creative_update_reason: Mapped[str | None] = mapped_column(String(50))
    creative_update_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PackageDestination(Base):
    __tablename__ = "package_destinations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    package_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("packages.id", ondelete="CASCADE"), nullable=False
    )
    destination_code: Mapped[str | None] = mapped_column(String(20))
    destination_name: Mapped[str | None] = mapped_column(String(200))
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


class PriceHistoryEntry(Base):
    __tablename__ = "package_price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    package_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("packages.id", ondelete="CASCADE"), nullable=False
    )
    price_per_pax: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    previous_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    variance_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    variance_pct: Mapped[Decimal] = mapped_column(Numeric(10, 4), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PackageSyncLog(Base):
    __tablename__ = "package_sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    package_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("packages.id", ondelete="SET NULL")
    )
    sync_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    details: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
