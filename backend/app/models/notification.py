from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class NotificationSetting(Base):
    __tablename__ = "notification_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    slack_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    slack_webhook_url: Mapped[str | None] = mapped_column(Text)
    slack_channel_design: Mapped[str] = mapped_column(String(100), default="#design")
    slack_channel_marketing: Mapped[str] = mapped_column(String(100), default="#marketing")

    notify_price_change: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_ad_underperforming: Mapped[bool] = mapped_column(Boolean, default=True)
    notify_needs_manual_quote: Mapped[bool] = mapped_column(Boolean, default=True)

    price_change_threshold_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=5.0)
    ctr_threshold_pct: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), default=0.5)
    cpl_threshold: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), default=10.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient: Mapped[str] = mapped_column(Text, nullable=False)
    package_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("packages.id", ondelete="SET NULL")
    )
    meta_ad_id: Mapped[str | None] = mapped_column(String(50))
    message_title: Mapped[str] = mapped_column(Text, nullable=False)
    message_data: Mapped[dict | None] = mapped_column(JSONB)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    error_message: Mapped[str | None] = mapped_column(Text)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
