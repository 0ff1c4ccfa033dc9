"""Package record store — every query the sync and requote services run."""

import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.notification import NotificationLog, NotificationSetting
from app.models.package import (
    Package,
    PackageDestination,
    PackageSyncLog,
    PriceHistoryEntry,
)

logger = logging.getLogger(__name__)


def default_notification_settings() -> NotificationSetting:
    """Transient settings built from the environment, used until the row exists."""
    return NotificationSetting(
        id=1,
        slack_enabled=settings.slack_enabled,
        slack_webhook_url=settings.slack_webhook_url or None,
        slack_channel_design=settings.slack_channel_design,
        slack_channel_marketing=settings.slack_channel_marketing,
        notify_price_change=True,
        notify_ad_underperforming=True,
        notify_needs_manual_quote=True,
        price_change_threshold_pct=settings.price_change_threshold_pct,
        ctr_threshold_pct=settings.ctr_threshold_pct,
        cpl_threshold=settings.cpl_threshold,
    )


class PackageStore:
    """Thin repository over an AsyncSession."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def commit(self):
        await self.db.commit()

    async def rollback(self):
        await self.db.rollback()

    # --- Packages ---

    async def get_package(self, package_id: int) -> Package | None:
        result = await self.db.execute(select(Package).where(Package.id == package_id))
        return result.scalar_one_or_none()

    async def get_packages(self, package_ids: list[int]) -> list[Package]:
        if not package_ids:
            return []
        result = await self.db.execute(select(Package).where(Package.id.in_(package_ids)))
        return list(result.scalars().all())

    async def list_refresh_candidates(self, limit: int, today: date | None = None) -> list[Package]:
        """Monitored, non-expired packages, stalest first (never-synced before all)."""
        today = today or date.today()
        result = await self.db.execute(
            select(Package)
            .where(
                Package.monitor_enabled == True,
                or_(Package.date_range_end.is_(None), Package.date_range_end >= today),
            )
            .order_by(Package.last_sync_at.asc().nulls_first(), Package.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_pending_requotes(self) -> list[Package]:
        result = await self.db.execute(
            select(Package)
            .where(Package.requote_status == "pending", Package.monitor_enabled == True)
            .order_by(Package.id.asc())
        )
        return list(result.scalars().all())

    async def clear_pending_requotes(self) -> int:
        result = await self.db.execute(
            update(Package)
            .where(Package.requote_status == "pending")
            .values(requote_status="completed")
            .returning(Package.id)
        )
        cleared = len(result.all())
        await self.db.commit()
        return cleared

    async def list_needs_manual(self) -> list[Package]:
        result = await self.db.execute(
            select(Package)
            .where(Package.requote_status == "needs_manual", Package.requote_price.is_not(None))
            .order_by(Package.id.asc())
        )
        return list(result.scalars().all())

    async def count_needs_manual(self) -> int:
        result = await self.db.execute(
            select(func.count(Package.id)).where(
                Package.requote_status == "needs_manual",
                Package.requote_price.is_not(None),
            )
        )
        return result.scalar() or 0

    async def set_requote_status(self, package_id: int, status: str):
        await self.db.execute(
            update(Package)
            .where(Package.id == package_id)
            .values(requote_status=status, last_requote_at=datetime.now(timezone.utc))
        )

    async def mark_creative_update_needed(self, package: Package, reason: str):
        package.creative_update_needed = True
        package.creative_update_reason = reason
        package.creative_update_requested_at = datetime.now(timezone.utc)
        await self.db.commit()

    async def replace_destinations(self, package_id: int, destinations: list[dict]):
        await self.db.execute(
            delete(PackageDestination).where(PackageDestination.package_id == package_id)
        )
        for index, dest in enumerate(destinations):
            self.db.add(PackageDestination(
                package_id=package_id,
                destination_code=dest.get("code"),
                destination_name=dest.get("name"),
                sort_order=index,
            ))

    # --- History / audit ---

    def add_price_history(self, entry: PriceHistoryEntry):
        self.db.add(entry)

    async def add_sync_log(self, sync_type: str, status: str, details: dict, package_id: int | None = None):
        self.db.add(PackageSyncLog(package_id=package_id, sync_type=sync_type, status=status, details=details))
        await self.db.commit()

    # --- Notifications ---

    async def get_notification_settings(self) -> NotificationSetting:
        result = await self.db.execute(select(NotificationSetting).where(NotificationSetting.id == 1))
        return result.scalar_one_or_none() or default_notification_settings()

    async def save_notification_settings(self, values: dict) -> NotificationSetting:
        result = await self.db.execute(select(NotificationSetting).where(NotificationSetting.id == 1))
        row = result.scalar_one_or_none()
        if row is None:
            row = default_notification_settings()
            self.db.add(row)
        for field, value in values.items():
            setattr(row, field, value)
        await self.db.commit()
        return row

    async def add_notification_log(self, log: NotificationLog):
        self.db.add(log)
        await self.db.commit()

    async def recently_notified_package_ids(self, notification_type: str, hours: int) -> set[int]:
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        result = await self.db.execute(
            select(NotificationLog.package_id).where(
                NotificationLog.notification_type == notification_type,
                NotificationLog.status == "sent",
                NotificationLog.package_id.is_not(None),
                NotificationLog.created_at >= since,
            )
        )
        return {row[0] for row in result.all()}
