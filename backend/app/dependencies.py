import hmac

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.services.notification_service import NotificationGate, notification_gate
from app.services.package_store import PackageStore
from app.services.price_refresh_service import PriceRefreshService, price_refresh_service
from app.services.requote_supervisor import RequoteSupervisor, requote_supervisor


async def get_store(db: AsyncSession = Depends(get_db)) -> PackageStore:
    return PackageStore(db)


def get_refresh_service() -> PriceRefreshService:
    return price_refresh_service


def get_notification_gate() -> NotificationGate:
    return notification_gate


def get_requote_supervisor() -> RequoteSupervisor:
    return requote_supervisor


async def verify_cron_secret(authorization: str | None = Header(default=None)) -> None:
    """Require `Authorization: Bearer <CRON_SECRET>`."""
    if not settings.cron_secret:
        raise HTTPException(status_code=500, detail="Server misconfigured")

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
