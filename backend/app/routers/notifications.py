"""Notifications router — Slack notification sends, manual-quote checks and settings."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from app.dependencies import get_notification_gate, get_store
from app.models.notification import NotificationSetting
from app.services.notification_service import NOTIFICATION_TYPES, NotificationGate
from app.services.package_store import PackageStore

logger = logging.getLogger(__name__)

router = APIRouter()


class SendNotificationRequest(BaseModel):
    type: str | None = None
    package_id: int | None = None
    data: dict = {}


class NotificationSettingsUpdate(BaseModel):
    slack_enabled: bool | None = None
    slack_webhook_url: str | None = None
    slack_channel_design: str | None = None
    slack_channel_marketing: str | None = None
    notify_price_change: bool | None = None
    notify_ad_underperforming: bool | None = None
    notify_needs_manual_quote: bool | None = None
    price_change_threshold_pct: float | None = None
    ctr_threshold_pct: float | None = None
    cpl_threshold: float | None = None


def _serialize_settings(row: NotificationSetting) -> dict:
    return {
        "slack_enabled": bool(row.slack_enabled),
        "slack_webhook_url": row.slack_webhook_url,
        "slack_channel_design": row.slack_channel_design,
        "slack_channel_marketing": row.slack_channel_marketing,
        "notify_price_change": bool(row.notify_price_change),
        "notify_ad_underperforming": bool(row.notify_ad_underperforming),
        "notify_needs_manual_quote": bool(row.notify_needs_manual_quote),
        "price_change_threshold_pct": float(row.price_change_threshold_pct or 0),
        "ctr_threshold_pct": float(row.ctr_threshold_pct) if row.ctr_threshold_pct is not None else None,
        "cpl_threshold": float(row.cpl_threshold) if row.cpl_threshold is not None else None,
    }


@router.post("/send")
async def send_notification(
    req: SendNotificationRequest,
    store: PackageStore = Depends(get_store),
    gate: NotificationGate = Depends(get_notification_gate),
):
    """Run the notification gate for one package."""
    if not req.type or not req.package_id:
        raise HTTPException(status_code=400, detail="type and package_id are required")
    if req.type not in NOTIFICATION_TYPES:
        raise HTTPException(status_code=400, detail="Invalid notification type")

    pkg = await store.get_package(req.package_id)
    if pkg is None:
        raise HTTPException(status_code=404, detail="Package not found")

    cfg = await store.get_notification_settings()
    result = await gate.evaluate(store, req.type, pkg, req.data, cfg)
    return result.to_dict()


@router.post("/check-manual-quotes")
async def check_manual_quotes(
    store: PackageStore = Depends(get_store),
    gate: NotificationGate = Depends(get_notification_gate),
):
    """Notify every needs-manual package not notified recently."""
    try:
        return await gate.check_manual_quotes(store)
    except SQLAlchemyError as e:
        logger.error(f"Manual quote check failed: {e}")
        raise HTTPException(status_code=500, detail="Manual quote check failed")


@router.get("/check-manual-quotes")
async def count_manual_quotes(store: PackageStore = Depends(get_store)):
    """Number of packages waiting for a manual quote."""
    return {"pendingCount": await store.count_needs_manual()}


@router.get("/settings")
async def get_notification_settings(store: PackageStore = Depends(get_store)):
    return _serialize_settings(await store.get_notification_settings())


@router.put("/settings")
async def update_notification_settings(
    req: NotificationSettingsUpdate,
    store: PackageStore = Depends(get_store),
):
    """Update the notification settings; omitted fields keep their value."""
    values = req.model_dump(exclude_unset=True)
    try:
        row = await store.save_notification_settings(values)
    except SQLAlchemyError as e:
        logger.error(f"Failed to save notification settings: {e}")
        raise HTTPException(status_code=500, detail="Failed to save notification settings")
    return _serialize_settings(row)
