"""Cron router — scheduled package price refresh."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_refresh_service, get_store, verify_cron_secret
from app.services.package_store import PackageStore
from app.services.price_refresh_service import PriceRefreshService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.api_route(
    "/refresh-packages",
    methods=["GET", "POST"],
    dependencies=[Depends(verify_cron_secret)],
)
async def refresh_packages(
    store: PackageStore = Depends(get_store),
    service: PriceRefreshService = Depends(get_refresh_service),
):
    """Refresh the stalest batch of monitored packages from TravelCompositor."""
    try:
        result = await service.run(store)
    except Exception as e:
        logger.error(f"Cron package refresh failed: {e}")
        raise HTTPException(status_code=500, detail=str(e) or "Package refresh failed")

    if result.skipped:
        raise HTTPException(status_code=409, detail="Package refresh already running")
    return result.to_dict()
