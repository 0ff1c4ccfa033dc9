"""Packages router — on-demand refresh of a single package."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError

from app.dependencies import get_refresh_service, get_store
from app.services.package_store import PackageStore
from app.services.price_refresh_service import PriceRefreshService
from app.services.travelcompositor_client import TravelCompositorError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{package_id}/refresh")
async def refresh_package(
    package_id: int,
    store: PackageStore = Depends(get_store),
    service: PriceRefreshService = Depends(get_refresh_service),
):
    """Pull the latest price, costs and metadata for one package."""
    try:
        outcome = await service.refresh_one(store, package_id)
    except TravelCompositorError as e:
        logger.error(f"Refresh of package {package_id} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except SQLAlchemyError as e:
        logger.error(f"Saving refresh of package {package_id} failed: {e}")
        await store.rollback()
        raise HTTPException(status_code=500, detail="Failed to save package refresh")

    if outcome is None:
        raise HTTPException(status_code=404, detail="Package not found")
    if not outcome.success:
        raise HTTPException(status_code=404, detail=outcome.error or "Package not found in provider")

    return {
        "success": True,
        "price_changed": outcome.price_changed,
        "needs_manual": outcome.needs_manual,
        "variance_pct": float(outcome.variance_pct) if outcome.variance_pct is not None else None,
    }
