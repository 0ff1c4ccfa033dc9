"""Price refresh service — sequential batch sync of package prices from TravelCompositor."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from app.config import settings
from app.models.package import Package, PriceHistoryEntry
from app.services.cost_extractor import extract_costs
from app.services.notification_service import notification_gate
from app.services.package_store import PackageStore
from app.services.run_lock import REFRESH_LOCK, RunLockService, run_lock_service
from app.services.travelcompositor_client import TravelCompositorClient, tc_client

logger = logging.getLogger(__name__)

MANUAL_THRESHOLD_PCT = Decimal("5.0")

# (notification_type, package_id, payload) -> None, dispatched without awaiting delivery
Notifier = Callable[[str, int, dict], Awaitable[Any]]


def _to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _parse_price(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        return None
    return price if price.is_finite() else None


def compute_variance(old_price: Any, new_price: Any) -> tuple[Decimal, Decimal]:
    """Return (variance_amount, variance_pct); pct is 0 when there is no previous price."""
    old = _to_decimal(old_price)
    new = _to_decimal(new_price)
    amount = new - old
    if old <= 0:
        return amount, Decimal("0")
    return amount, amount / old * 100


def needs_manual_review(variance_pct: Decimal, threshold: Decimal = MANUAL_THRESHOLD_PCT) -> bool:
    return abs(variance_pct) >= threshold


def _parse_date(value: Any) -> date | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


@dataclass
class RefreshOutcome:
    success: bool
    price_changed: bool = False
    needs_manual: bool = False
    variance_pct: Decimal | None = None
    error: str | None = None


@dataclass
class BatchRefreshResult:
    processed: int = 0
    success_count: int = 0
    failed: int = 0
    price_changes: int = 0
    errors: list[dict] = field(default_factory=list)
    duration: str = "0.00s"
    skipped: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.failed == 0 and not self.skipped

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "processed": self.processed,
            "successCount": self.success_count,
            "failed": self.failed,
            "priceChanges": self.price_changes,
            "errors": self.errors,
            "duration": self.duration,
        }


class PriceRefreshService:
    """Refreshes monitored packages one at a time, isolating per-package failures."""

    def __init__(
        self,
        client: TravelCompositorClient | None = None,
        lock_service: RunLockService | None = None,
        notifier: Notifier | None = None,
        delay_seconds: float | None = None,
        threshold_pct: float | None = None,
    ):
        self.client = client or tc_client
        self.lock_service = lock_service or run_lock_service
        self.notifier = notifier
        self.delay_seconds = settings.refresh_delay_seconds if delay_seconds is None else delay_seconds
        self.threshold = Decimal(str(
            settings.manual_threshold_pct if threshold_pct is None else threshold_pct
        ))
        self._pending_notifications: set[asyncio.Task] = set()

    async def run(
        self,
        store: PackageStore,
        batch_size: int | None = None,
        cancel_event: asyncio.Event | None = None,
        sync_type: str = "cron_batch",
    ) -> BatchRefreshResult:
        """Refresh up to `batch_size` of the stalest monitored packages."""
        batch_size = batch_size or settings.refresh_batch_size
        result = BatchRefreshResult()

        lock_token = await self.lock_service.acquire(REFRESH_LOCK, settings.refresh_lock_ttl_seconds)
        if lock_token is None:
            logger.warning("Package refresh already running, skipping this batch")
            result.skipped = True
            return result

        start = time.monotonic()
        error: str | None = None
        try:
            packages = await store.list_refresh_candidates(batch_size)
            # A rollback expires every loaded row, so only plain ids cross iterations
            targets = [(pkg.id, pkg.tc_package_id) for pkg in packages]
            logger.info(f"Refreshing {len(targets)} packages")

            for index, (pkg_id, tc_id) in enumerate(targets):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Package refresh cancelled")
                    result.cancelled = True
                    break

                try:
                    pkg = await store.get_package(pkg_id)
                    if pkg is None:
                        outcome = RefreshOutcome(success=False, error="Package no longer exists")
                    else:
                        outcome = await self.refresh_package(store, pkg)
                except Exception as e:
                    logger.error(f"Error refreshing package {pkg_id} (TC {tc_id}): {e}")
                    try:
                        await store.rollback()
                    except Exception as rollback_error:
                        logger.error(f"Rollback failed after package {pkg_id}: {rollback_error}")
                    outcome = RefreshOutcome(success=False, error=str(e) or type(e).__name__)

                result.processed += 1
                if outcome.success:
                    result.success_count += 1
                    if outcome.price_changed:
                        result.price_changes += 1
                else:
                    result.failed += 1
                    result.errors.append({
                        "id": pkg_id,
                        "tc_id": tc_id,
                        "error": outcome.error or "Unknown error",
                    })

                if index < len(targets) - 1 and self.delay_seconds > 0:
                    await asyncio.sleep(self.delay_seconds)

            await self._drain_notifications()
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Package refresh batch aborted: {error}")
            raise
        finally:
            result.duration = f"{time.monotonic() - start:.2f}s"
            await self.lock_service.release(REFRESH_LOCK, lock_token)
            await self._write_sync_log(store, result, sync_type, error)

        logger.info(
            f"Refresh completed in {result.duration}: {result.success_count}/{result.processed} "
            f"success, {result.price_changes} price changes"
        )
        return result

    async def refresh_package(self, store: PackageStore, pkg: Package) -> RefreshOutcome:
        """Fetch provider state for one package and persist price, costs and metadata."""
        info, detail = await asyncio.gather(
            self.client.get_package_info(pkg.tc_package_id),
            self.client.get_package_detail(pkg.tc_package_id),
        )
        if not info:
            return RefreshOutcome(success=False, error="Package not found in provider")

        now = datetime.now(timezone.utc)
        costs = extract_costs(detail)
        new_price = _parse_price((info.get("pricePerPerson") or {}).get("amount"))
        if new_price is None:
            return RefreshOutcome(success=False, error="Package has no price in provider")
        old_price = _to_decimal(pkg.current_price)
        total_price = (info.get("totalPrice") or {}).get("amount")
        currency = (info.get("pricePerPerson") or {}).get("currency") or "USD"
        price_changed = old_price != new_price

        variance_amount, variance_pct = compute_variance(old_price, new_price)
        needs_manual = price_changed and needs_manual_review(variance_pct, self.threshold)

        if price_changed:
            if pkg.original_price is None:
                pkg.original_price = old_price
            pkg.last_price_change_at = now
            pkg.price_variance_pct = variance_pct
            pkg.needs_manual_quote = needs_manual
            store.add_price_history(PriceHistoryEntry(
                package_id=pkg.id,
                price_per_pax=new_price,
                total_price=_to_decimal(total_price) if total_price is not None else None,
                currency=currency,
                previous_price=old_price,
                variance_amount=variance_amount,
                variance_pct=variance_pct,
            ))
        else:
            pkg.price_variance_pct = None
            pkg.needs_manual_quote = False

        self._apply_info(pkg, info)
        pkg.current_price = new_price
        pkg.total_price = _to_decimal(total_price) if total_price is not None else pkg.total_price
        pkg.currency = currency

        pkg.air_cost = Decimal(str(costs.air_cost))
        pkg.land_cost = Decimal(str(costs.land_cost))
        pkg.agency_fee = Decimal(str(costs.agency_fee))
        pkg.flight_departure_date = _parse_date(costs.flight_departure_date)
        pkg.airline_code = costs.airline_code
        pkg.airline_name = costs.airline_name
        pkg.flight_numbers = costs.flight_numbers
        pkg.last_sync_at = now

        destinations = info.get("destinations") or []
        if destinations:
            await store.replace_destinations(pkg.id, destinations)

        await store.commit()

        if price_changed:
            logger.info(
                f"Package {pkg.id} (TC {pkg.tc_package_id}) price {old_price} -> {new_price} "
                f"({variance_pct:.2f}%){' needs manual review' if needs_manual else ''}"
            )
            payload = {
                "old_price": float(old_price),
                "new_price": float(new_price),
                "variance_pct": float(variance_pct),
            }
            if pkg.send_to_marketing:
                self._dispatch("price_change", pkg.id, payload)
            if needs_manual:
                self._dispatch("needs_manual_quote", pkg.id, payload)

        return RefreshOutcome(
            success=True,
            price_changed=price_changed,
            needs_manual=needs_manual,
            variance_pct=variance_pct if price_changed else None,
        )

    async def refresh_one(self, store: PackageStore, package_id: int) -> RefreshOutcome | None:
        """Refresh a single package on demand; provider errors propagate to the caller."""
        pkg = await store.get_package(package_id)
        if pkg is None:
            return None
        outcome = await self.refresh_package(store, pkg)
        await self._drain_notifications()
        try:
            await store.add_sync_log(
                sync_type="manual",
                status="success" if outcome.success else "failed",
                details={
                    "priceChanged": outcome.price_changed,
                    "needsManual": outcome.needs_manual,
                    "variancePct": float(outcome.variance_pct) if outcome.variance_pct is not None else None,
                    "error": outcome.error,
                },
                package_id=pkg.id,
            )
        except Exception as e:
            logger.error(f"Failed to write package sync log: {e}")
        return outcome

    @staticmethod
    def _apply_info(pkg: Package, info: dict):
        counters = info.get("counters") or {}
        avail_range = (info.get("dateSettings") or {}).get("availRange") or {}

        pkg.title = info.get("title") or pkg.title
        pkg.large_title = info.get("largeTitle") or None
        pkg.image_url = info.get("imageUrl") or None
        pkg.departure_date = _parse_date(info.get("departureDate"))
        pkg.date_range_start = _parse_date(avail_range.get("start"))
        pkg.date_range_end = _parse_date(avail_range.get("end"))
        pkg.tc_active = bool(info.get("active", pkg.tc_active))
        pkg.themes = info.get("themes") or []
        pkg.tc_idea_url = info.get("ideaUrl") or None

        pkg.adults_count = counters.get("adults")
        pkg.children_count = counters.get("children")
        pkg.nights_count = counters.get("hotelNights")
        pkg.destinations_count = counters.get("destinations")
        pkg.transports_count = counters.get("transports")
        pkg.hotels_count = counters.get("hotels")
        pkg.transfers_count = counters.get("transfers")
        pkg.cars_count = counters.get("cars")
        pkg.tickets_count = counters.get("tickets")
        pkg.tours_count = counters.get("closedTours")

    def _dispatch(self, notification_type: str, package_id: int, payload: dict):
        if self.notifier is None:
            return
        task = asyncio.create_task(self.notifier(notification_type, package_id, payload))
        self._pending_notifications.add(task)
        task.add_done_callback(self._pending_notifications.discard)

    async def _drain_notifications(self):
        if not self._pending_notifications:
            return
        results = await asyncio.gather(*self._pending_notifications, return_exceptions=True)
        for r in results:
            if isinstance(r, Exception):
                logger.error(f"Notification dispatch failed: {r}")

    @staticmethod
    async def _write_sync_log(
        store: PackageStore, result: BatchRefreshResult, sync_type: str, error: str | None = None
    ):
        if error is not None:
            status = "failed"
        else:
            status = "success" if result.failed == 0 else "partial"
        try:
            if error is not None:
                await store.rollback()
            await store.add_sync_log(
                sync_type=sync_type,
                status=status,
                details={
                    "processed": result.processed,
                    "successCount": result.success_count,
                    "failed": result.failed,
                    "priceChanges": result.price_changes,
                    "duration": result.duration,
                    "cancelled": result.cancelled,
                    "errors": result.errors,
                    "error": error,
                },
            )
        except Exception as e:
            logger.error(f"Failed to write package sync log: {e}")


price_refresh_service = PriceRefreshService(notifier=notification_gate.dispatch)
