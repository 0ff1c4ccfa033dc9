"""Notification gate — decides, renders, sends and logs Slack notifications."""

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from app.config import settings
from app.database import async_session_factory
from app.models.notification import NotificationLog, NotificationSetting
from app.models.package import Package
from app.schemas.requote import RequoteOutcome
from app.services import slack_client as slack_messages
from app.services.package_store import PackageStore
from app.services.slack_client import SlackClient, slack_client

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("price_change", "ad_underperforming", "needs_manual_quote")

StoreFactory = Callable[[], AbstractAsyncContextManager[PackageStore]]


@asynccontextmanager
async def open_store():
    async with async_session_factory() as db:
        yield PackageStore(db)


@dataclass
class GateResult:
    sent: bool
    reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        return {"success": self.sent, "reason": self.reason, "error": self.error}


@dataclass
class _Rendered:
    title: str
    message: dict
    channel: str
    meta_ad_id: str | None = None


def _num(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def manual_quote_payload(pkg: Package) -> dict:
    """Old/new price for a package the requote bot flagged, from its stored requote result."""
    old_price = Decimal(str(pkg.current_price or 0))
    new_price = Decimal(str(pkg.requote_price)) if pkg.requote_price is not None else old_price
    if pkg.requote_variance_pct is not None:
        variance = Decimal(str(pkg.requote_variance_pct))
    elif old_price > 0:
        variance = (new_price - old_price) / old_price * 100
    else:
        variance = Decimal("0")
    return {
        "old_price": float(old_price),
        "new_price": float(new_price),
        "variance_pct": float(variance),
    }


class NotificationGate:
    """
    Threshold-gated Slack notifications.

    `evaluate` never raises: disabled channels, toggles and thresholds come
    back as a reason, delivery failures as an error. One NotificationLog row
    is written for every message actually handed to Slack.
    """

    def __init__(
        self,
        slack: SlackClient | None = None,
        store_factory: StoreFactory | None = None,
        system_url: str | None = None,
    ):
        self.slack = slack or slack_client
        self.store_factory = store_factory or open_store
        self.system_url = system_url or settings.app_url

    async def evaluate(
        self,
        store: PackageStore,
        notification_type: str,
        package: Package,
        payload: dict,
        notification_settings: NotificationSetting,
    ) -> GateResult:
        try:
            return await self._evaluate(store, notification_type, package, payload or {}, notification_settings)
        except Exception as e:
            logger.error(f"Notification {notification_type} for package {package.id} failed: {e}")
            return GateResult(sent=False, reason="Notification failed", error=str(e))

    async def _evaluate(
        self,
        store: PackageStore,
        notification_type: str,
        package: Package,
        payload: dict,
        cfg: NotificationSetting,
    ) -> GateResult:
        if not cfg.slack_enabled or not cfg.slack_webhook_url:
            return GateResult(sent=False, reason="Slack notifications not enabled")

        if notification_type == "price_change":
            rendered = self._render_price_change(package, payload, cfg)
        elif notification_type == "ad_underperforming":
            rendered = self._render_ad_underperforming(package, payload, cfg)
        elif notification_type == "needs_manual_quote":
            rendered = self._render_needs_manual_quote(package, payload, cfg)
        else:
            return GateResult(sent=False, reason="Unknown notification type")

        if isinstance(rendered, GateResult):
            return rendered

        if notification_type == "price_change":
            await store.mark_creative_update_needed(package, "price_change")

        response = await self.slack.send(cfg.slack_webhook_url, rendered.message)

        try:
            await store.add_notification_log(NotificationLog(
                notification_type=notification_type,
                channel="slack",
                recipient=rendered.channel,
                package_id=package.id,
                meta_ad_id=rendered.meta_ad_id,
                message_title=rendered.title,
                message_data=payload,
                status="sent" if response.ok else "failed",
                error_message=response.error,
                sent_at=datetime.now(timezone.utc) if response.ok else None,
            ))
        except Exception as e:
            logger.error(f"Failed to write notification log for package {package.id}: {e}")

        if response.ok:
            logger.info(f"Sent {notification_type} notification for package {package.id} to {rendered.channel}")
            return GateResult(sent=True)
        return GateResult(sent=False, reason="Delivery failed", error=response.error)

    # --- per-type gates and rendering ---

    def _render_price_change(self, pkg: Package, payload: dict, cfg: NotificationSetting):
        if not cfg.notify_price_change:
            return GateResult(sent=False, reason="Price change notifications disabled")

        variance = _num(payload.get("variance_pct"))
        threshold = _num(cfg.price_change_threshold_pct, 5.0) or 5.0
        if abs(variance) < threshold:
            return GateResult(sent=False, reason="Price change below threshold")

        message = slack_messages.build_price_change_message(
            package_id=pkg.id,
            tc_package_id=pkg.tc_package_id,
            title=pkg.title,
            old_price=_num(payload.get("old_price")),
            new_price=_num(payload.get("new_price")),
            currency=pkg.currency or "USD",
            variance_pct=variance,
            system_url=self.system_url,
        )
        return _Rendered(
            title=f"Price change on {pkg.tc_package_id}",
            message=message,
            channel=cfg.slack_channel_design or "#design",
        )

    def _render_ad_underperforming(self, pkg: Package, payload: dict, cfg: NotificationSetting):
        if not cfg.notify_ad_underperforming:
            return GateResult(sent=False, reason="Underperforming ad notifications disabled")

        ctr_threshold = _num(cfg.ctr_threshold_pct) or None
        cpl_threshold = _num(cfg.cpl_threshold) or None
        ctr = payload.get("ctr")
        cpl = payload.get("cpl")

        ctr_low = ctr_threshold is not None and ctr is not None and _num(ctr) < ctr_threshold
        cpl_high = cpl_threshold is not None and cpl is not None and _num(cpl) > cpl_threshold
        if not ctr_low and not cpl_high:
            return GateResult(sent=False, reason="Ad metrics within acceptable range")

        message = slack_messages.build_ad_underperforming_message(
            package_id=pkg.id,
            tc_package_id=pkg.tc_package_id,
            title=pkg.title,
            ad_name=str(payload.get("ad_name") or payload.get("ad_id") or ""),
            metrics={
                "ctr": _num(ctr) if ctr is not None else None,
                "cpl": _num(cpl) if cpl is not None else None,
                "spend": payload.get("spend"),
                "leads": payload.get("leads"),
            },
            ctr_threshold=ctr_threshold,
            cpl_threshold=cpl_threshold,
            system_url=self.system_url,
        )
        return _Rendered(
            title=f"Underperforming ad - {pkg.tc_package_id}",
            message=message,
            channel=cfg.slack_channel_marketing or "#marketing",
            meta_ad_id=payload.get("ad_id"),
        )

    def _render_needs_manual_quote(self, pkg: Package, payload: dict, cfg: NotificationSetting):
        if cfg.notify_needs_manual_quote is False:
            return GateResult(sent=False, reason="Needs manual quote notifications disabled")

        message = slack_messages.build_needs_manual_quote_message(
            package_id=pkg.id,
            tc_package_id=pkg.tc_package_id,
            title=pkg.title,
            old_price=_num(payload.get("old_price")),
            new_price=_num(payload.get("new_price")),
            currency=pkg.currency or "USD",
            variance_pct=_num(payload.get("variance_pct")),
            system_url=self.system_url,
        )
        return _Rendered(
            title=f"Manual quote required - {pkg.tc_package_id}",
            message=message,
            channel=cfg.slack_channel_marketing or "#marketing",
        )

    # --- batch entry points ---

    async def check_manual_quotes(
        self,
        store: PackageStore,
        notification_settings: NotificationSetting | None = None,
    ) -> dict:
        """Notify every needs-manual package not already notified within the re-notify window."""
        cfg = notification_settings or await store.get_notification_settings()
        packages = await store.list_needs_manual()
        recent = await store.recently_notified_package_ids(
            "needs_manual_quote", settings.manual_quote_renotify_hours
        )
        pending = [p for p in packages if p.id not in recent]
        logger.info(
            f"Manual quotes: {len(packages)} need review, {len(pending)} not notified recently"
        )

        results = []
        sent = 0
        for pkg in pending:
            result = await self.evaluate(store, "needs_manual_quote", pkg, manual_quote_payload(pkg), cfg)
            if result.sent:
                sent += 1
            results.append({
                "id": pkg.id,
                "tc_package_id": pkg.tc_package_id,
                "status": "sent" if result.sent else "failed",
                "reason": result.reason,
                "error": result.error,
            })

        return {"success": True, "sent": sent, "total": len(pending), "results": results}

    async def notify_requote_outcomes(self, outcomes: list[RequoteOutcome]) -> int:
        """
        Completion handler for a supervised requote run.

        Records each package's final requote status, then notifies once per
        package that ended in needs_manual, one after another. Returns the
        number of notifications sent.
        """
        if not outcomes:
            return 0

        sent = 0
        async with self.store_factory() as store:
            needs_manual_ids: list[int] = []
            for outcome in outcomes:
                if outcome.status == "needs_manual":
                    await store.set_requote_status(outcome.id, "needs_manual")
                    if outcome.id not in needs_manual_ids:
                        needs_manual_ids.append(outcome.id)
                else:
                    await store.set_requote_status(outcome.id, "completed")
            await store.commit()

            if not needs_manual_ids:
                return 0

            cfg = await store.get_notification_settings()
            packages = {p.id: p for p in await store.get_packages(needs_manual_ids)}
            for package_id in needs_manual_ids:
                pkg = packages.get(package_id)
                if pkg is None:
                    logger.warning(f"Requote outcome for unknown package {package_id}")
                    continue
                result = await self.evaluate(store, "needs_manual_quote", pkg, manual_quote_payload(pkg), cfg)
                if result.sent:
                    sent += 1

        logger.info(f"Requote run notifications: {sent}/{len(needs_manual_ids)} sent")
        return sent

    async def dispatch(self, notification_type: str, package_id: int, payload: dict) -> GateResult:
        """Evaluate one notification on a session of its own."""
        try:
            async with self.store_factory() as store:
                pkg = await store.get_package(package_id)
                if pkg is None:
                    logger.warning(f"Notification {notification_type} for unknown package {package_id}")
                    return GateResult(sent=False, reason="Package not found")
                cfg = await store.get_notification_settings()
                return await self.evaluate(store, notification_type, pkg, payload, cfg)
        except Exception as e:
            logger.error(f"Notification dispatch {notification_type} for package {package_id} failed: {e}")
            return GateResult(sent=False, reason="Notification failed", error=str(e))


notification_gate = NotificationGate()
