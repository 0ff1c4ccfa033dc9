import json
import os
import tempfile
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest

# Keep the app's rotating log file out of the source tree; must run before app.config loads
TEST_LOG_DIR = os.path.join(tempfile.gettempdir(), "package-hub-test-logs")
os.environ.setdefault("LOG_DIR", TEST_LOG_DIR)

from app.models.notification import NotificationSetting
from app.models.package import Package
from app.services.run_lock import RunLockService
from app.services.slack_client import SlackClient


def make_package(id: int, tc_package_id: int | None = None, **overrides) -> Package:
    values = dict(
        id=id,
        tc_package_id=tc_package_id or id + 9000,
        title=f"Package {id}",
        current_price=Decimal("1000"),
        original_price=None,
        currency="USD",
        price_variance_pct=None,
        needs_manual_quote=False,
        requote_status=None,
        requote_price=None,
        requote_variance_pct=None,
        monitor_enabled=True,
        tc_active=True,
        send_to_marketing=False,
        creative_update_needed=False,
        date_range_end=None,
        last_sync_at=None,
        themes=[],
    )
    values.update(overrides)
    return Package(**values)


def make_settings(**overrides) -> NotificationSetting:
    values = dict(
        id=1,
        slack_enabled=True,
        slack_webhook_url="https://hooks.slack.test/services/T000/B000/XXX",
        slack_channel_design="#design",
        slack_channel_marketing="#marketing",
        notify_price_change=True,
        notify_ad_underperforming=True,
        notify_needs_manual_quote=True,
        price_change_threshold_pct=Decimal("5.0"),
        ctr_threshold_pct=Decimal("0.5"),
        cpl_threshold=Decimal("10.0"),
    )
    values.update(overrides)
    return NotificationSetting(**values)


class FakeStore:
    """In-memory stand-in for PackageStore."""

    def __init__(self, packages=(), notification_settings=None):
        self.packages = {p.id: p for p in packages}
        self.notification_settings = notification_settings or make_settings()
        self.history = []
        self.sync_logs = []
        self.notification_logs = []
        self.destinations = {}
        self.commits = 0
        self.rollbacks = 0

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    async def get_package(self, package_id):
        return self.packages.get(package_id)

    async def get_packages(self, package_ids):
        return [self.packages[i] for i in package_ids if i in self.packages]

    async def list_refresh_candidates(self, limit, today=None):
        today = today or date.today()
        never = datetime.min.replace(tzinfo=timezone.utc)
        candidates = [
            p for p in self.packages.values()
            if p.monitor_enabled and (p.date_range_end is None or p.date_range_end >= today)
        ]
        candidates.sort(key=lambda p: (p.last_sync_at is not None, p.last_sync_at or never, p.id))
        return candidates[:limit]

    async def list_pending_requotes(self):
        return [
            p for p in sorted(self.packages.values(), key=lambda p: p.id)
            if p.requote_status == "pending" and p.monitor_enabled
        ]

    async def clear_pending_requotes(self):
        cleared = 0
        for p in self.packages.values():
            if p.requote_status == "pending":
                p.requote_status = "completed"
                cleared += 1
        return cleared

    async def list_needs_manual(self):
        return [
            p for p in sorted(self.packages.values(), key=lambda p: p.id)
            if p.requote_status == "needs_manual" and p.requote_price is not None
        ]

    async def count_needs_manual(self):
        return len(await self.list_needs_manual())

    async def set_requote_status(self, package_id, status):
        if package_id in self.packages:
            self.packages[package_id].requote_status = status

    async def mark_creative_update_needed(self, package, reason):
        package.creative_update_needed = True
        package.creative_update_reason = reason
        package.creative_update_requested_at = datetime.now(timezone.utc)

    async def replace_destinations(self, package_id, destinations):
        self.destinations[package_id] = list(destinations)

    def add_price_history(self, entry):
        self.history.append(entry)

    async def add_sync_log(self, sync_type, status, details, package_id=None):
        self.sync_logs.append({"sync_type": sync_type, "status": status, "details": details, "package_id": package_id})

    async def get_notification_settings(self):
        return self.notification_settings

    async def save_notification_settings(self, values):
        for field, value in values.items():
            setattr(self.notification_settings, field, value)
        return self.notification_settings

    async def add_notification_log(self, log):
        self.notification_logs.append(log)

    async def recently_notified_package_ids(self, notification_type, hours):
        return {
            log.package_id for log in self.notification_logs
            if log.notification_type == notification_type and log.status == "sent"
        }


class FakeProviderClient:
    """TravelCompositor client double keyed by external package id."""

    def __init__(self, info=None, detail=None, errors=None):
        self.info = info or {}
        self.detail = detail or {}
        self.errors = errors or {}
        self.calls = []

    async def get_package_info(self, tc_package_id):
        self.calls.append(tc_package_id)
        if tc_package_id in self.errors:
            raise self.errors[tc_package_id]
        return self.info.get(tc_package_id)

    async def get_package_detail(self, tc_package_id):
        return self.detail.get(tc_package_id)


class InProcessLocks(RunLockService):
    """Run locks that never try Redis."""

    async def _get_redis(self):
        return None


def package_info(price, total=None, **extra) -> dict:
    info = {
        "title": extra.pop("title", "Cancun all inclusive"),
        "pricePerPerson": {"amount": price, "currency": "USD"},
        "totalPrice": {"amount": total if total is not None else price * 2, "currency": "USD"},
        "counters": {"adults": 2, "children": 0, "hotelNights": 7, "destinations": 1},
        "destinations": [{"code": "CUN", "name": "Cancun"}],
        "active": True,
    }
    info.update(extra)
    return info


class SlackRecorder:
    """Slack client on an httpx MockTransport; records every posted message."""

    def __init__(self, status_code=200, fail_with: Exception | None = None):
        self.requests = []
        self.status_code = status_code
        self.fail_with = fail_with
        self.client = SlackClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(self._handle)))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            raise self.fail_with
        self.requests.append(json.loads(request.content))
        if self.status_code >= 400:
            return httpx.Response(self.status_code, text="invalid_payload")
        return httpx.Response(self.status_code, text="ok")


def store_factory_for(store):
    @asynccontextmanager
    async def factory():
        yield store
    return factory


@pytest.fixture
def slack():
    return SlackRecorder()
