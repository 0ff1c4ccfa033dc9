"""Slack incoming-webhook client and Block Kit message builders."""

import logging
from dataclasses import dataclass

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


@dataclass
class SlackResponse:
    ok: bool
    error: str | None = None


class SlackClient:
    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.slack_timeout)
        return self._client

    async def send(self, webhook_url: str, message: dict) -> SlackResponse:
        """Post a message to a webhook. Transport failures come back as ok=False."""
        client = await self._get_client()
        try:
            resp = await client.post(webhook_url, json=message)
        except httpx.HTTPError as e:
            logger.warning(f"Slack webhook request failed: {e}")
            return SlackResponse(ok=False, error=str(e) or type(e).__name__)

        if resp.status_code >= 400:
            logger.warning(f"Slack webhook returned {resp.status_code}: {resp.text}")
            return SlackResponse(ok=False, error=resp.text or f"HTTP {resp.status_code}")
        return SlackResponse(ok=True)

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None


# ─── Message builders ───

def _package_link(system_url: str, package_id: int, tc_package_id: int, title: str) -> str:
    return f"<{system_url}/packages/{package_id}|{tc_package_id} - {title}>"


def _field(label: str, value: str) -> dict:
    return {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}


def _button(text: str, url: str) -> dict:
    return {"type": "button", "text": {"type": "plain_text", "text": text}, "url": url}


def _signed_pct(value: float) -> str:
    return f"{'+' if value > 0 else ''}{value:.1f}%"


def _money(currency: str, amount: float) -> str:
    return f"{currency} {amount:,.2f}"


def build_price_change_message(
    package_id: int,
    tc_package_id: int,
    title: str,
    old_price: float,
    new_price: float,
    currency: str,
    variance_pct: float,
    system_url: str,
) -> dict:
    went_up = new_price > old_price
    header = f"{'📈' if went_up else '📉'} Price change detected"
    message = {
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": header, "emoji": True}},
            {
                "type": "section",
                "fields": [
                    _field("Package", _package_link(system_url, package_id, tc_package_id, title)),
                    _field("Variance", _signed_pct(variance_pct)),
                    _field("Previous price", _money(currency, old_price)),
                    _field("New price", _money(currency, new_price)),
                ],
            },
            {
                "type": "context",
                "elements": [{
                    "type": "mrkdwn",
                    "text": f"The price went {'up' if went_up else 'down'}. Creatives may need an update.",
                }],
            },
            {"type": "divider"},
            {
                "type": "actions",
                "elements": [
                    _button("Open package", f"{system_url}/packages/{package_id}"),
                    _button("Open in design", f"{system_url}/packages/design?search={tc_package_id}"),
                ],
            },
        ],
        "attachments": [{"color": "#e74c3c" if went_up else "#27ae60"}],
    }
    return message


def build_needs_manual_quote_message(
    package_id: int,
    tc_package_id: int,
    title: str,
    old_price: float,
    new_price: float,
    currency: str,
    variance_pct: float,
    system_url: str,
) -> dict:
    header = "🔔 Package needs a manual quote"
    message = {
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": header, "emoji": True}},
            {
                "type": "section",
                "fields": [
                    _field("Package", _package_link(system_url, package_id, tc_package_id, title)),
                    _field("Variance", _signed_pct(variance_pct)),
                    _field("Previous price", _money(currency, old_price)),
                    _field("New price", _money(currency, new_price)),
                ],
            },
            {
                "type": "context",
                "elements": [{
                    "type": "mrkdwn",
                    "text": "⚠️ The price moved past the review threshold. A manual re-quote is required.",
                }],
            },
            {"type": "divider"},
            {
                "type": "actions",
                "elements": [
                    _button("Open package", f"{system_url}/packages/{package_id}"),
                    _button("Go to manual requote", f"{system_url}/packages/requote"),
                ],
            },
        ],
        "attachments": [{"color": "#e74c3c"}],
    }
    return message


def build_ad_underperforming_message(
    package_id: int,
    tc_package_id: int,
    title: str,
    ad_name: str,
    metrics: dict,
    ctr_threshold: float | None,
    cpl_threshold: float | None,
    system_url: str,
) -> dict:
    header = "⚠️ Underperforming ad"
    ctr = metrics.get("ctr")
    cpl = metrics.get("cpl")

    issues = []
    if ctr_threshold and ctr is not None and ctr < ctr_threshold:
        issues.append(f"Low CTR: {ctr:.2f}% (threshold: {ctr_threshold}%)")
    if cpl_threshold and cpl is not None and cpl > cpl_threshold:
        issues.append(f"High CPL: ${cpl:.2f} (threshold: ${cpl_threshold})")

    message = {
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": header, "emoji": True}},
            {
                "type": "section",
                "fields": [
                    _field("Package", _package_link(system_url, package_id, tc_package_id, title)),
                    _field("Ad", ad_name),
                ],
            },
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": "*Issues:*\n" + "\n".join(f"• {i}" for i in issues),
                },
            },
            {
                "type": "section",
                "fields": [
                    _field("Spend", f"${float(metrics.get('spend') or 0):.2f}"),
                    _field("Leads", str(metrics.get("leads") or 0)),
                ],
            },
            {"type": "divider"},
            {
                "type": "actions",
                "elements": [
                    _button("Open analytics", f"{system_url}/packages/marketing/analytics?package={package_id}"),
                ],
            },
        ],
        "attachments": [{"color": "#f39c12"}],
    }
    return message


slack_client = SlackClient()
