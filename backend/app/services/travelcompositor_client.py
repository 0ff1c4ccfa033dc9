"""TravelCompositor API client — package lookups with token auth and retries."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class TravelCompositorError(Exception):
    """Upstream provider returned an error or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TravelCompositorAuthError(TravelCompositorError):
    pass


class TokenProvider:
    """
    Holds the provider auth token and its expiry.

    Tokens are refreshed `refresh_margin` seconds before they expire so a
    request never goes out with a token about to lapse.
    """

    def __init__(
        self,
        username: str,
        password: str,
        microsite_id: str,
        refresh_margin: int = 300,
    ):
        self.username = username
        self.password = password
        self.microsite_id = microsite_id
        self.refresh_margin = timedelta(seconds=refresh_margin)
        self.token: str | None = None
        self.expires_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password and self.microsite_id)

    def is_valid(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return bool(
            self.token and self.expires_at and now < self.expires_at - self.refresh_margin
        )

    def clear(self) -> None:
        self.token = None
        self.expires_at = None

    async def get_token(self, client: httpx.AsyncClient) -> str:
        async with self._lock:
            if self.is_valid():
                return self.token

            try:
                resp = await client.post(
                    "/authentication/authenticate",
                    json={
                        "username": self.username,
                        "password": self.password,
                        "micrositeId": self.microsite_id,
                    },
                    headers={"Accept": "application/json"},
                )
            except httpx.RequestError as e:
                raise TravelCompositorAuthError(f"TC auth request failed: {e}") from e

            if resp.status_code != 200:
                raise TravelCompositorAuthError(
                    f"TC auth failed: {resp.status_code} - {resp.text}",
                    status_code=resp.status_code,
                )

            data = resp.json()
            self.token = data["token"]
            self.expires_at = datetime.now(timezone.utc) + timedelta(
                seconds=data.get("expirationInSeconds", 3600)
            )
            logger.info("TravelCompositor token refreshed")
            return self.token


class TravelCompositorClient:
    """Adapter for the TravelCompositor package endpoints."""

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str | None = None,
        microsite_id: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int = 3,
    ):
        self.token_provider = token_provider
        self.base_url = base_url or settings.tc_api_base_url
        self.microsite_id = microsite_id or settings.tc_microsite_id
        self.max_attempts = max_attempts
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=settings.tc_request_timeout,
            )
        return self._client

    async def _get(self, path: str) -> Any | None:
        """GET with auth; returns None on 404, raises TravelCompositorError otherwise."""
        client = await self._get_client()

        for attempt in range(self.max_attempts):
            token = await self.token_provider.get_token(client)
            last_attempt = attempt == self.max_attempts - 1
            try:
                resp = await client.get(
                    path,
                    headers={"auth-token": token, "Accept": "application/json"},
                )
            except httpx.RequestError as e:
                logger.warning(f"TC request error on {path}: {e}")
                if last_attempt:
                    raise TravelCompositorError(f"TC request failed: {e}") from e
                await asyncio.sleep(2 ** attempt)
                continue

            if resp.status_code == 404:
                return None
            if resp.status_code == 401 and not last_attempt:
                self.token_provider.clear()
                continue
            if resp.status_code == 429 and not last_attempt:
                await asyncio.sleep(2 ** attempt)
                continue
            if resp.status_code >= 400:
                logger.error(f"TC API error {resp.status_code} on {path}")
                raise TravelCompositorError(
                    f"TC API Error: {resp.status_code} - {resp.text}",
                    status_code=resp.status_code,
                )
            return resp.json()

        raise TravelCompositorError(f"TC API gave up after {self.max_attempts} attempts on {path}")

    async def get_package_info(self, package_id: int) -> dict | None:
        """Package info: price per person, counters, destinations, availability range."""
        logger.debug(f"Fetching package info: {package_id}")
        return await self._get(f"/package/{self.microsite_id}/info/{package_id}")

    async def get_package_detail(self, package_id: int) -> dict | None:
        """Package detail with transport/hotel/transfer/tour/ticket/car line items."""
        logger.debug(f"Fetching package detail: {package_id}")
        return await self._get(f"/package/{self.microsite_id}/{package_id}")

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None


token_provider = TokenProvider(
    username=settings.tc_username,
    password=settings.tc_password,
    microsite_id=settings.tc_microsite_id,
    refresh_margin=settings.tc_token_refresh_margin_seconds,
)
tc_client = TravelCompositorClient(token_provider)
