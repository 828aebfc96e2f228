from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import quote

import httpx

from discogs_atlas.core.config import Settings

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
THROTTLE_STATUS_CODES = {429}


class DiscogsClientError(Exception):
    """Base Discogs API error."""


class DiscogsRequestError(DiscogsClientError):
    """Raised on transport failures and non-success responses."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DiscogsRateLimitError(DiscogsRequestError):
    """Raised when Discogs keeps throttling after every retry."""


class DiscogsResponseError(DiscogsClientError):
    """Raised when a response body does not have the expected shape."""


class DiscogsClient:
    """Rate-limited Discogs API client.

    Every request waits ``request_delay_seconds`` before it is sent, the first
    one included. A 429 response waits ``cooldown_seconds`` and retries, at most
    ``max_retries`` times.
    """

    def __init__(
        self,
        base_url: str,
        *,
        user_agent: str,
        token: str | None = None,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        timeout_seconds: float = 10.0,
        request_delay_seconds: float = 1.5,
        cooldown_seconds: float = 60.0,
        max_retries: int = 3,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.request_delay_seconds = max(0.0, request_delay_seconds)
        self.cooldown_seconds = max(0.0, cooldown_seconds)
        self.max_retries = max(0, max_retries)
        self.headers = {"User-Agent": user_agent, "Accept": "application/json"}
        if token:
            self.headers["Authorization"] = f"Discogs token={token}"
        elif consumer_key and consumer_secret:
            self.headers["Authorization"] = f"Discogs key={consumer_key}, secret={consumer_secret}"
        self._http_client = http_client
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> DiscogsClient:
        return cls(
            settings.discogs_base_url,
            user_agent=settings.discogs_user_agent,
            token=token,
            consumer_key=settings.discogs_consumer_key,
            consumer_secret=settings.discogs_consumer_secret,
            timeout_seconds=settings.http_timeout_seconds,
            request_delay_seconds=settings.request_delay_seconds,
            cooldown_seconds=settings.rate_limit_cooldown_seconds,
            max_retries=settings.rate_limit_max_retries,
            http_client=http_client,
            sleep=sleep,
        )

    async def get_collection_page(self, username: str, *, page: int, per_page: int) -> dict[str, Any]:
        path = f"/users/{quote(username, safe='')}/collection/folders/0/releases"
        payload = await self._get_json(path, params={"page": page, "per_page": per_page})

        releases = payload.get("releases")
        pagination = payload.get("pagination")
        if not isinstance(releases, list) or not isinstance(pagination, dict):
            raise DiscogsResponseError(f"malformed collection page {page} for {username}")
        try:
            pages = int(pagination["pages"])
            items = int(pagination["items"])
        except (KeyError, TypeError, ValueError) as exc:
            raise DiscogsResponseError(f"malformed pagination on page {page} for {username}") from exc

        return {"releases": releases, "pagination": {"pages": pages, "items": items}}

    async def get_release(self, release_id: int) -> dict[str, Any]:
        return await self._get_json(f"/releases/{int(release_id)}")

    async def _get_json(self, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._request_with_retry(path, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise DiscogsResponseError(f"invalid JSON from {path}") from exc
        if not isinstance(payload, dict):
            raise DiscogsResponseError(f"unexpected payload type from {path}")
        return payload

    async def _request_with_retry(self, path: str, *, params: dict[str, Any] | None) -> httpx.Response:
        retries_used = 0
        while True:
            await self._sleep(self.request_delay_seconds)
            response = await self._send(path, params=params)
            if response.status_code not in THROTTLE_STATUS_CODES:
                break
            if retries_used >= self.max_retries:
                raise DiscogsRateLimitError(
                    f"Discogs rate limit persisted after {retries_used} retries: {path}",
                    status_code=response.status_code,
                )
            retries_used += 1
            logger.warning(
                "Discogs rate limit hit path=%s; retrying in %.0fs (%s retries left)",
                path,
                self.cooldown_seconds,
                self.max_retries - retries_used + 1,
            )
            await self._sleep(self.cooldown_seconds)

        if response.status_code >= 400:
            raise DiscogsRequestError(
                f"Discogs request failed with status {response.status_code}: {path}",
                status_code=response.status_code,
            )
        return response

    async def _send(self, path: str, *, params: dict[str, Any] | None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            if self._http_client is not None:
                return await self._http_client.get(url, params=params, headers=self.headers)
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                return await client.get(url, params=params, headers=self.headers)
        except httpx.HTTPError as exc:
            raise DiscogsRequestError(f"Discogs request failed for {path}: {exc}") from exc
