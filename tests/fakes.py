from __future__ import annotations

import math
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from discogs_atlas.services.discogs_client import DiscogsClient

BASE_URL = "https://api.discogs.test"


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    def __init__(self, clock: FakeClock | None = None) -> None:
        self.calls: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


def release_entry(release_id: int, *labels: tuple[int, str]) -> dict[str, Any]:
    return {
        "id": release_id,
        "basic_information": {
            "id": release_id,
            "labels": [{"id": label_id, "name": name} for label_id, name in labels],
        },
    }


class FakeDiscogs:
    """Serves a user's collection and release details from in-memory fixtures."""

    def __init__(
        self,
        username: str,
        releases: list[dict[str, Any]],
        *,
        countries: dict[int, str | None] | None = None,
        failing_pages: Iterable[int] = (),
        throttled_releases: Iterable[int] = (),
        failing_releases: Iterable[int] = (),
    ) -> None:
        self.username = username
        self.releases = releases
        self.countries = countries or {}
        self.failing_pages = set(failing_pages)
        self.throttled_releases = set(throttled_releases)
        self.failing_releases = set(failing_releases)
        self.requests: list[httpx.Request] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == f"/users/{self.username}/collection/folders/0/releases":
            page = int(request.url.params["page"])
            per_page = int(request.url.params["per_page"])
            if page in self.failing_pages:
                return httpx.Response(status_code=500, json={"message": "boom"}, request=request)
            start = (page - 1) * per_page
            return httpx.Response(
                status_code=200,
                json={
                    "pagination": {
                        "page": page,
                        "pages": max(1, math.ceil(len(self.releases) / per_page)),
                        "per_page": per_page,
                        "items": len(self.releases),
                    },
                    "releases": self.releases[start : start + per_page],
                },
                request=request,
            )
        if path.startswith("/releases/"):
            release_id = int(path.rsplit("/", maxsplit=1)[1])
            if release_id in self.throttled_releases:
                return httpx.Response(status_code=429, json={"message": "slow down"}, request=request)
            if release_id in self.failing_releases:
                return httpx.Response(status_code=502, request=request)
            return httpx.Response(
                status_code=200,
                json={"id": release_id, "country": self.countries.get(release_id)},
                request=request,
            )
        return httpx.Response(status_code=404, request=request)

    def client(
        self,
        *,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        max_retries: int = 3,
        request_delay_seconds: float = 1.5,
    ) -> DiscogsClient:
        return DiscogsClient(
            BASE_URL,
            user_agent="discogs-atlas-tests/1.0",
            request_delay_seconds=request_delay_seconds,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
            sleep=sleep or RecordingSleep(),
            max_retries=max_retries,
        )

    def page_requests(self) -> list[int]:
        return [
            int(request.url.params["page"])
            for request in self.requests
            if request.url.path.endswith("/collection/folders/0/releases")
        ]

    def release_requests(self) -> list[int]:
        return [
            int(request.url.path.rsplit("/", maxsplit=1)[1])
            for request in self.requests
            if request.url.path.startswith("/releases/")
        ]
