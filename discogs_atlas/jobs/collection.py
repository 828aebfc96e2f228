from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from discogs_atlas.schemas.jobs import CollectionItem, LabelRef
from discogs_atlas.services.discogs_client import DiscogsClient, DiscogsResponseError


@dataclass(slots=True)
class CollectionProgress:
    pages_fetched: int
    total_pages: int
    total_items: int


@dataclass(slots=True)
class CollectedCollection:
    items: list[CollectionItem]
    total_pages: int
    total_items: int


PageCallback = Callable[[CollectionProgress], Awaitable[None]]


async def collect_collection(
    client: DiscogsClient,
    username: str,
    *,
    page_size: int = 50,
    on_page: PageCallback | None = None,
    before_page: Callable[[], Awaitable[None]] | None = None,
) -> CollectedCollection:
    """Fetch every page of a user's collection, in page order.

    Page 1 reports the page and item totals; pages 2..N follow one at a time.
    Any failing page aborts the whole collection. ``before_page`` is awaited
    ahead of every page request.
    """
    if before_page is not None:
        await before_page()
    first_page = await client.get_collection_page(username, page=1, per_page=page_size)
    total_pages = first_page["pagination"]["pages"]
    total_items = first_page["pagination"]["items"]
    items = parse_collection_items(first_page["releases"])
    if on_page is not None:
        await on_page(CollectionProgress(pages_fetched=1, total_pages=total_pages, total_items=total_items))

    for page in range(2, total_pages + 1):
        if before_page is not None:
            await before_page()
        page_payload = await client.get_collection_page(username, page=page, per_page=page_size)
        items.extend(parse_collection_items(page_payload["releases"]))
        if on_page is not None:
            await on_page(CollectionProgress(pages_fetched=page, total_pages=total_pages, total_items=total_items))

    return CollectedCollection(items=items, total_pages=total_pages, total_items=total_items)


def parse_collection_items(releases: list[Any]) -> list[CollectionItem]:
    items: list[CollectionItem] = []
    for release in releases:
        if not isinstance(release, dict):
            raise DiscogsResponseError("collection release entry is not an object")
        basic_information = release.get("basic_information")
        raw_labels = basic_information.get("labels") if isinstance(basic_information, dict) else None
        try:
            labels = [
                LabelRef(id=int(label["id"]), name=str(label.get("name") or ""))
                for label in (raw_labels or [])
                if isinstance(label, dict) and label.get("id") is not None
            ]
            items.append(CollectionItem(id=int(release["id"]), labels=labels))
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            raise DiscogsResponseError(f"malformed collection release: {exc}") from exc
    return items
