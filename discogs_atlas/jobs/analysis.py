from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence

from discogs_atlas.core.countries import UNKNOWN_COUNTRY, normalize_country
from discogs_atlas.schemas.jobs import CollectionItem, LabelRef, LabelRow
from discogs_atlas.services.discogs_client import DiscogsClient, DiscogsClientError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]


def label_row_key(label_id: int, country: str) -> str:
    return f"{label_id}::{country}"


class LabelAggregates:
    """Running per-country tally and per-(label, country) release counts.

    The country tally moves by one per item; label rows move by one per
    attributed label, so an item without labels still counts toward its country.
    """

    def __init__(
        self,
        country_counts: dict[str, int] | None = None,
        label_rows: Iterable[LabelRow] | None = None,
    ) -> None:
        self.country_counts: dict[str, int] = dict(country_counts or {})
        self._rows: dict[str, LabelRow] = {row.key: row.model_copy() for row in label_rows or []}

    def add(self, country: str, labels: Sequence[LabelRef]) -> None:
        self.country_counts[country] = self.country_counts.get(country, 0) + 1
        for label in labels:
            key = label_row_key(label.id, country)
            existing = self._rows.get(key)
            if existing is not None:
                existing.release_count += 1
                continue
            self._rows[key] = LabelRow(
                key=key,
                label_id=label.id,
                label_name=label.name,
                country=country,
                release_count=1,
            )

    @property
    def label_rows(self) -> list[LabelRow]:
        return [row.model_copy() for row in self._rows.values()]

    def sorted_label_rows(self) -> list[LabelRow]:
        # sorted() is stable, so ties keep first-seen order.
        return sorted(self.label_rows, key=lambda row: row.release_count, reverse=True)


def labels_for_item(item: CollectionItem, all_labels: bool) -> list[LabelRef]:
    if all_labels:
        return list(item.labels)
    return item.labels[:1]


async def resolve_country(client: DiscogsClient, item: CollectionItem) -> str:
    try:
        release = await client.get_release(item.id)
    except DiscogsClientError as exc:
        logger.warning("failed to fetch release id=%s; country falls back to %s: %s", item.id, UNKNOWN_COUNTRY, exc)
        return UNKNOWN_COUNTRY
    return normalize_country(release.get("country"))


async def analyze_items(
    client: DiscogsClient,
    items: Sequence[CollectionItem],
    aggregates: LabelAggregates,
    *,
    all_labels: bool = False,
    start: int = 0,
    on_progress: ProgressCallback | None = None,
    before_item: Callable[[], Awaitable[None]] | None = None,
    progress_interval: int = 5,
) -> int:
    """Resolve each item's country and fold it into ``aggregates``.

    ``start`` is the number of items already processed before this call.
    ``on_progress`` is awaited every ``progress_interval`` items and after the
    last one. ``before_item`` is awaited ahead of every lookup, which lets the
    caller keep its lease alive through long throttling waits. Returns the
    running processed count.
    """
    interval = max(1, progress_interval)
    processed = start
    last = start + len(items)
    for item in items:
        if before_item is not None:
            await before_item()
        country = await resolve_country(client, item)
        aggregates.add(country, labels_for_item(item, all_labels))
        processed += 1
        if on_progress is not None and (processed % interval == 0 or processed == last):
            await on_progress(processed)
    return processed
