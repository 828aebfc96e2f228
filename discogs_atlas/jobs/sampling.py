from __future__ import annotations

import random
from collections.abc import Sequence
from typing import TypeVar

T = TypeVar("T")


def sample_items(items: Sequence[T], sample_size: int | None, rng: random.Random | None = None) -> list[T]:
    """Return a uniform random subset of ``sample_size`` items, or all of them.

    Draws without replacement via ``random.Random.sample``; pass a seeded
    ``rng`` for a reproducible subset. Order of the subset is arbitrary.
    """
    if sample_size is None or sample_size <= 0 or sample_size >= len(items):
        return list(items)
    source = rng if rng is not None else random.Random()
    return source.sample(list(items), sample_size)
