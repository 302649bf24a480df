"""Merge per-venue books into one cross-venue book at tick resolution."""

from __future__ import annotations

import math
from typing import Iterable, Literal, Optional, Sequence

from core.types import AggregatedBook, AggregatedLevel, NormalizedBook, NormalizedLevel, VenueId

PRICE_TICK_SIZE = 0.01
PRICE_KEY_SCALE = 10_000

BookSide = Literal["bids", "asks"]

EMPTY_BOOK = AggregatedBook()


def round_to_tick(price: float, tick: float = PRICE_TICK_SIZE) -> float:
    # Halves round up (0.125 -> 0.13), not to even
    return math.floor(price / tick + 0.5) * tick


def price_key(price: float) -> int:
    """Integer bucket key for a tick-rounded price.

    Float prices are never used as dict keys: 0.1 + 0.2 style representation
    error would otherwise split one tick into two buckets.
    """
    return round(price * PRICE_KEY_SCALE)


def with_cumulative(levels: Iterable[AggregatedLevel]) -> tuple[AggregatedLevel, ...]:
    """Rebuild levels with running cumulative size, best level first."""
    cumulative = 0.0
    result: list[AggregatedLevel] = []
    for level in levels:
        cumulative += level.total_size
        result.append(
            AggregatedLevel(
                price=level.price,
                total_size=level.total_size,
                cumulative_size=cumulative,
                venue_contributions=dict(level.venue_contributions),
            )
        )
    return tuple(result)


def summarize(bids: Sequence[AggregatedLevel], asks: Sequence[AggregatedLevel]) -> AggregatedBook:
    """Derive best bid/ask, spread and mid from already sorted sides."""
    best_bid: Optional[float] = bids[0].price if bids else None
    best_ask: Optional[float] = asks[0].price if asks else None

    if best_bid is not None and best_ask is not None:
        spread = best_ask - best_bid
        mid_price = (best_bid + best_ask) / 2
    else:
        spread = 0.0
        # One-sided book: mid falls back to whichever side exists
        mid_price = best_bid if best_bid is not None else (best_ask if best_ask is not None else 0.0)

    return AggregatedBook(
        bids=tuple(bids),
        asks=tuple(asks),
        best_bid=best_bid,
        best_ask=best_ask,
        spread=spread,
        mid_price=mid_price,
    )


def _side_levels(book: NormalizedBook, side: BookSide) -> Sequence[NormalizedLevel]:
    return book.bids if side == "bids" else book.asks


def aggregate_side(books: Sequence[NormalizedBook], side: BookSide) -> tuple[AggregatedLevel, ...]:
    buckets: dict[int, dict[VenueId, float]] = {}

    for book in books:
        for level in _side_levels(book, side):
            if level.size <= 0:
                continue
            key = price_key(round_to_tick(level.price))
            venues = buckets.setdefault(key, {})
            venues[book.venue_id] = venues.get(book.venue_id, 0.0) + level.size

    levels = [
        AggregatedLevel(
            price=key / PRICE_KEY_SCALE,
            total_size=sum(venues.values()),
            cumulative_size=0.0,
            venue_contributions=venues,
        )
        for key, venues in buckets.items()
    ]
    levels.sort(key=lambda level: level.price, reverse=(side == "bids"))
    return with_cumulative(levels)


def aggregate_books(books: Iterable[Optional[NormalizedBook]]) -> AggregatedBook:
    """Merge the latest book of every venue into one `AggregatedBook`.

    Missing venues (None) are skipped. Books are processed in venue order so
    the result does not depend on the order of `books`.
    """
    valid = sorted((book for book in books if book is not None), key=lambda book: book.venue_id)
    if not valid:
        return EMPTY_BOOK

    return summarize(aggregate_side(valid, "bids"), aggregate_side(valid, "asks"))
