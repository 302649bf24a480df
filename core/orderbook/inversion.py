"""Derive the complementary ("no") book from the aggregated "yes" book.

A "no" bid at p is the same trade as a "yes" ask at 1 - p, and a "no" ask at
p is a "yes" bid at 1 - p. Sizes and venue contributions carry over as-is.
"""

from __future__ import annotations

from typing import Iterable

from core.orderbook.aggregator import PRICE_KEY_SCALE, price_key, round_to_tick, summarize, with_cumulative
from core.types import AggregatedBook, AggregatedLevel, Outcome, VenueId


def _flip(levels: Iterable[AggregatedLevel], *, descending: bool) -> tuple[AggregatedLevel, ...]:
    merged: dict[int, dict[VenueId, float]] = {}
    for level in levels:
        key = price_key(round_to_tick(1.0 - level.price))
        venues = merged.setdefault(key, {})
        for venue_id, size in level.venue_contributions.items():
            venues[venue_id] = venues.get(venue_id, 0.0) + size

    flipped = [
        AggregatedLevel(
            price=key / PRICE_KEY_SCALE,
            total_size=sum(venues.values()),
            cumulative_size=0.0,
            venue_contributions=venues,
        )
        for key, venues in merged.items()
    ]
    flipped.sort(key=lambda level: level.price, reverse=descending)
    return with_cumulative(flipped)


def invert_to_no(book: AggregatedBook) -> AggregatedBook:
    if book.is_empty:
        return book

    no_bids = _flip(book.asks, descending=True)
    no_asks = _flip(book.bids, descending=False)
    return summarize(no_bids, no_asks)


def book_for_outcome(book: AggregatedBook, outcome: Outcome) -> AggregatedBook:
    if outcome == "yes":
        return book
    if outcome == "no":
        return invert_to_no(book)
    raise ValueError(f"Unsupported outcome: {outcome}")
