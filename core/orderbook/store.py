"""Latest book and connection status per venue, plus the derived aggregate."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Mapping, Optional

from core.orderbook.aggregator import EMPTY_BOOK, aggregate_books
from core.types import VENUES, AggregatedBook, ConnectionStatus, NormalizedBook, VenueId

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreSnapshot:
    """Immutable view of the store. A book and the aggregate built from it are
    always published together."""

    books: Mapping[VenueId, Optional[NormalizedBook]] = field(default_factory=dict)
    statuses: Mapping[VenueId, ConnectionStatus] = field(default_factory=dict)
    last_update: Mapping[VenueId, Optional[float]] = field(default_factory=dict)  # epoch seconds
    aggregated: AggregatedBook = EMPTY_BOOK


class BookStore:
    """Single-writer-per-venue book store.

    Writers from different venue tasks are serialized by an asyncio lock so
    that "replace venue X's book, then recompute the aggregate" is atomic.
    Readers get the last published `StoreSnapshot` and never block.
    """

    def __init__(
        self,
        *,
        venues: Iterable[VenueId] = VENUES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        venue_ids = tuple(venues)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._snapshot = StoreSnapshot(
            books={venue_id: None for venue_id in venue_ids},
            statuses={venue_id: "disconnected" for venue_id in venue_ids},
            last_update={venue_id: None for venue_id in venue_ids},
        )

    @property
    def venues(self) -> tuple[VenueId, ...]:
        return tuple(self._snapshot.statuses)

    def snapshot(self) -> StoreSnapshot:
        return self._snapshot

    async def update_book(self, book: NormalizedBook) -> AggregatedBook:
        async with self._lock:
            current = self._snapshot
            books = {**current.books, book.venue_id: book}
            last_update = {**current.last_update, book.venue_id: self._clock()}
            aggregated = aggregate_books(books.values())
            self._snapshot = replace(current, books=books, last_update=last_update, aggregated=aggregated)
            return aggregated

    async def update_status(self, venue_id: VenueId, status: ConnectionStatus) -> bool:
        """Record a venue status. Returns False when the status is unchanged."""
        async with self._lock:
            current = self._snapshot
            if current.statuses.get(venue_id) == status:
                return False
            self._snapshot = replace(current, statuses={**current.statuses, venue_id: status})
        logger.info("Venue %s is %s", venue_id, status)
        return True

    def aggregated(self, venue_id: Optional[VenueId] = None) -> AggregatedBook:
        """Combined book, or the book of a single venue when `venue_id` is given."""
        snapshot = self._snapshot
        if venue_id is None:
            return snapshot.aggregated
        if venue_id not in snapshot.books:
            raise ValueError(f"Unknown venue: {venue_id}")
        return aggregate_books([snapshot.books[venue_id]])

    def is_stale(self, venue_id: VenueId, *, stale_after_seconds: float, now: Optional[float] = None) -> bool:
        """A connected venue whose last book is older than the threshold is stale."""
        snapshot = self._snapshot
        if snapshot.statuses.get(venue_id) != "connected":
            return False
        last = snapshot.last_update.get(venue_id)
        if last is None:
            return False
        current = self._clock() if now is None else now
        return current - last > stale_after_seconds
