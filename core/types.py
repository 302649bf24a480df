from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping, Optional

VenueId = Literal["polymarket", "dflow"]
ConnectionStatus = Literal["connecting", "connected", "disconnected"]
Outcome = Literal["yes", "no"]
QuoteSide = Literal["buy", "sell"]

VENUES: tuple[VenueId, ...] = ("polymarket", "dflow")


@dataclass(frozen=True)
class NormalizedLevel:
    price: float  # (0, 1)
    size: float


@dataclass(frozen=True)
class NormalizedBook:
    """Latest book of a single venue, always expressed in "yes" terms."""

    venue_id: VenueId
    bids: tuple[NormalizedLevel, ...]  # strictly descending price
    asks: tuple[NormalizedLevel, ...]  # strictly ascending price
    timestamp: int  # epoch ms
    outcome: Outcome = "yes"

    def to_message(self) -> dict[str, object]:
        return {
            "type": "book",
            "venueId": self.venue_id,
            "outcome": self.outcome,
            "bids": [{"price": level.price, "size": level.size} for level in self.bids],
            "asks": [{"price": level.price, "size": level.size} for level in self.asks],
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class AggregatedLevel:
    price: float
    total_size: float
    cumulative_size: float
    venue_contributions: Mapping[VenueId, float] = field(default_factory=dict)


@dataclass(frozen=True)
class AggregatedBook:
    bids: tuple[AggregatedLevel, ...] = ()
    asks: tuple[AggregatedLevel, ...] = ()
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    spread: float = 0.0
    mid_price: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.bids and not self.asks


@dataclass(frozen=True)
class Fill:
    venue_id: VenueId
    price: float
    shares: float
    cost: float


@dataclass(frozen=True)
class VenueFillSummary:
    venue_id: VenueId
    shares: float
    cost: float
    percentage: float


@dataclass(frozen=True)
class QuoteResult:
    total_shares: float
    total_cost: float
    average_price: float
    fills: tuple[Fill, ...]
    per_venue_breakdown: tuple[VenueFillSummary, ...]
    unfilled: float
    slippage_bps: float


@dataclass(frozen=True)
class BookEvent:
    venue_id: VenueId
    bids: tuple[NormalizedLevel, ...]
    asks: tuple[NormalizedLevel, ...]
    timestamp: int
    outcome: Outcome = "yes"

    def to_book(self) -> NormalizedBook:
        return NormalizedBook(
            venue_id=self.venue_id,
            outcome=self.outcome,
            bids=self.bids,
            asks=self.asks,
            timestamp=self.timestamp,
        )

    def to_message(self) -> dict[str, object]:
        return self.to_book().to_message()


@dataclass(frozen=True)
class StatusEvent:
    venue_id: VenueId
    status: ConnectionStatus

    def to_message(self) -> dict[str, object]:
        return {"type": "status", "venueId": self.venue_id, "status": self.status}
