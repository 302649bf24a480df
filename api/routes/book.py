"""Aggregated book, quote and venue status endpoints."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from api.websocket.manager import get_book_store
from core.config import get_feed_config
from core.orderbook import book_for_outcome, calculate_quote
from core.types import AggregatedBook, AggregatedLevel, QuoteResult, VenueId

router = APIRouter(tags=["orderbook"])


class LevelResponse(BaseModel):
    price: float
    total_size: float
    cumulative_size: float
    venue_contributions: dict[str, float]


class BookResponse(BaseModel):
    outcome: Literal["yes", "no"]
    venue: Optional[str] = None
    bids: list[LevelResponse]
    asks: list[LevelResponse]
    best_bid: Optional[float] = None
    best_ask: Optional[float] = None
    spread: float
    mid_price: float


class QuoteRequest(BaseModel):
    notional: float = Field(..., ge=0)
    side: Literal["buy", "sell"] = "buy"
    outcome: Literal["yes", "no"] = "yes"
    venue: Optional[Literal["polymarket", "dflow"]] = None


class FillResponse(BaseModel):
    venue_id: str
    price: float
    shares: float
    cost: float


class VenueFillResponse(BaseModel):
    venue_id: str
    shares: float
    cost: float
    percentage: float


class QuoteResponse(BaseModel):
    total_shares: float
    total_cost: float
    average_price: float
    fills: list[FillResponse]
    per_venue_breakdown: list[VenueFillResponse]
    unfilled: float
    slippage_bps: float


class VenueStatusResponse(BaseModel):
    venue_id: str
    status: str
    stale: bool
    last_update_ms: Optional[int] = None


def _level_response(level: AggregatedLevel) -> LevelResponse:
    return LevelResponse(
        price=level.price,
        total_size=level.total_size,
        cumulative_size=level.cumulative_size,
        venue_contributions=dict(level.venue_contributions),
    )


def _book_response(book: AggregatedBook, *, outcome: str, venue: Optional[str]) -> BookResponse:
    return BookResponse(
        outcome=outcome,
        venue=venue,
        bids=[_level_response(level) for level in book.bids],
        asks=[_level_response(level) for level in book.asks],
        best_bid=book.best_bid,
        best_ask=book.best_ask,
        spread=book.spread,
        mid_price=book.mid_price,
    )


def _quote_response(result: QuoteResult) -> QuoteResponse:
    return QuoteResponse(
        total_shares=result.total_shares,
        total_cost=result.total_cost,
        average_price=result.average_price,
        fills=[
            FillResponse(venue_id=fill.venue_id, price=fill.price, shares=fill.shares, cost=fill.cost)
            for fill in result.fills
        ],
        per_venue_breakdown=[
            VenueFillResponse(
                venue_id=summary.venue_id,
                shares=summary.shares,
                cost=summary.cost,
                percentage=summary.percentage,
            )
            for summary in result.per_venue_breakdown
        ],
        unfilled=result.unfilled,
        slippage_bps=result.slippage_bps,
    )


def _selected_book(outcome: str, venue: Optional[VenueId]) -> AggregatedBook:
    store = get_book_store()
    try:
        book = store.aggregated(venue)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return book_for_outcome(book, outcome)


@router.get("/book", response_model=BookResponse)
async def get_book(
    outcome: Literal["yes", "no"] = Query("yes", description="Outcome side to view"),
    venue: Optional[Literal["polymarket", "dflow"]] = Query(None, description="Single venue view (default: combined)"),
) -> BookResponse:
    book = _selected_book(outcome, venue)
    return _book_response(book, outcome=outcome, venue=venue)


@router.post("/quote", response_model=QuoteResponse)
async def post_quote(request: QuoteRequest) -> QuoteResponse:
    """Simulate filling a dollar notional against the aggregated book."""
    book = _selected_book(request.outcome, request.venue)
    result = calculate_quote(book, request.notional, request.side)
    return _quote_response(result)


@router.get("/venues", response_model=list[VenueStatusResponse])
async def get_venues() -> list[VenueStatusResponse]:
    store = get_book_store()
    config = get_feed_config()
    snapshot = store.snapshot()

    venues = []
    for venue_id, status in snapshot.statuses.items():
        last_update = snapshot.last_update.get(venue_id)
        venues.append(
            VenueStatusResponse(
                venue_id=venue_id,
                status=status,
                stale=store.is_stale(venue_id, stale_after_seconds=config.stale_after_seconds),
                last_update_ms=int(last_update * 1000) if last_update is not None else None,
            )
        )
    return venues
