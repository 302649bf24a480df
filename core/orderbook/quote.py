from __future__ import annotations

from core.types import AggregatedBook, Fill, QuoteResult, QuoteSide, VenueFillSummary, VenueId

BPS = 10_000
PERCENT = 100


def calculate_quote(book: AggregatedBook, notional: float, side: QuoteSide) -> QuoteResult:
    """Walk the aggregated book to fill a dollar notional.

    `buy` lifts asks from the lowest price up, `sell` hits bids from the
    highest price down. A level that cannot be fully paid for is split
    across venues in proportion to their size at that level, and the walk
    stops there.

    Args:
        book: Aggregated book for the outcome being traded
        notional: Dollar amount to spend (buy) or raise (sell)
        side: "buy" or "sell"

    Returns:
        QuoteResult with fills, per-venue breakdown, unfilled dollars and
        slippage against the book mid in basis points.

    Raises:
        ValueError: If notional is negative or side is unknown
    """
    if notional < 0:
        raise ValueError("notional must be non-negative")
    if side not in ("buy", "sell"):
        raise ValueError(f"Unsupported side: {side}")

    levels = book.asks if side == "buy" else book.bids
    remaining = float(notional)
    fills: list[Fill] = []

    for level in levels:
        if remaining <= 0:
            break

        level_cost = level.total_size * level.price
        if remaining >= level_cost:
            for venue_id, size in level.venue_contributions.items():
                fills.append(Fill(venue_id=venue_id, price=level.price, shares=size, cost=size * level.price))
            remaining -= level_cost
        else:
            shares_at_level = remaining / level.price
            for venue_id, size in level.venue_contributions.items():
                shares = shares_at_level * (size / level.total_size)
                fills.append(Fill(venue_id=venue_id, price=level.price, shares=shares, cost=shares * level.price))
            remaining = 0.0

    total_shares = sum(fill.shares for fill in fills)
    total_cost = sum(fill.cost for fill in fills)
    average_price = total_cost / total_shares if total_shares > 0 else 0.0

    per_venue: dict[VenueId, list[float]] = {}
    for fill in fills:
        totals = per_venue.setdefault(fill.venue_id, [0.0, 0.0])
        totals[0] += fill.shares
        totals[1] += fill.cost

    breakdown = tuple(
        VenueFillSummary(
            venue_id=venue_id,
            shares=shares,
            cost=cost,
            percentage=(cost / total_cost) * PERCENT if total_cost > 0 else 0.0,
        )
        for venue_id, (shares, cost) in per_venue.items()
    )

    # Sign convention: positive means the fill is worse than mid for the taker
    mid_price = book.mid_price
    if mid_price > 0 and average_price > 0:
        direction = 1 if side == "buy" else -1
        slippage_bps = ((average_price - mid_price) / mid_price) * BPS * direction
    else:
        slippage_bps = 0.0

    return QuoteResult(
        total_shares=total_shares,
        total_cost=total_cost,
        average_price=average_price,
        fills=tuple(fills),
        per_venue_breakdown=breakdown,
        unfilled=max(0.0, remaining),
        slippage_bps=slippage_bps,
    )
