"""Cross-venue order book aggregation, outcome inversion and quoting."""

from core.orderbook.aggregator import PRICE_TICK_SIZE, aggregate_books, round_to_tick
from core.orderbook.inversion import book_for_outcome, invert_to_no
from core.orderbook.quote import calculate_quote
from core.orderbook.store import BookStore, StoreSnapshot

__all__ = [
    "PRICE_TICK_SIZE",
    "aggregate_books",
    "round_to_tick",
    "invert_to_no",
    "book_for_outcome",
    "calculate_quote",
    "BookStore",
    "StoreSnapshot",
]
