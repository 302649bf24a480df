"""FastAPI application distributing cross-venue order book data.

This module provides a minimal HTTP/WebSocket service for:
- WS  /ws - Live per-venue book and feed status events
- GET /book - Aggregated book (combined or single venue, yes/no outcome)
- POST /quote - Walk-the-book quote for a dollar notional
- GET /venues - Feed status and staleness per venue
- GET /health - Feed health summary

Environment:
- DFLOW_API_KEY enables the DFlow feed (Polymarket runs without credentials)
- No authentication (local network only)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from api.routes import book, health, ws
from api.websocket.manager import get_book_ws_manager
from core.config import get_feed_config
from core.market_data import VenueFeedConnector, build_connectors

logger = logging.getLogger(__name__)

_connectors: list[VenueFeedConnector] = []


async def start_feeds() -> list[VenueFeedConnector]:
    manager = get_book_ws_manager()
    connectors = build_connectors(
        get_feed_config(),
        on_book=manager.handle_book,
        on_status=manager.handle_status,
    )
    for connector in connectors:
        await connector.start()
    _connectors.extend(connectors)
    return connectors


async def stop_feeds() -> None:
    while _connectors:
        connector = _connectors.pop()
        await connector.stop()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await start_feeds()
    logger.info("Started %d venue feed(s)", len(_connectors))
    try:
        yield
    finally:
        await stop_feeds()
        logger.info("Venue feeds stopped")


app = FastAPI(
    title="Predbook API",
    description="Cross-venue prediction market order book aggregation and quotes",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(book.router)
app.include_router(ws.router)
