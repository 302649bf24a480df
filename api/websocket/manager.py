from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

from core.config import get_feed_config
from core.market_data import enabled_venues
from core.orderbook.store import BookStore
from core.types import BookEvent, StatusEvent

logger = logging.getLogger(__name__)


class WebSocketLike(Protocol):
    async def send_json(self, data: object) -> None: ...


class BookWebSocketManager:
    """Fan venue book and status events out to WebSocket subscribers.

    Delivery is best-effort: a subscriber whose send fails is dropped.
    """

    def __init__(self, *, store: BookStore) -> None:
        self._store = store
        self._connections: set[WebSocketLike] = set()
        self._lock = asyncio.Lock()

    @property
    def store(self) -> BookStore:
        return self._store

    async def connection_count(self) -> int:
        async with self._lock:
            return len(self._connections)

    async def connect(self, websocket: WebSocketLike) -> None:
        # Replay current state so new clients do not wait for the next update.
        # Broadcasts wait on the lock, so anything newer than the snapshot
        # reaches this client after its replay.
        async with self._lock:
            snapshot = self._store.snapshot()
            try:
                for venue_id, status in snapshot.statuses.items():
                    await websocket.send_json(StatusEvent(venue_id=venue_id, status=status).to_message())
                    book = snapshot.books.get(venue_id)
                    if book is not None:
                        await websocket.send_json(book.to_message())
            except Exception:
                logger.warning("Failed to replay state to websocket", exc_info=True)
                return
            self._connections.add(websocket)
            total = len(self._connections)
        logger.info("WebSocket client connected (total: %d)", total)

    async def disconnect(self, websocket: WebSocketLike) -> None:
        async with self._lock:
            if websocket not in self._connections:
                return
            self._connections.discard(websocket)
            total = len(self._connections)
        logger.info("WebSocket client disconnected (total: %d)", total)

    async def handle_book(self, event: BookEvent) -> None:
        await self._store.update_book(event.to_book())
        await self.broadcast(event.to_message())

    async def handle_status(self, event: StatusEvent) -> None:
        changed = await self._store.update_status(event.venue_id, event.status)
        if changed:
            await self.broadcast(event.to_message())

    async def broadcast(self, payload: dict[str, object]) -> None:
        async with self._lock:
            connections = list(self._connections)

        failures: list[WebSocketLike] = []
        for websocket in connections:
            try:
                await websocket.send_json(payload)
            except Exception:
                logger.warning("Failed to send %s update to websocket", payload.get("type"), exc_info=True)
                failures.append(websocket)

        for websocket in failures:
            await self.disconnect(websocket)


_book_store: Optional[BookStore] = None
_book_ws_manager: Optional[BookWebSocketManager] = None


def get_book_store() -> BookStore:
    global _book_store
    if _book_store is None:
        _book_store = BookStore(venues=enabled_venues(get_feed_config()))
    return _book_store


def get_book_ws_manager() -> BookWebSocketManager:
    global _book_ws_manager
    if _book_ws_manager is None:
        _book_ws_manager = BookWebSocketManager(store=get_book_store())
    return _book_ws_manager
