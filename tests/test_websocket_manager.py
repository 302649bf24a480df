from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from api.websocket.manager import BookWebSocketManager, get_book_store
from core.config import FeedConfig
from core.orderbook.store import BookStore
from core.types import BookEvent, NormalizedLevel, StatusEvent


def _event(venue_id: str = "polymarket", bid: float = 0.48) -> BookEvent:
    return BookEvent(
        venue_id=venue_id,
        bids=(NormalizedLevel(price=bid, size=100.0),),
        asks=(NormalizedLevel(price=0.52, size=50.0),),
        timestamp=1_700_000_000_000,
    )


@pytest.mark.asyncio
async def test_book_events_update_store_and_broadcast() -> None:
    store = BookStore()
    manager = BookWebSocketManager(store=store)
    websocket = AsyncMock()
    await manager.connect(websocket)
    websocket.send_json.reset_mock()

    await manager.handle_book(_event())

    assert store.snapshot().books["polymarket"].bids[0].price == 0.48
    assert store.aggregated().best_bid == pytest.approx(0.48)
    websocket.send_json.assert_awaited_once_with(
        {
            "type": "book",
            "venueId": "polymarket",
            "outcome": "yes",
            "bids": [{"price": 0.48, "size": 100.0}],
            "asks": [{"price": 0.52, "size": 50.0}],
            "timestamp": 1_700_000_000_000,
        }
    )


@pytest.mark.asyncio
async def test_status_broadcast_only_on_change() -> None:
    manager = BookWebSocketManager(store=BookStore())
    websocket = AsyncMock()
    await manager.connect(websocket)
    websocket.send_json.reset_mock()

    await manager.handle_status(StatusEvent(venue_id="dflow", status="connecting"))
    await manager.handle_status(StatusEvent(venue_id="dflow", status="connecting"))
    await manager.handle_status(StatusEvent(venue_id="dflow", status="connected"))

    sent = [call.args[0] for call in websocket.send_json.await_args_list]
    assert sent == [
        {"type": "status", "venueId": "dflow", "status": "connecting"},
        {"type": "status", "venueId": "dflow", "status": "connected"},
    ]


@pytest.mark.asyncio
async def test_new_client_receives_current_state() -> None:
    store = BookStore()
    manager = BookWebSocketManager(store=store)
    await manager.handle_status(StatusEvent(venue_id="polymarket", status="connected"))
    await manager.handle_book(_event("polymarket"))

    websocket = AsyncMock()
    await manager.connect(websocket)

    sent = [call.args[0] for call in websocket.send_json.await_args_list]
    assert {"type": "status", "venueId": "polymarket", "status": "connected"} in sent
    assert {"type": "status", "venueId": "dflow", "status": "disconnected"} in sent
    assert [message["venueId"] for message in sent if message["type"] == "book"] == ["polymarket"]


@pytest.mark.asyncio
async def test_failed_subscriber_is_dropped() -> None:
    manager = BookWebSocketManager(store=BookStore())
    healthy = AsyncMock()
    broken = AsyncMock()
    await manager.connect(healthy)
    await manager.connect(broken)
    broken.send_json.side_effect = RuntimeError("socket closed")

    await manager.handle_book(_event())

    assert await manager.connection_count() == 1
    healthy.send_json.reset_mock()
    await manager.handle_book(_event(bid=0.49))
    healthy.send_json.assert_awaited_once()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent() -> None:
    manager = BookWebSocketManager(store=BookStore())
    websocket = AsyncMock()
    await manager.connect(websocket)

    await manager.disconnect(websocket)
    await manager.disconnect(websocket)

    assert await manager.connection_count() == 0


class SlowSocket:
    """Subscriber whose sends take a while, so updates can land mid-replay."""

    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.first_send = asyncio.Event()

    async def send_json(self, data: dict) -> None:
        self.first_send.set()
        await asyncio.sleep(0.01)
        self.messages.append(data)


@pytest.mark.asyncio
async def test_update_during_replay_is_delivered_after_it() -> None:
    manager = BookWebSocketManager(store=BookStore())
    await manager.handle_book(_event(bid=0.40))
    websocket = SlowSocket()

    connecting = asyncio.create_task(manager.connect(websocket))
    await websocket.first_send.wait()
    await manager.handle_book(_event(bid=0.45))
    await connecting

    books = [message for message in websocket.messages if message["type"] == "book"]
    assert books[-1]["bids"][0]["price"] == 0.45
    assert await manager.connection_count() == 1


@pytest.mark.asyncio
async def test_failed_replay_does_not_register_client() -> None:
    manager = BookWebSocketManager(store=BookStore())
    websocket = AsyncMock()
    websocket.send_json.side_effect = RuntimeError("socket closed")

    await manager.connect(websocket)

    assert await manager.connection_count() == 0


def test_store_only_tracks_enabled_venues() -> None:
    with patch("api.websocket.manager._book_store", None), patch(
        "api.websocket.manager.get_feed_config", return_value=FeedConfig()
    ):
        assert get_book_store().venues == ("polymarket",)
        assert set(get_book_store().snapshot().statuses) == {"polymarket"}

    with patch("api.websocket.manager._book_store", None), patch(
        "api.websocket.manager.get_feed_config", return_value=FeedConfig(dflow_api_key="key")
    ):
        assert get_book_store().venues == ("polymarket", "dflow")
