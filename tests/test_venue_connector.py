"""Lifecycle tests for venue feed connectors using a fake socket."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from core.config import FeedConfig
from core.market_data.base import ConnectorState, DiscoveryError, Instrument, calc_reconnect_delay
from core.market_data.dflow import DFlowConnector
from core.market_data.polymarket import PolymarketConnector
from conftest import FakeSocket, wait_until

TOKEN = "token-yes"
NOW = 1_000.0


def _config(**overrides) -> FeedConfig:
    values = {
        "reconnect_base_seconds": 0.01,
        "reconnect_max_seconds": 0.05,
        "discovery_retry_seconds": 0.02,
        "heartbeat_interval_seconds": 0.02,
        "rotation_grace_seconds": 0.01,
        "dflow_api_key": "test-key",
    }
    values.update(overrides)
    return FeedConfig(**values)


class Recorder:
    def __init__(self) -> None:
        self.books = []
        self.statuses: list[str] = []

    async def on_book(self, event) -> None:
        self.books.append(event)

    async def on_status(self, event) -> None:
        self.statuses.append(event.status)


class SocketFactory:
    """Replacement for `websockets.connect` handing out fresh fake sockets."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, dict]] = []
        self.sockets: list[FakeSocket] = []

    def __call__(self, url: str, **kwargs) -> FakeSocket:
        self.calls.append((url, kwargs))
        if self.fail:
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket


def _polymarket(recorder: Recorder, discover, **config) -> PolymarketConnector:
    connector = PolymarketConnector(
        config=_config(**config),
        on_book=recorder.on_book,
        on_status=recorder.on_status,
        clock=lambda: NOW,
    )
    connector.discover = discover
    return connector


def _book_message(bid: str = "0.48") -> str:
    return json.dumps(
        {
            "event_type": "book",
            "asset_id": TOKEN,
            "bids": [{"price": bid, "size": "100"}],
            "asks": [{"price": "0.52", "size": "50"}],
        }
    )


def test_reconnect_delay_doubles_up_to_cap() -> None:
    delays = [calc_reconnect_delay(n, base=1.0, maximum=30.0) for n in range(1, 8)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert calc_reconnect_delay(50) == 30.0


@pytest.mark.asyncio
async def test_start_discovers_connects_and_subscribes() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    connector = _polymarket(recorder, AsyncMock(return_value=Instrument(TOKEN)))

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.state is ConnectorState.CONNECTED)

        url, kwargs = factory.calls[0]
        assert url == connector.config.polymarket_ws_url
        assert kwargs["ping_interval"] == 20
        assert json.loads(factory.sockets[0].sent[0]) == {
            "assets_ids": [TOKEN],
            "type": "market",
            "custom_feature_enabled": True,
        }
        assert recorder.statuses == ["connecting", "connected"]
        assert connector.instrument == Instrument(TOKEN)

        await connector.stop()


@pytest.mark.asyncio
async def test_messages_emit_books_and_noise_is_dropped() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    connector = _polymarket(recorder, AsyncMock(return_value=Instrument(TOKEN)))

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.state is ConnectorState.CONNECTED)
        socket = factory.sockets[0]

        socket.feed(_book_message("0.48"))
        socket.feed("PONG")
        socket.feed("{not json")
        socket.feed(json.dumps({"event_type": "book", "asset_id": "someone-else", "bids": [], "asks": []}))
        socket.feed(_book_message("0.49"))
        await wait_until(lambda: len(recorder.books) >= 2)

        assert len(recorder.books) == 2
        first, second = recorder.books
        assert first.venue_id == "polymarket"
        assert first.bids[0].price == pytest.approx(0.48)
        assert second.bids[0].price == pytest.approx(0.49)
        assert second.timestamp == int(NOW * 1000)
        assert connector.state is ConnectorState.CONNECTED

        await connector.stop()


@pytest.mark.asyncio
async def test_socket_close_reconnects_and_resets_attempts() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    discover = AsyncMock(return_value=Instrument(TOKEN))
    connector = _polymarket(recorder, discover)

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.state is ConnectorState.CONNECTED)

        factory.sockets[0].end()
        await wait_until(lambda: len(factory.sockets) == 2 and connector.state is ConnectorState.CONNECTED)

        assert recorder.statuses == ["connecting", "connected", "disconnected", "connecting", "connected"]
        assert discover.await_count == 2
        assert connector.reconnect_attempts == 0

        await connector.stop()


@pytest.mark.asyncio
async def test_failed_connects_back_off_and_count_attempts() -> None:
    recorder = Recorder()
    factory = SocketFactory(fail=True)
    discover = AsyncMock(return_value=Instrument(TOKEN))
    connector = _polymarket(recorder, discover)

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.reconnect_attempts >= 3)

        assert len(factory.calls) >= 3
        assert "connected" not in recorder.statuses
        # Status changes are only reported when the value differs
        assert all(a != b for a, b in zip(recorder.statuses, recorder.statuses[1:]))

        await connector.stop()


@pytest.mark.asyncio
async def test_discovery_failure_retries_without_backoff_attempts() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    discover = AsyncMock(side_effect=[DiscoveryError("gamma down"), Instrument(TOKEN)])
    connector = _polymarket(recorder, discover)

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.state is ConnectorState.CONNECTED)

        assert discover.await_count == 2
        assert connector.reconnect_attempts == 0
        assert recorder.statuses == ["connecting", "connected"]

        await connector.stop()


@pytest.mark.asyncio
async def test_no_instrument_waits_and_retries() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    discover = AsyncMock(side_effect=[None, Instrument(TOKEN)])
    connector = _polymarket(recorder, discover)
    connector.no_instrument_retry_seconds = 0.02

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await asyncio.sleep(0)
        assert factory.calls == []

        await wait_until(lambda: connector.state is ConnectorState.CONNECTED)
        assert discover.await_count == 2
        assert len(factory.calls) == 1

        await connector.stop()


@pytest.mark.asyncio
async def test_rotation_switches_to_next_instrument() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    expiring = Instrument("token-old", expiry=NOW)
    upcoming = Instrument("token-new", expiry=None)
    discover = AsyncMock(side_effect=[expiring, upcoming])
    connector = _polymarket(recorder, discover)

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.instrument == upcoming and connector.state is ConnectorState.CONNECTED)

        assert factory.sockets[0].closed is True
        assert json.loads(factory.sockets[1].sent[0])["assets_ids"] == ["token-new"]
        assert recorder.statuses == ["connecting", "connected", "connecting", "connected"]
        assert connector.reconnect_attempts == 0

        await connector.stop()


@pytest.mark.asyncio
async def test_heartbeat_sends_ping_while_connected() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    connector = _polymarket(recorder, AsyncMock(return_value=Instrument(TOKEN)))

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: "PING" in (factory.sockets[0].sent if factory.sockets else []))

        await connector.stop()


@pytest.mark.asyncio
async def test_dflow_sends_api_key_and_no_heartbeat() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    connector = DFlowConnector(
        config=_config(),
        on_book=recorder.on_book,
        on_status=recorder.on_status,
        clock=lambda: NOW,
    )
    connector.discover = AsyncMock(return_value=Instrument("KXBTC15M-NOW"))

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.state is ConnectorState.CONNECTED)

        factory.sockets[0].feed(
            json.dumps({"channel": "orderbook", "market_ticker": "KXBTC15M-NOW", "yes_bids": {"0.40": 10}, "no_bids": {"0.55": 5}})
        )
        await wait_until(lambda: len(recorder.books) == 1)
        await asyncio.sleep(0.06)

        assert factory.calls[0][1]["additional_headers"] == {"x-api-key": "test-key"}
        assert factory.sockets[0].sent == [
            json.dumps({"type": "subscribe", "channel": "orderbook", "tickers": ["KXBTC15M-NOW"]})
        ]
        assert recorder.books[0].asks[0].price == pytest.approx(0.45)

        await connector.stop()


@pytest.mark.asyncio
async def test_stop_is_terminal_and_idempotent() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    discover = AsyncMock(return_value=Instrument(TOKEN, expiry=NOW + 3600))
    connector = _polymarket(recorder, discover)

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.state is ConnectorState.CONNECTED)
        statuses_before = list(recorder.statuses)

        await connector.stop()
        await connector.stop()
        factory.sockets[0].feed(_book_message())
        await connector.start()
        await asyncio.sleep(0.05)

        assert connector.state is ConnectorState.STOPPED
        assert factory.sockets[0].closed is True
        assert recorder.books == []
        assert recorder.statuses == statuses_before
        assert discover.await_count == 1
        assert len(factory.calls) == 1


@pytest.mark.asyncio
async def test_stop_during_discovery_cancels_cleanly() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    gate = asyncio.Event()

    async def slow_discover() -> Instrument:
        await gate.wait()
        return Instrument(TOKEN)

    connector = _polymarket(recorder, slow_discover)

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await asyncio.sleep(0.01)
        await connector.stop()
        gate.set()
        await asyncio.sleep(0.02)

        assert factory.calls == []
        assert recorder.statuses == ["connecting"]


@pytest.mark.asyncio
async def test_stop_during_backoff_prevents_reconnect() -> None:
    recorder = Recorder()
    factory = SocketFactory(fail=True)
    discover = AsyncMock(return_value=Instrument(TOKEN))
    connector = _polymarket(recorder, discover, reconnect_base_seconds=0.05)

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.reconnect_attempts == 1)
        await connector.stop()
        calls = discover.await_count
        await asyncio.sleep(0.15)

        assert discover.await_count == calls
        assert connector.state is ConnectorState.STOPPED


@pytest.mark.asyncio
async def test_callback_errors_do_not_break_the_feed() -> None:
    recorder = Recorder()
    factory = SocketFactory()
    connector = _polymarket(recorder, AsyncMock(return_value=Instrument(TOKEN)))
    calls = []

    async def flaky_on_book(event) -> None:
        calls.append(event)
        if len(calls) == 1:
            raise RuntimeError("subscriber failed")

    connector._on_book = flaky_on_book

    with patch("core.market_data.base.websockets.connect", new=factory):
        await connector.start()
        await wait_until(lambda: connector.state is ConnectorState.CONNECTED)
        factory.sockets[0].feed(_book_message("0.47"))
        factory.sockets[0].feed(_book_message("0.48"))
        await wait_until(lambda: len(calls) == 2)

        assert connector.state is ConnectorState.CONNECTED

        await connector.stop()
