"""Venue feed connector base.

One connector per venue owns the whole feed lifecycle:

    Disconnected -> Discovering -> Connected -> (socket lost) -> Disconnected
                        ^   |                                        |
                        |   +-- no instrument / failure: fixed retry |
                        +----------- backoff reconnect timer --------+

A rotation timer set to the instrument expiry tears the socket down and
re-enters discovery for the next instrument. `stop()` is terminal from any
state. Every continuation checks the `_stopped` guard before touching state
or emitting events.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Mapping, Optional, Sequence

import httpx
import websockets

from core.config import FeedConfig
from core.types import BookEvent, ConnectionStatus, NormalizedLevel, StatusEvent, VenueId

logger = logging.getLogger(__name__)

BookCallback = Callable[[BookEvent], Awaitable[None]]
StatusCallback = Callable[[StatusEvent], Awaitable[None]]

Side = Literal["bids", "asks"]

PRICE_MATCH_EPSILON = 1e-4


class ConnectorState(str, Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTED = "connected"
    STOPPED = "stopped"


class DiscoveryError(Exception):
    """Instrument discovery failed (HTTP error, timeout or malformed payload)."""


@dataclass(frozen=True)
class Instrument:
    instrument_id: str
    expiry: Optional[float] = None  # epoch seconds
    label: str = ""


def select_instrument(candidates: Sequence[Instrument], *, now: float) -> Optional[Instrument]:
    """Pick the instrument with the earliest future expiry, else the first listed."""
    if not candidates:
        return None
    upcoming = [item for item in candidates if item.expiry is not None and item.expiry > now]
    if upcoming:
        return min(upcoming, key=lambda item: item.expiry)
    return candidates[0]


def calc_reconnect_delay(attempts: int, *, base: float = 1.0, maximum: float = 30.0) -> float:
    return min(base * 2 ** (max(attempts, 1) - 1), maximum)


def parse_level(raw: Mapping[str, Any]) -> NormalizedLevel:
    return NormalizedLevel(price=float(raw["price"]), size=float(raw["size"]))


class LevelBook:
    """Mutable book for the current connection epoch of one venue."""

    def __init__(self) -> None:
        self.bids: list[NormalizedLevel] = []
        self.asks: list[NormalizedLevel] = []

    def clear(self) -> None:
        self.bids = []
        self.asks = []

    def replace(self, bids: Sequence[NormalizedLevel], asks: Sequence[NormalizedLevel]) -> None:
        self.bids = self._unique(bids)
        self.asks = self._unique(asks)
        self._sort()

    def apply_change(self, side: Side, price: float, size: float) -> None:
        levels = self.bids if side == "bids" else self.asks
        index = next(
            (i for i, level in enumerate(levels) if abs(level.price - price) < PRICE_MATCH_EPSILON),
            None,
        )
        if size <= 0:
            if index is not None:
                del levels[index]
        elif index is not None:
            levels[index] = NormalizedLevel(price=price, size=size)
        else:
            levels.append(NormalizedLevel(price=price, size=size))
        self._sort()

    def to_event(self, venue_id: VenueId, timestamp: int) -> BookEvent:
        return BookEvent(venue_id=venue_id, bids=tuple(self.bids), asks=tuple(self.asks), timestamp=timestamp)

    def _sort(self) -> None:
        self.bids.sort(key=lambda level: level.price, reverse=True)
        self.asks.sort(key=lambda level: level.price)

    @staticmethod
    def _unique(levels: Sequence[NormalizedLevel]) -> list[NormalizedLevel]:
        # Last write wins for duplicate prices; empty levels are not kept
        by_price: dict[int, NormalizedLevel] = {}
        for level in levels:
            by_price[round(level.price / PRICE_MATCH_EPSILON)] = level
        return [level for level in by_price.values() if level.size > 0]


class VenueBookParser(ABC):
    """Vendor message normalization into a `LevelBook` in "yes" terms."""

    def __init__(self) -> None:
        self.book = LevelBook()

    def reset(self) -> None:
        self.book.clear()

    @abstractmethod
    def handle(self, payload: Any, instrument_id: str) -> bool:
        """Route one decoded message. Returns True when the book changed."""

    @abstractmethod
    def apply_snapshot(self, message: Mapping[str, Any], instrument_id: str) -> bool:
        ...

    def apply_diff(self, message: Mapping[str, Any], instrument_id: str) -> bool:
        # Snapshot-only venues never receive diffs
        return False


class VenueFeedConnector(ABC):
    """Lifecycle owner for a single venue feed."""

    venue_id: VenueId
    heartbeat_message: Optional[str] = None
    heartbeat_reply: Optional[str] = None
    no_instrument_retry_seconds: float = 15.0

    def __init__(
        self,
        *,
        config: FeedConfig,
        parser: VenueBookParser,
        on_book: BookCallback,
        on_status: StatusCallback,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.parser = parser
        self._on_book = on_book
        self._on_status = on_status
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._clock = clock

        self._state = ConnectorState.DISCONNECTED
        self._status: Optional[ConnectionStatus] = None
        self._started = False
        self._stopped = False
        self._reconnect_attempts = 0
        self._instrument: Optional[Instrument] = None
        self._ws: Any = None

        self._discovery_task: Optional[asyncio.Task] = None
        self._socket_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._rotation_timer: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    # Venue hooks
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def ws_url(self) -> str:
        ...

    @abstractmethod
    async def discover(self) -> Optional[Instrument]:
        """Find the instrument to subscribe to. None means no active instrument.

        Raises:
            DiscoveryError: If the discovery request fails
        """

    @abstractmethod
    def subscription_message(self, instrument: Instrument) -> dict[str, Any]:
        ...

    def connect_kwargs(self) -> dict[str, Any]:
        return {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def status(self) -> Optional[ConnectionStatus]:
        return self._status

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def instrument(self) -> Optional[Instrument]:
        return self._instrument

    async def start(self) -> None:
        if self._stopped or self._started:
            return
        self._started = True
        logger.info("Starting %s feed", self.venue_id)
        self._state = ConnectorState.DISCOVERING
        await self._set_status("connecting")
        if self._stopped:
            return
        self._discovery_task = asyncio.create_task(self._discover_and_connect())

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._state = ConnectorState.STOPPED

        self._cancel_reconnect_timer()
        self._cancel_rotation_timer()

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._discovery_task, self._socket_task, self._heartbeat_task)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.debug("Error closing %s socket during stop", self.venue_id, exc_info=True)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

        logger.info("Stopped %s feed", self.venue_id)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _get_json(
        self,
        url: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.config.discovery_timeout_seconds)
        try:
            response = await self._http_client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.config.discovery_timeout_seconds,
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            raise DiscoveryError(f"{self.venue_id} discovery request failed: {exc}") from exc
        except ValueError as exc:
            raise DiscoveryError(f"{self.venue_id} discovery returned invalid JSON") from exc

    async def _discover_and_connect(self) -> None:
        if self._stopped:
            return
        try:
            instrument = await self.discover()
        except Exception as exc:
            if self._stopped:
                return
            logger.warning(
                "%s discovery failed: %s; retrying in %.0fs",
                self.venue_id,
                exc,
                self.config.discovery_retry_seconds,
            )
            self._schedule_discovery_retry(self.config.discovery_retry_seconds)
            return

        if self._stopped:
            return
        if instrument is None:
            logger.warning(
                "%s has no active instrument; retrying in %.0fs",
                self.venue_id,
                self.no_instrument_retry_seconds,
            )
            self._schedule_discovery_retry(self.no_instrument_retry_seconds)
            return

        logger.info("%s found instrument %s", self.venue_id, instrument.label or instrument.instrument_id)
        self._instrument = instrument
        self.parser.reset()
        self._socket_task = asyncio.create_task(self._run_socket(instrument))
        self._schedule_rotation(instrument)

    def _schedule_discovery_retry(self, delay: float) -> None:
        self._cancel_reconnect_timer()
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(delay, self._on_retry_timer)

    def _on_retry_timer(self) -> None:
        self._reconnect_timer = None
        if self._stopped:
            return
        self._discovery_task = asyncio.create_task(self._discover_and_connect())

    # ------------------------------------------------------------------
    # Socket
    # ------------------------------------------------------------------

    async def _run_socket(self, instrument: Instrument) -> None:
        ws = None
        try:
            async with websockets.connect(self.ws_url, ping_interval=20, ping_timeout=20, **self.connect_kwargs()) as ws:
                if self._stopped:
                    return
                self._ws = ws
                self._reconnect_attempts = 0
                await ws.send(json.dumps(self.subscription_message(instrument)))
                self._state = ConnectorState.CONNECTED
                await self._set_status("connected")
                self._start_heartbeat(ws)

                async for raw in ws:
                    if self._stopped:
                        return
                    await self._handle_raw(raw, instrument)
            logger.warning("%s WebSocket closed", self.venue_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("%s WebSocket error: %s", self.venue_id, exc)
        finally:
            self._stop_heartbeat()
            if ws is not None and self._ws is ws:
                self._ws = None

        if not self._stopped:
            await self._handle_connection_lost()

    async def _handle_raw(self, raw: str | bytes, instrument: Instrument) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if self.heartbeat_reply is not None and raw == self.heartbeat_reply:
            return
        try:
            payload = json.loads(raw)
            changed = self.parser.handle(payload, instrument.instrument_id)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.debug("%s dropped unparsable message: %s", self.venue_id, exc)
            return
        if changed:
            await self._emit_book()

    async def _handle_connection_lost(self) -> None:
        self._cancel_rotation_timer()
        self._state = ConnectorState.DISCONNECTED
        self.parser.reset()
        await self._set_status("disconnected")
        if self._stopped:
            return

        self._reconnect_attempts += 1
        delay = calc_reconnect_delay(
            self._reconnect_attempts,
            base=self.config.reconnect_base_seconds,
            maximum=self.config.reconnect_max_seconds,
        )
        logger.info("%s reconnecting in %.1fs (attempt %d)", self.venue_id, delay, self._reconnect_attempts)
        self._cancel_reconnect_timer()
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(delay, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if self._stopped:
            return
        self._discovery_task = asyncio.create_task(self._rediscover())

    async def _rediscover(self) -> None:
        if self._stopped:
            return
        self._state = ConnectorState.DISCOVERING
        await self._set_status("connecting")
        await self._discover_and_connect()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self, ws: Any) -> None:
        if self.heartbeat_message is None:
            return
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(ws))

    def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self, ws: Any) -> None:
        while not self._stopped:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            if self._stopped or self._ws is not ws:
                return
            try:
                await ws.send(self.heartbeat_message)
            except Exception as exc:
                # The socket's own close/error path handles the disconnect
                logger.debug("%s heartbeat send failed: %s", self.venue_id, exc)
                return

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def _schedule_rotation(self, instrument: Instrument) -> None:
        self._cancel_rotation_timer()
        if instrument.expiry is None:
            return
        grace = self.config.rotation_grace_seconds
        delay = max(instrument.expiry - self._clock() + grace, grace)
        loop = asyncio.get_running_loop()
        self._rotation_timer = loop.call_later(delay, self._on_rotation_timer)

    def _on_rotation_timer(self) -> None:
        self._rotation_timer = None
        if self._stopped:
            return
        logger.info("%s rotating to next instrument", self.venue_id)
        self._cancel_reconnect_timer()
        self._stop_heartbeat()

        previous = [task for task in (self._socket_task, self._discovery_task) if task is not None and not task.done()]
        for task in previous:
            task.cancel()
        self._socket_task = None
        self._discovery_task = asyncio.create_task(self._rotate(previous))

    async def _rotate(self, previous: Sequence[asyncio.Task]) -> None:
        if previous:
            await asyncio.gather(*previous, return_exceptions=True)
        if self._stopped:
            return
        self._instrument = None
        self.parser.reset()
        self._state = ConnectorState.DISCOVERING
        await self._set_status("connecting")
        await self._discover_and_connect()

    # ------------------------------------------------------------------
    # Timers and events
    # ------------------------------------------------------------------

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _cancel_rotation_timer(self) -> None:
        if self._rotation_timer is not None:
            self._rotation_timer.cancel()
            self._rotation_timer = None

    async def _set_status(self, status: ConnectionStatus) -> None:
        if self._stopped or status == self._status:
            return
        self._status = status
        try:
            await self._on_status(StatusEvent(venue_id=self.venue_id, status=status))
        except Exception:
            logger.warning("%s status callback failed", self.venue_id, exc_info=True)

    async def _emit_book(self) -> None:
        if self._stopped:
            return
        event = self.parser.book.to_event(self.venue_id, int(self._clock() * 1000))
        try:
            await self._on_book(event)
        except Exception:
            logger.warning("%s book callback failed", self.venue_id, exc_info=True)
