"""DFlow prediction markets feed (Kalshi-style tickers).

The orderbook channel only sends full snapshots: `yes_bids` and `no_bids`
maps of price -> size. A resting "no" bid at p is a "yes" offer at 1 - p, so
`no_bids` become the yes-side asks.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from core.market_data.base import DiscoveryError, Instrument, VenueBookParser, VenueFeedConnector, select_instrument
from core.types import NormalizedLevel, VenueId

logger = logging.getLogger(__name__)

ACTIVE_MARKET_STATUSES = ("active", "open")


class DFlowBookParser(VenueBookParser):
    def handle(self, payload: Any, instrument_id: str) -> bool:
        if not isinstance(payload, dict) or payload.get("channel") != "orderbook":
            return False
        return self.apply_snapshot(payload, instrument_id)

    def apply_snapshot(self, message: Mapping[str, Any], instrument_id: str) -> bool:
        if message.get("market_ticker") != instrument_id:
            return False
        yes_bids = message.get("yes_bids") or {}
        no_bids = message.get("no_bids") or {}
        bids = [NormalizedLevel(price=float(price), size=float(size)) for price, size in yes_bids.items()]
        asks = [NormalizedLevel(price=1.0 - float(price), size=float(size)) for price, size in no_bids.items()]
        self.book.replace(bids, asks)
        return True


class DFlowConnector(VenueFeedConnector):
    venue_id: VenueId = "dflow"
    no_instrument_retry_seconds = 30.0

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("parser", DFlowBookParser())
        super().__init__(**kwargs)
        if not self.config.dflow_api_key:
            raise ValueError("DFLOW_API_KEY is required for the dflow feed")

    @property
    def ws_url(self) -> str:
        return self.config.dflow_ws_url

    def _auth_headers(self) -> dict[str, str]:
        return {"x-api-key": self.config.dflow_api_key or ""}

    def connect_kwargs(self) -> dict[str, Any]:
        return {"additional_headers": self._auth_headers()}

    def subscription_message(self, instrument: Instrument) -> dict[str, Any]:
        return {"type": "subscribe", "channel": "orderbook", "tickers": [instrument.instrument_id]}

    async def discover(self) -> Optional[Instrument]:
        series = self.config.dflow_series
        data = await self._get_json(
            f"{self.config.dflow_api_url}/events",
            params={"seriesTickers": series, "withNestedMarkets": "true", "status": "active"},
            headers=self._auth_headers(),
        )
        if not isinstance(data, dict):
            raise DiscoveryError(f"Unexpected DFlow events response: {type(data).__name__}")

        candidates: list[Instrument] = []
        for event in data.get("events") or []:
            if not isinstance(event, dict) or event.get("seriesTicker") != series:
                continue
            for market in event.get("markets") or []:
                if not isinstance(market, dict) or market.get("status") not in ACTIVE_MARKET_STATUSES:
                    continue
                ticker = market.get("ticker")
                if not ticker:
                    continue
                close_time = market.get("closeTime")
                try:
                    expiry = float(close_time) if close_time is not None else None
                except (TypeError, ValueError):
                    logger.debug("Ignoring unparsable closeTime %r for %s", close_time, ticker)
                    expiry = None
                candidates.append(Instrument(instrument_id=str(ticker), expiry=expiry, label=str(ticker)))

        return select_instrument(candidates, now=self._clock())
