"""Polymarket CLOB feed.

Discovery goes through the Gamma API, one slug per 15-minute slot
(`btc-updown-15m-<slot start epoch>`). The realtime market channel sends full
`book` snapshots and incremental `price_change` diffs, and expects an
application-level "PING" text frame every 10 seconds.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from core.market_data.base import (
    DiscoveryError,
    Instrument,
    VenueBookParser,
    VenueFeedConnector,
    parse_level,
    select_instrument,
)
from core.types import VenueId

logger = logging.getLogger(__name__)


def slot_start(now: float, slot_seconds: int) -> int:
    return int(now // slot_seconds) * slot_seconds


def extract_up_token(raw: Any) -> Optional[str]:
    """First CLOB token id ("yes"/"up" outcome). Gamma sends it as a JSON string or a list."""
    try:
        ids = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError:
        return None
    if isinstance(ids, list) and ids:
        return str(ids[0])
    return None


def _parse_end_date(raw: Any) -> Optional[float]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class PolymarketBookParser(VenueBookParser):
    def handle(self, payload: Any, instrument_id: str) -> bool:
        # Initial snapshots can arrive batched in a JSON array
        if isinstance(payload, list):
            changed = False
            for item in payload:
                if self.handle(item, instrument_id):
                    changed = True
            return changed

        if not isinstance(payload, dict):
            return False
        event_type = payload.get("event_type")
        if event_type == "book":
            return self.apply_snapshot(payload, instrument_id)
        if event_type == "price_change":
            return self.apply_diff(payload, instrument_id)
        return False

    def apply_snapshot(self, message: Mapping[str, Any], instrument_id: str) -> bool:
        asset_id = message.get("asset_id")
        if asset_id is not None and str(asset_id) != instrument_id:
            return False
        bids = [parse_level(raw) for raw in message.get("bids") or []]
        asks = [parse_level(raw) for raw in message.get("asks") or []]
        self.book.replace(bids, asks)
        return True

    def apply_diff(self, message: Mapping[str, Any], instrument_id: str) -> bool:
        raw_changes = message.get("price_changes")
        if raw_changes is None:
            raw_changes = [message]

        # Parse everything first so a malformed entry drops the whole message
        changes = []
        for change in raw_changes:
            asset_id = change.get("asset_id", message.get("asset_id"))
            if str(asset_id) != instrument_id:
                continue
            side = "bids" if str(change["side"]).upper() == "BUY" else "asks"
            changes.append((side, float(change["price"]), float(change["size"])))

        for side, price, size in changes:
            self.book.apply_change(side, price, size)
        return bool(changes)


class PolymarketConnector(VenueFeedConnector):
    venue_id: VenueId = "polymarket"
    heartbeat_message = "PING"
    heartbeat_reply = "PONG"
    no_instrument_retry_seconds = 15.0

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("parser", PolymarketBookParser())
        super().__init__(**kwargs)

    @property
    def ws_url(self) -> str:
        return self.config.polymarket_ws_url

    def subscription_message(self, instrument: Instrument) -> dict[str, Any]:
        return {
            "assets_ids": [instrument.instrument_id],
            "type": "market",
            "custom_feature_enabled": True,
        }

    async def discover(self) -> Optional[Instrument]:
        slot_seconds = self.config.slot_seconds
        current = slot_start(self._clock(), slot_seconds)
        slots = (current, current - slot_seconds, current + slot_seconds)

        candidates: list[Instrument] = []
        errors: list[DiscoveryError] = []
        for ts in slots:
            slug = f"{self.config.polymarket_slug_prefix}-{ts}"
            try:
                markets = await self._get_json(f"{self.config.gamma_api_url}/markets", params={"slug": slug})
            except DiscoveryError as exc:
                logger.debug("Gamma lookup for %s failed: %s", slug, exc)
                errors.append(exc)
                continue
            if not isinstance(markets, list):
                errors.append(DiscoveryError(f"Unexpected Gamma response for {slug}: {type(markets).__name__}"))
                continue
            for market in markets:
                instrument = self._to_instrument(market, slot=ts, slug=slug)
                if instrument is not None:
                    candidates.append(instrument)

        if not candidates and len(errors) == len(slots):
            raise errors[0]
        return select_instrument(candidates, now=self._clock())

    def _to_instrument(self, market: Any, *, slot: int, slug: str) -> Optional[Instrument]:
        if not isinstance(market, dict) or market.get("acceptingOrders") is False:
            return None
        token = extract_up_token(market.get("clobTokenIds"))
        if token is None:
            return None
        expiry = _parse_end_date(market.get("endDate"))
        if expiry is None:
            expiry = float(slot + self.config.slot_seconds)
        return Instrument(instrument_id=token, expiry=expiry, label=str(market.get("question") or slug))
