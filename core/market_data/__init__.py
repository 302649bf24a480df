"""Venue feed connectors (discovery, realtime socket, reconnect, rotation)."""

from __future__ import annotations

import logging
from typing import Any

from core.config import FeedConfig
from core.market_data.base import (
    ConnectorState,
    DiscoveryError,
    Instrument,
    VenueBookParser,
    VenueFeedConnector,
    calc_reconnect_delay,
    select_instrument,
)
from core.market_data.dflow import DFlowConnector
from core.market_data.polymarket import PolymarketConnector
from core.types import VENUES, VenueId

logger = logging.getLogger(__name__)

__all__ = [
    "ConnectorState",
    "DiscoveryError",
    "Instrument",
    "VenueBookParser",
    "VenueFeedConnector",
    "calc_reconnect_delay",
    "select_instrument",
    "PolymarketConnector",
    "DFlowConnector",
    "get_connector",
    "build_connectors",
    "enabled_venues",
]

_CONNECTORS: dict[str, type[VenueFeedConnector]] = {
    "polymarket": PolymarketConnector,
    "dflow": DFlowConnector,
}


def get_connector(venue: str, *, config: FeedConfig, **kwargs: Any) -> VenueFeedConnector:
    """Factory function to get the connector for a venue."""
    venue_lower = venue.lower().strip()
    if venue_lower not in _CONNECTORS:
        raise ValueError(f"Unsupported venue: {venue}. Supported: {', '.join(_CONNECTORS)}")
    return _CONNECTORS[venue_lower](config=config, **kwargs)


def enabled_venues(config: FeedConfig) -> tuple[VenueId, ...]:
    """Venues that can run with this config. DFlow needs an API key."""
    return tuple(venue for venue in VENUES if venue != "dflow" or config.dflow_api_key)


def build_connectors(config: FeedConfig, **kwargs: Any) -> list[VenueFeedConnector]:
    venues = enabled_venues(config)
    if "dflow" not in venues:
        logger.warning("DFLOW_API_KEY not configured; dflow feed disabled")
    return [get_connector(venue, config=config, **kwargs) for venue in venues]
