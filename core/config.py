"""Feed configuration.

Values default to the production endpoints. `dflow_api_key` should come from
the environment (DFLOW_API_KEY). Do not log it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class FeedConfig:
    polymarket_ws_url: str = "wss://ws-subscriptions-clob.polymarket.com/ws/market"
    gamma_api_url: str = "https://gamma-api.polymarket.com"
    polymarket_slug_prefix: str = "btc-updown-15m"
    slot_seconds: int = 900

    dflow_api_url: str = "https://dev-prediction-markets-api.dflow.net/api/v1"
    dflow_ws_url: str = "wss://dev-prediction-markets-api.dflow.net/api/v1/ws"
    dflow_series: str = "KXBTC15M"
    dflow_api_key: Optional[str] = None

    reconnect_base_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    discovery_timeout_seconds: float = 5.0
    discovery_retry_seconds: float = 10.0
    heartbeat_interval_seconds: float = 10.0
    rotation_grace_seconds: float = 5.0
    stale_after_seconds: float = 30.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FeedConfig":
        env = os.environ if environ is None else environ
        defaults = cls()

        stale_raw = env.get("FEED_STALE_SECONDS", "").strip()
        try:
            stale_after = float(stale_raw) if stale_raw else defaults.stale_after_seconds
        except ValueError as exc:
            raise ValueError(f"FEED_STALE_SECONDS must be a number, got {stale_raw!r}") from exc

        return cls(
            polymarket_ws_url=env.get("POLYMARKET_WS_URL") or defaults.polymarket_ws_url,
            gamma_api_url=env.get("GAMMA_API_URL") or defaults.gamma_api_url,
            polymarket_slug_prefix=env.get("POLYMARKET_SLUG_PREFIX") or defaults.polymarket_slug_prefix,
            dflow_api_url=env.get("DFLOW_API_URL") or defaults.dflow_api_url,
            dflow_ws_url=env.get("DFLOW_WS_URL") or defaults.dflow_ws_url,
            dflow_series=env.get("DFLOW_SERIES") or defaults.dflow_series,
            dflow_api_key=(env.get("DFLOW_API_KEY") or "").strip() or None,
            stale_after_seconds=stale_after,
        )


_feed_config: Optional[FeedConfig] = None


def get_feed_config() -> FeedConfig:
    """Process-wide config, read from the environment on first use."""
    global _feed_config
    if _feed_config is None:
        _feed_config = FeedConfig.from_env()
    return _feed_config
