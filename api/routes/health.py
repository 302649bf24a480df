"""Health check API endpoint."""

from __future__ import annotations

import time
from typing import Any

from fastapi import APIRouter

from api.websocket.manager import get_book_store
from core.config import get_feed_config
from core.health import HealthChecker
from core.market_data import enabled_venues

router = APIRouter(tags=["health"])

# Track API start time
_api_start_time = time.time()


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Get feed health.

    Each enabled venue is `ok` when connected with a fresh book, `degraded`
    when connected but stale, and `error` otherwise. The overall status is the
    worst of all components.
    """
    config = get_feed_config()
    checker = HealthChecker(
        get_book_store(),
        stale_after_seconds=config.stale_after_seconds,
        enabled_venues=enabled_venues(config),
    )
    checks = checker.check_all()

    result: dict[str, Any] = {
        "api": {
            "status": "ok",
            "uptime_seconds": int(time.time() - _api_start_time),
            "message": "API running",
        },
        "venues": {},
    }
    for venue_id, status in checks.items():
        result["venues"][venue_id] = {
            "status": status.status,
            "message": status.message,
            "details": status.details,
        }

    all_statuses = [result["api"]["status"]] + [status.status for status in checks.values()]
    if "error" in all_statuses:
        overall_status = "error"
    elif "degraded" in all_statuses:
        overall_status = "degraded"
    else:
        overall_status = "ok"

    result["overall"] = {"status": overall_status}
    return result
