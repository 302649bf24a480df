"""Health check logic for venue feeds."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Iterable, Literal, Optional

from core.orderbook.store import BookStore
from core.types import VenueId


@dataclass
class HealthStatus:
    """Health status for a component."""

    status: Literal["ok", "degraded", "error"]
    message: Optional[str] = None
    details: Optional[dict] = None


class HealthChecker:
    """Health checker for venue feeds."""

    def __init__(
        self,
        store: BookStore,
        *,
        stale_after_seconds: float,
        enabled_venues: Optional[Iterable[VenueId]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize health checker.

        Args:
            store: Book store holding the latest status and book per venue
            stale_after_seconds: Age after which a connected feed counts as stale
            enabled_venues: Venues expected to be running. Defaults to all store venues.
        """
        self.store = store
        self.stale_after_seconds = stale_after_seconds
        self.enabled_venues = tuple(enabled_venues) if enabled_venues is not None else store.venues
        self._clock = clock

    def check_venue(self, venue_id: VenueId) -> HealthStatus:
        snapshot = self.store.snapshot()
        status = snapshot.statuses.get(venue_id, "disconnected")
        last_update = snapshot.last_update.get(venue_id)
        now = self._clock()
        details = {
            "status": status,
            "age_seconds": round(now - last_update, 1) if last_update is not None else None,
        }

        if venue_id not in self.enabled_venues:
            return HealthStatus(status="ok", message="Feed disabled", details=details)
        if status != "connected":
            return HealthStatus(status="error", message=f"Feed {status}", details=details)
        if self.store.is_stale(venue_id, stale_after_seconds=self.stale_after_seconds, now=now):
            return HealthStatus(status="degraded", message="Feed stale", details=details)
        return HealthStatus(status="ok", message="Feed connected", details=details)

    def check_all(self) -> dict[str, HealthStatus]:
        return {venue_id: self.check_venue(venue_id) for venue_id in self.store.venues}
