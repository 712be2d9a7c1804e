from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta

from valuation.config import ValuationConfig
from valuation.data_models import Degraded, ListingRecord, ListingsStatistics, VehicleDescriptor
from valuation.listings_stats import compute_statistics
from valuation_service.clock import Clock
from valuation_service.errors import AllKeysExhaustedError, UpstreamError
from valuation_service.sources import ListingsSource
from valuation_service.storage import RedisCache

logger = logging.getLogger(__name__)


def location_bucket(location: str | None) -> str:
    digits = "".join(ch for ch in (location or "") if ch.isdigit())
    return digits[:3] if len(digits) >= 3 else "national"


def degraded_from(exc: UpstreamError, default: str = "listings_unavailable") -> Degraded:
    reason = "all_keys_exhausted" if isinstance(exc, AllKeysExhaustedError) else default
    return Degraded(reason=reason, detail=str(exc))


class ListingsAggregator:
    """Cache-first comparable listings lookup.

    Upstream failures come back as empty statistics carrying a ``Degraded``
    marker; they are never raised to the valuation path.
    """

    def __init__(
        self,
        source: ListingsSource,
        cache: RedisCache,
        clock: Clock,
        config: ValuationConfig | None = None,
    ) -> None:
        self.source = source
        self.cache = cache
        self.clock = clock
        self.config = config or ValuationConfig()

    @staticmethod
    def cache_key(descriptor: VehicleDescriptor, location: str | None = None) -> str:
        return f"listings:{descriptor.cache_key()}|{location_bucket(location)}"

    async def _cached(self, key: str, now: datetime) -> tuple[list[ListingRecord], datetime] | None:
        entry = await self.cache.get_json(key)
        if not entry:
            return None
        cached_at = datetime.fromisoformat(entry["cached_at"])
        if now - cached_at >= timedelta(days=self.config.listings_cache_ttl_days):
            return None
        return [ListingRecord(**item) for item in entry.get("listings", [])], cached_at

    async def get_statistics(
        self, descriptor: VehicleDescriptor, location: str | None = None,
    ) -> ListingsStatistics:
        now = self.clock.now()
        key = self.cache_key(descriptor, location)
        hit = await self._cached(key, now)
        if hit is not None:
            listings, fetched_at = hit
            logger.debug("Listings cache hit for %s", key)
        else:
            try:
                listings = await self.source.search(
                    descriptor.make, descriptor.model, descriptor.year, descriptor.trim, location,
                )
            except UpstreamError as exc:
                logger.warning("Listings unavailable for %s: %s", key, exc)
                return ListingsStatistics.empty(
                    degraded=degraded_from(exc),
                    price_per_mile=self.config.default_price_per_mile,
                )
            fetched_at = now
            await self.cache.set_json(
                key,
                {"cached_at": now.isoformat(), "listings": [asdict(l) for l in listings]},
                ttl_seconds=self.config.listings_cache_ttl_days * 86_400,
            )

        return compute_statistics(
            listings,
            target_trim=descriptor.trim,
            fetched_at=fetched_at,
            trim_ratio=self.config.listings_trim_ratio,
            default_price_per_mile=self.config.default_price_per_mile,
        )
