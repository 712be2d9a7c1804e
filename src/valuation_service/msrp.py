from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from valuation.config import ValuationConfig
from valuation.data_models import Degraded, Segment, VehicleDescriptor
from valuation.depreciation import estimate_msrp, msrp_from_market_price
from valuation_service.clock import Clock
from valuation_service.errors import UpstreamError
from valuation_service.listings import degraded_from
from valuation_service.sources import PriceSource
from valuation_service.storage import RedisCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MsrpResolution:
    msrp: float
    source: Literal["supplied", "market", "formula"]
    degraded: Degraded | None = None


class MsrpResolver:
    """Original sticker price: caller-supplied, backed out of a market quote, or formula."""

    def __init__(
        self,
        price_source: PriceSource,
        cache: RedisCache,
        clock: Clock,
        config: ValuationConfig | None = None,
    ) -> None:
        self.price_source = price_source
        self.cache = cache
        self.clock = clock
        self.config = config or ValuationConfig()

    async def resolve(
        self,
        descriptor: VehicleDescriptor,
        *,
        mileage: int,
        segment: Segment,
        age_years: float,
        msrp: float | None = None,
    ) -> MsrpResolution:
        if msrp is not None and msrp > 0:
            return MsrpResolution(msrp=float(msrp), source="supplied")

        now = self.clock.now()
        key = f"msrp:{descriptor.cache_key()}"
        entry = await self.cache.get_json(key)
        if entry and now - datetime.fromisoformat(entry["cached_at"]) < timedelta(
            days=self.config.valuation_cache_ttl_days
        ):
            return MsrpResolution(msrp=float(entry["msrp"]), source="market")

        try:
            quote = await self.price_source.lookup(
                descriptor.make, descriptor.model, descriptor.year, descriptor.trim, mileage,
            )
        except UpstreamError as exc:
            logger.warning("Price lookup unavailable for %s, using formula MSRP: %s", descriptor.cache_key(), exc)
            return MsrpResolution(
                msrp=estimate_msrp(segment, age_years),
                source="formula",
                degraded=degraded_from(exc, default="msrp_unavailable"),
            )

        resolved = msrp_from_market_price(quote.price, age_years, segment)
        await self.cache.set_json(
            key,
            {"cached_at": now.isoformat(), "msrp": resolved},
            ttl_seconds=self.config.valuation_cache_ttl_days * 86_400,
        )
        return MsrpResolution(msrp=resolved, source="market")
