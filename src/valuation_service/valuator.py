from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Literal, Sequence

from valuation.blending import blend_valuation
from valuation.config import ValuationConfig
from valuation.data_models import (
    CONDITIONS,
    REGIONS,
    FinanceData,
    MarketContext,
    MarketShiftAlert,
    ValuationEstimate,
    ValuationResult,
    VehicleDescriptor,
    VehicleUsage,
)
from valuation.depreciation import (
    next_mileage_cliff,
    region_from_zip,
    regional_multiplier,
    theoretical_value,
    vehicle_age,
)
from valuation.insights import build_alerts, build_market_context
from valuation.projection import calculate_equity_projection, find_optimal_sell_window, project_future_value
from valuation.segments import classify, is_known_make
from valuation_service.clock import Clock
from valuation_service.errors import InvalidVehicleInputError
from valuation_service.listings import ListingsAggregator
from valuation_service.msrp import MsrpResolver
from valuation_service.storage import RedisCache

logger = logging.getLogger(__name__)

ShiftLookup = Callable[[VehicleDescriptor], Awaitable[Sequence[MarketShiftAlert]]]


def validate_inputs(
    descriptor: VehicleDescriptor,
    usage: VehicleUsage,
    finance: FinanceData | None,
    now: datetime,
    config: ValuationConfig,
) -> None:
    if not descriptor.make.strip() or not descriptor.model.strip():
        raise InvalidVehicleInputError("make and model are required")
    if not is_known_make(descriptor.make):
        raise InvalidVehicleInputError(f"unknown make {descriptor.make!r}")
    if not config.min_model_year <= descriptor.year <= now.year + config.max_future_model_years:
        raise InvalidVehicleInputError(f"implausible model year {descriptor.year}")
    if usage.current_mileage < 0:
        raise InvalidVehicleInputError("mileage cannot be negative")
    if usage.annual_mileage_estimate < 0:
        raise InvalidVehicleInputError("annual mileage cannot be negative")
    if usage.condition not in CONDITIONS:
        raise InvalidVehicleInputError(f"unknown condition {usage.condition!r}")
    if usage.region is not None and usage.region not in REGIONS:
        raise InvalidVehicleInputError(f"unknown region {usage.region!r}")
    if finance is not None:
        if finance.loan_balance < 0 or finance.monthly_payment < 0 or finance.interest_rate < 0:
            raise InvalidVehicleInputError("finance figures cannot be negative")


class Valuator:
    """Full valuation path: depreciation model, listings blend, projections and alerts."""

    def __init__(
        self,
        listings: ListingsAggregator,
        msrp_resolver: MsrpResolver,
        cache: RedisCache,
        clock: Clock,
        config: ValuationConfig | None = None,
        shift_lookup: ShiftLookup | None = None,
    ) -> None:
        self.listings = listings
        self.msrp_resolver = msrp_resolver
        self.cache = cache
        self.clock = clock
        self.config = config or ValuationConfig()
        self.shift_lookup = shift_lookup

    def cache_key(self, descriptor: VehicleDescriptor, usage: VehicleUsage, region: str | None) -> str:
        bucket = usage.current_mileage // self.config.valuation_mileage_bucket
        return f"valuation:{descriptor.cache_key()}|{bucket}|{usage.condition}|{region or 'any'}"

    async def _cached_estimate(
        self, key: str, usage: VehicleUsage, now: datetime,
    ) -> tuple[ValuationEstimate, MarketContext] | None:
        entry = await self.cache.get_json(key)
        if not entry:
            return None
        if now - datetime.fromisoformat(entry["cached_at"]) >= timedelta(days=self.config.valuation_cache_ttl_days):
            return None
        estimate = ValuationEstimate.from_json(entry["estimate"])
        if abs(estimate.mileage - usage.current_mileage) > self.config.valuation_mileage_tolerance:
            return None
        return estimate, MarketContext(**entry["market"])

    async def estimate(
        self,
        descriptor: VehicleDescriptor,
        usage: VehicleUsage,
        *,
        msrp: float | None = None,
        force_refresh: bool = False,
    ) -> tuple[ValuationEstimate, MarketContext, bool]:
        """Current-value estimate plus market context; the flag says whether it came from cache."""
        now = self.clock.now()
        region = usage.region or region_from_zip(usage.zip_code)
        key = self.cache_key(descriptor, usage, region)

        if not force_refresh:
            cached = await self._cached_estimate(key, usage, now)
            if cached is not None:
                return cached[0], cached[1], True

        segment = classify(descriptor)
        age = vehicle_age(descriptor.year, now)
        resolution = await self.msrp_resolver.resolve(
            descriptor, mileage=usage.current_mileage, segment=segment, age_years=age, msrp=msrp,
        )
        statistics = await self.listings.get_statistics(descriptor, usage.zip_code)
        theoretical = theoretical_value(
            descriptor, usage, msrp=resolution.msrp, age_years=age, segment=segment, region=region,
        )
        data_age = None
        if statistics.fetched_at is not None:
            data_age = (now - statistics.fetched_at).total_seconds() / 86_400

        estimate = blend_valuation(
            theoretical,
            statistics,
            usage=usage,
            month=now.month,
            data_age_days=data_age,
            drivetrain=descriptor.drivetrain,
            degraded=[resolution.degraded] if resolution.degraded else [],
            range_pct=self.config.estimate_range_pct,
        )
        market = build_market_context(
            estimate,
            statistics,
            descriptor,
            current_year=now.year,
            regional_multiplier=regional_multiplier(segment, region, descriptor.drivetrain),
        )

        if estimate.is_degraded:
            logger.warning(
                "Degraded valuation for %s: %s", descriptor.cache_key(),
                ", ".join(d.reason for d in estimate.degraded),
            )
        else:
            await self.cache.set_json(
                key,
                {"cached_at": now.isoformat(), "estimate": estimate.to_json(), "market": asdict(market)},
                ttl_seconds=self.config.valuation_cache_ttl_days * 86_400,
            )
        logger.info(
            "Valuated %s at %d (%s confidence, %d listings)",
            descriptor.cache_key(), estimate.estimated, estimate.confidence, estimate.listings_used,
        )
        return estimate, market, False

    async def valuate(
        self,
        descriptor: VehicleDescriptor,
        usage: VehicleUsage,
        finance: FinanceData | None = None,
        *,
        msrp: float | None = None,
        force_refresh: bool = False,
        sell_metric: Literal["auto", "value", "equity"] = "auto",
    ) -> ValuationResult:
        now = self.clock.now()
        validate_inputs(descriptor, usage, finance, now, self.config)
        if sell_metric == "equity" and finance is None:
            raise InvalidVehicleInputError("equity sell window requires finance data")

        estimate, market, from_cache = await self.estimate(
            descriptor, usage, msrp=msrp, force_refresh=force_refresh,
        )
        segment = estimate.segment
        annual = usage.annual_mileage_estimate
        momentum = estimate.market_momentum
        common: dict[str, Any] = {"now": now, "drivetrain": descriptor.drivetrain}

        projections = tuple(
            project_future_value(
                estimate.estimated, usage.current_mileage, annual, segment, months, momentum, **common,
            )
            for months in self.config.projection_horizons
        )
        optimal = find_optimal_sell_window(
            estimate.estimated, usage.current_mileage, annual, segment,
            market_momentum=momentum, finance=finance, metric=sell_metric,
            horizon_months=self.config.sell_window_months, **common,
        )
        value_window = None
        if optimal.metric == "equity":
            value_window = find_optimal_sell_window(
                estimate.estimated, usage.current_mileage, annual, segment,
                market_momentum=momentum, metric="value",
                horizon_months=self.config.sell_window_months, **common,
            )

        equity = None
        if finance is not None:
            equity = calculate_equity_projection(
                estimate.estimated, finance.loan_balance, finance.monthly_payment,
                finance.interest_rate, segment,
            )
        cliff = next_mileage_cliff(usage.current_mileage, annual, estimate.estimated)
        shifts = await self.shift_lookup(descriptor) if self.shift_lookup is not None else ()

        return ValuationResult(
            estimate=estimate,
            projections=projections,
            optimal_sell_window=optimal,
            market=market,
            alerts=build_alerts(market, cliff, equity, shifts),
            equity=equity,
            value_sell_window=value_window,
            next_mileage_cliff=cliff,
            from_cache=from_cache,
        )
