from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from valuation.data_models import (
    Confidence,
    Degraded,
    ListingsStatistics,
    TheoreticalValue,
    ValuationEstimate,
    VehicleUsage,
)
from valuation.depreciation import seasonal_multiplier
from valuation.listings_stats import mileage_adjusted_average


@dataclass(frozen=True)
class PricingTier:
    name: str
    min_value: float
    trade_in: float
    instant: float
    private_party: float


# Highest bracket first.
VALUE_TIERS: tuple[PricingTier, ...] = (
    PricingTier("exotic", 150_000, 0.92, 0.88, 1.03),
    PricingTier("luxury", 75_000, 0.90, 0.85, 1.05),
    PricingTier("premium", 40_000, 0.88, 0.84, 1.06),
    PricingTier("standard", 0, 0.85, 0.82, 1.08),
)


@dataclass(frozen=True)
class BlendWeights:
    listings_weight: float
    model_weight: float


def calculate_blend_weights(segment: str, listings_count: int, is_urban: bool = True) -> BlendWeights:
    listings_weight = 0.70 if is_urban else 0.40
    if segment == "ev":
        listings_weight = 0.90
    elif segment in ("exotic", "luxury"):
        listings_weight = 0.30
    elif segment in ("truck", "mainstream"):
        listings_weight = 0.80

    if listings_count < 5:
        listings_weight = min(listings_weight, 0.30)
    elif listings_count >= 30:
        listings_weight = max(listings_weight, 0.75)
    return BlendWeights(listings_weight=listings_weight, model_weight=1.0 - listings_weight)


def calculate_confidence(
    listings_count: int,
    data_age_days: float | None,
    exact_trim_match: bool,
) -> Confidence:
    score = 0
    if listings_count >= 20:
        score += 3
    elif listings_count >= 10:
        score += 2
    elif listings_count >= 5:
        score += 1

    if data_age_days is not None:
        if data_age_days <= 7:
            score += 2
        elif data_age_days <= 14:
            score += 1

    if exact_trim_match:
        score += 2

    if score >= 5:
        return "high"
    if score >= 3:
        return "medium"
    return "low"


def pricing_tier(value: float) -> PricingTier:
    for tier in VALUE_TIERS:
        if value >= tier.min_value:
            return tier
    return VALUE_TIERS[-1]


def blend_valuation(
    theoretical: TheoreticalValue,
    statistics: ListingsStatistics,
    *,
    usage: VehicleUsage,
    month: int,
    data_age_days: float | None,
    drivetrain: str | None = None,
    degraded: Iterable[Degraded] = (),
    range_pct: float = 0.10,
) -> ValuationEstimate:
    """Blend the depreciation model with live listings and grade the result.

    Upstream degradation never raises here: the estimate is returned with
    confidence forced to ``low`` and the reasons attached.
    """
    reasons = tuple(degraded)
    if statistics.degraded is not None and statistics.degraded not in reasons:
        reasons = (statistics.degraded,) + reasons

    if statistics.is_empty:
        weights = BlendWeights(listings_weight=0.0, model_weight=1.0)
        blended = theoretical.value
    else:
        weights = calculate_blend_weights(theoretical.segment, statistics.listings_count, usage.is_urban)
        listings_avg = mileage_adjusted_average(statistics, usage.current_mileage)
        blended = listings_avg * weights.listings_weight + theoretical.value * weights.model_weight

    seasonal = seasonal_multiplier(theoretical.segment, month, drivetrain)
    value = blended * seasonal
    tier = pricing_tier(value)

    confidence = calculate_confidence(
        statistics.listings_count,
        None if statistics.is_empty else data_age_days,
        statistics.exact_trim_match,
    )
    if reasons:
        confidence = "low"

    return ValuationEstimate(
        estimated=int(round(value)),
        trade_in=int(round(value * tier.trade_in)),
        private_party=int(round(value * tier.private_party)),
        instant=int(round(value * tier.instant)),
        confidence=confidence,
        price_low=int(round(value * (1 - range_pct))),
        price_high=int(round(value * (1 + range_pct))),
        segment=theoretical.segment,
        listings_weight=weights.listings_weight,
        model_weight=weights.model_weight,
        listings_used=statistics.trimmed_count,
        mileage=usage.current_mileage,
        theoretical_value=int(round(theoretical.value)),
        seasonal_multiplier=seasonal,
        market_momentum=statistics.market_momentum,
        degraded=reasons,
    )
