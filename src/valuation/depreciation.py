from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import numpy as np

from valuation.data_models import (
    MileageCliffNotice,
    Segment,
    TheoreticalValue,
    VehicleDescriptor,
    VehicleUsage,
)


@dataclass(frozen=True)
class MileageCliff:
    threshold: int
    drop_percent: float
    label: str


MILEAGE_CLIFFS: tuple[MileageCliff, ...] = (
    MileageCliff(30_000, 0.05, "Warranty territory"),
    MileageCliff(40_000, 0.03, "Extended warranty limit"),
    MileageCliff(50_000, 0.04, "Major service interval"),
    MileageCliff(60_000, 0.04, "60k service"),
    MileageCliff(75_000, 0.05, "High mileage threshold"),
    MileageCliff(90_000, 0.04, "Approaching 100k"),
    MileageCliff(100_000, 0.08, "100k milestone - significant drop"),
    MileageCliff(125_000, 0.05, "Very high mileage"),
    MileageCliff(150_000, 0.06, "End-of-life fleet value"),
)

# Year 0, 1, ... 10+
AGE_DEPRECIATION: dict[str, tuple[float, ...]] = {
    "economy": (1.0, 0.80, 0.72, 0.65, 0.59, 0.54, 0.50, 0.47, 0.44, 0.42, 0.40),
    "mainstream": (1.0, 0.82, 0.74, 0.67, 0.61, 0.56, 0.52, 0.49, 0.46, 0.44, 0.42),
    "premium": (1.0, 0.78, 0.68, 0.60, 0.53, 0.47, 0.43, 0.40, 0.37, 0.35, 0.33),
    "luxury": (1.0, 0.75, 0.63, 0.54, 0.47, 0.41, 0.37, 0.34, 0.31, 0.29, 0.27),
    "truck": (1.0, 0.88, 0.82, 0.76, 0.71, 0.67, 0.63, 0.60, 0.57, 0.55, 0.53),
    "suv": (1.0, 0.85, 0.78, 0.72, 0.66, 0.61, 0.57, 0.54, 0.51, 0.49, 0.47),
    "sports": (1.0, 0.83, 0.75, 0.68, 0.62, 0.57, 0.53, 0.50, 0.47, 0.45, 0.43),
    "ev": (1.0, 0.70, 0.58, 0.49, 0.42, 0.37, 0.33, 0.30, 0.28, 0.26, 0.25),
    "exotic": (1.0, 0.92, 0.88, 0.85, 0.83, 0.82, 0.81, 0.80, 0.80, 0.80, 0.80),
}

# Jan .. Dec
SEASONALITY: dict[str, tuple[float, ...]] = {
    "truck": (0.95, 0.97, 1.05, 1.08, 1.10, 1.08, 1.05, 1.02, 0.98, 0.95, 0.92, 0.90),
    "suv_awd": (1.08, 1.05, 1.00, 0.95, 0.92, 0.90, 0.90, 0.92, 0.95, 1.00, 1.05, 1.10),
    "convertible": (0.85, 0.88, 0.95, 1.05, 1.12, 1.15, 1.15, 1.10, 1.00, 0.92, 0.85, 0.82),
    "ev": (1.02, 1.00, 1.05, 1.08, 1.05, 1.02, 1.00, 0.98, 1.00, 1.02, 1.00, 1.05),
    "default": (0.98, 0.98, 1.02, 1.03, 1.04, 1.03, 1.02, 1.00, 0.99, 0.98, 0.97, 0.96),
}

REGIONAL_ADJUSTMENTS: dict[str, dict[str, float]] = {
    "truck": {"northeast": 0.95, "southeast": 1.02, "midwest": 1.05, "southwest": 1.08, "west": 1.00, "pacific": 0.95},
    "suv_awd": {"northeast": 1.08, "southeast": 0.95, "midwest": 1.10, "southwest": 0.92, "west": 1.02, "pacific": 0.98},
    "ev": {"northeast": 1.02, "southeast": 0.92, "midwest": 0.88, "southwest": 0.95, "west": 1.05, "pacific": 1.12},
    "convertible": {"northeast": 0.90, "southeast": 1.05, "midwest": 0.88, "southwest": 1.08, "west": 1.10, "pacific": 1.12},
    "default": {"northeast": 1.00, "southeast": 1.00, "midwest": 0.98, "southwest": 1.00, "west": 1.02, "pacific": 1.02},
}

CONDITION_MULTIPLIERS: dict[str, float] = {
    "excellent": 1.08,
    "good": 1.00,
    "fair": 0.90,
    "poor": 0.75,
}

MONTHLY_DEPRECIATION_RATES: dict[str, float] = {
    "economy": 0.008,
    "mainstream": 0.009,
    "premium": 0.011,
    "luxury": 0.013,
    "truck": 0.006,
    "suv": 0.008,
    "sports": 0.010,
    "ev": 0.015,
    "exotic": 0.004,
}
DEFAULT_MONTHLY_RATE = 0.009

BASE_MSRP: dict[str, float] = {
    "economy": 25_000,
    "mainstream": 32_000,
    "premium": 45_000,
    "luxury": 65_000,
    "truck": 48_000,
    "suv": 42_000,
    "sports": 45_000,
    "ev": 48_000,
    "exotic": 200_000,
}

EXTRA_DECAY_PER_YEAR = 0.97
MSRP_INFLATION_PER_YEAR = 1.03
VALUE_FLOOR_RATIO = 0.30

# (first, last) three-digit ZIP prefixes, inclusive
_ZIP_REGIONS: tuple[tuple[int, int, str], ...] = (
    (10, 199, "northeast"),
    (200, 399, "southeast"),
    (400, 599, "midwest"),
    (600, 699, "midwest"),
    (700, 799, "southwest"),
    (850, 865, "southwest"),
    (800, 849, "west"),
    (866, 899, "west"),
    (900, 999, "pacific"),
)


def seasonal_family(segment: str, drivetrain: str | None = None) -> str:
    if segment == "truck":
        return "truck"
    if segment == "suv" or "awd" in (drivetrain or "").lower():
        return "suv_awd"
    if segment == "sports":
        return "convertible"
    if segment == "ev":
        return "ev"
    return "default"


def seasonal_multiplier(segment: str, month: int, drivetrain: str | None = None) -> float:
    """Demand multiplier for a calendar month (1-12)."""
    curve = SEASONALITY[seasonal_family(segment, drivetrain)]
    return curve[(month - 1) % 12]


def regional_multiplier(segment: str, region: str | None, drivetrain: str | None = None) -> float:
    table = REGIONAL_ADJUSTMENTS[seasonal_family(segment, drivetrain)]
    return table.get(region or "", 1.0)


def condition_multiplier(condition: str) -> float:
    return CONDITION_MULTIPLIERS[condition]


def monthly_depreciation_rate(segment: str) -> float:
    return MONTHLY_DEPRECIATION_RATES.get(segment, DEFAULT_MONTHLY_RATE)


def region_from_zip(zip_code: str | None) -> str | None:
    digits = "".join(ch for ch in (zip_code or "") if ch.isdigit())
    if len(digits) < 3:
        return None
    prefix = int(digits[:3])
    for first, last, region in _ZIP_REGIONS:
        if first <= prefix <= last:
            return region
    return "west"


def vehicle_age(model_year: int, now: datetime) -> int:
    return max(0, now.year - model_year)


def age_multiplier(age_years: float, segment: str) -> float:
    curve = AGE_DEPRECIATION.get(segment, AGE_DEPRECIATION["mainstream"])
    last_index = len(curve) - 1
    age = max(0.0, float(age_years))
    if age <= last_index:
        return float(np.interp(age, np.arange(len(curve)), curve))
    return curve[-1] * EXTRA_DECAY_PER_YEAR ** (age - last_index)


def calculate_base_depreciation(msrp: float, age_years: float, segment: str) -> float:
    return msrp * age_multiplier(age_years, segment)


def apply_mileage_adjustment(
    base_value: float,
    current_mileage: int,
    expected_mileage: float,
) -> tuple[float, list[str]]:
    """Per-mile deviation adjustment plus cumulative cliff penalties for every threshold reached."""
    per_mile_rate = 0.15 if base_value > 50_000 else 0.12 if base_value > 25_000 else 0.08
    adjusted = base_value - (current_mileage - expected_mileage) * per_mile_rate
    cliffs: list[str] = []
    for cliff in MILEAGE_CLIFFS:
        if current_mileage >= cliff.threshold:
            adjusted -= base_value * cliff.drop_percent
            cliffs.append(cliff.label)
    return adjusted, cliffs


def estimate_msrp(segment: str, age_years: float) -> float:
    """Formula MSRP used when no price source answer is available."""
    base = BASE_MSRP.get(segment, 35_000)
    return float(round(base / MSRP_INFLATION_PER_YEAR ** max(0.0, age_years)))


def msrp_from_market_price(market_price: float, age_years: float, segment: str) -> float:
    return float(round(market_price / age_multiplier(age_years, segment)))


def theoretical_value(
    descriptor: VehicleDescriptor,
    usage: VehicleUsage,
    *,
    msrp: float,
    age_years: float,
    segment: Segment,
    region: str | None = None,
) -> TheoreticalValue:
    base = calculate_base_depreciation(msrp, age_years, segment)
    expected = age_years * usage.annual_mileage_estimate
    mileage_adjusted, cliffs = apply_mileage_adjustment(base, usage.current_mileage, expected)
    cond = condition_multiplier(usage.condition)
    regional = regional_multiplier(segment, region or usage.region, descriptor.drivetrain)
    value = max(mileage_adjusted * cond * regional, base * VALUE_FLOOR_RATIO)
    return TheoreticalValue(
        msrp=msrp,
        age_years=age_years,
        segment=segment,
        base_value=base,
        expected_mileage=expected,
        mileage_adjusted_value=mileage_adjusted,
        condition_multiplier=cond,
        regional_multiplier=regional,
        value=value,
        cliffs_applied=tuple(cliffs),
    )


def next_mileage_cliff(
    current_mileage: int,
    annual_mileage: int,
    current_value: float,
) -> MileageCliffNotice | None:
    if annual_mileage <= 0:
        return None
    monthly_mileage = annual_mileage / 12
    for cliff in MILEAGE_CLIFFS:
        if current_mileage < cliff.threshold:
            months_until = (cliff.threshold - current_mileage) / monthly_mileage
            drop = current_value * cliff.drop_percent
            return MileageCliffNotice(
                threshold=cliff.threshold,
                months_until=round(months_until, 1),
                expected_value_drop=int(round(drop)),
                drop_percent=cliff.drop_percent * 100,
                message=(
                    f"You will hit {cliff.threshold:,} miles in {months_until:.1f} months "
                    f"-> expected value drop: ${drop:,.0f}"
                ),
            )
    return None
