from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from valuation.data_models import (
    Alert,
    EquityProjection,
    ListingsStatistics,
    MarketContext,
    MarketShiftAlert,
    MileageCliffNotice,
    ValuationEstimate,
    VehicleDescriptor,
)


@dataclass(frozen=True)
class RefreshCycle:
    last_refresh: int
    cycle_years: int
    next_expected: int | None = None

    @property
    def next_refresh(self) -> int:
        return self.next_expected or self.last_refresh + self.cycle_years


@dataclass(frozen=True)
class ModelRefreshImpact:
    next_refresh_year: int
    months_until: int
    expected_impact: float
    message: str


# Known generation changes; a new generation typically knocks 4-10% off the outgoing one.
MODEL_REFRESH_CYCLES: dict[str, RefreshCycle] = {
    "toyota_camry": RefreshCycle(2024, 5),
    "toyota_rav4": RefreshCycle(2024, 5, 2029),
    "toyota_corolla": RefreshCycle(2019, 6, 2025),
    "toyota_highlander": RefreshCycle(2020, 5, 2025),
    "toyota_4runner": RefreshCycle(2024, 10),
    "toyota_tacoma": RefreshCycle(2024, 8),
    "toyota_tundra": RefreshCycle(2022, 7),
    "honda_civic": RefreshCycle(2022, 5, 2027),
    "honda_accord": RefreshCycle(2023, 5, 2028),
    "honda_cr-v": RefreshCycle(2023, 5, 2028),
    "honda_pilot": RefreshCycle(2023, 5, 2028),
    "ford_f-150": RefreshCycle(2021, 6, 2027),
    "ford_mustang": RefreshCycle(2024, 6),
    "ford_bronco": RefreshCycle(2021, 7),
    "ford_explorer": RefreshCycle(2020, 6, 2026),
    "chevrolet_silverado": RefreshCycle(2019, 6, 2025),
    "chevrolet_tahoe": RefreshCycle(2021, 6, 2027),
    "chevrolet_corvette": RefreshCycle(2020, 8),
    "bmw_3 series": RefreshCycle(2019, 7, 2026),
    "bmw_5 series": RefreshCycle(2024, 7),
    "bmw_x3": RefreshCycle(2024, 7),
    "bmw_x5": RefreshCycle(2019, 7, 2026),
    "mercedes-benz_c-class": RefreshCycle(2022, 7, 2029),
    "mercedes-benz_e-class": RefreshCycle(2024, 7),
    "mercedes-benz_gle": RefreshCycle(2020, 7, 2027),
    "tesla_model 3": RefreshCycle(2024, 4),
    "tesla_model y": RefreshCycle(2024, 4),
    "tesla_model s": RefreshCycle(2021, 4, 2025),
    "jeep_wrangler": RefreshCycle(2018, 10, 2028),
    "jeep_grand cherokee": RefreshCycle(2022, 6, 2028),
}


def model_refresh_impact(make: str, model: str, current_year: int) -> ModelRefreshImpact | None:
    key = f"{' '.join(make.lower().split())}_{' '.join(model.lower().split())}"
    cycle = MODEL_REFRESH_CYCLES.get(key)
    if cycle is None or cycle.next_refresh <= current_year:
        return None
    months_until = (cycle.next_refresh - current_year) * 12
    if months_until > 18:
        return None
    impact = 0.10 if months_until <= 6 else 0.07 if months_until <= 12 else 0.04
    return ModelRefreshImpact(
        next_refresh_year=cycle.next_refresh,
        months_until=months_until,
        expected_impact=impact,
        message=(
            f"New {cycle.next_refresh} {make} {model} expected -> your value may drop "
            f"~{round(impact * 100)}% when announced"
        ),
    )


def seasonal_message(estimated: float, multiplier: float) -> str | None:
    if not multiplier:
        return None
    before = estimated / multiplier
    if multiplier > 1.03:
        return f"Expected seasonal lift: +${estimated - before:,.0f} this month"
    if multiplier < 0.97:
        return f"Seasonal dip: -${before - estimated:,.0f} this month"
    return None


def demand_level(average_days_on_market: float, listings_count: int) -> str:
    if average_days_on_market < 25 or listings_count < 5:
        return "high"
    if average_days_on_market > 50 or listings_count > 50:
        return "low"
    return "medium"


def price_competitiveness(estimated: float, statistics: ListingsStatistics) -> str:
    if statistics.is_empty or not statistics.mean_price:
        return "fair"
    ratio = estimated / statistics.mean_price
    if ratio < 0.95:
        return "underpriced"
    if ratio > 1.05:
        return "overpriced"
    return "fair"


def build_market_context(
    estimate: ValuationEstimate,
    statistics: ListingsStatistics,
    descriptor: VehicleDescriptor,
    *,
    current_year: int,
    regional_multiplier: float,
) -> MarketContext:
    momentum = statistics.market_momentum
    refresh = model_refresh_impact(descriptor.make, descriptor.model, current_year)
    return MarketContext(
        similar_listings_count=statistics.listings_count,
        average_days_on_market=round(statistics.average_days_on_market, 1),
        price_competitiveness=price_competitiveness(estimate.estimated, statistics),
        demand_level=demand_level(statistics.average_days_on_market, statistics.listings_count),
        inventory_trend="decreasing" if momentum > 0 else "increasing" if momentum < 0 else "stable",
        seasonal_multiplier=estimate.seasonal_multiplier,
        regional_multiplier=regional_multiplier,
        seasonal_message=seasonal_message(estimate.estimated, estimate.seasonal_multiplier),
        model_lifecycle_impact=refresh.message if refresh else None,
    )


def market_shift_alert(shift: MarketShiftAlert) -> Alert:
    falling = shift.direction == "down"
    return Alert(
        type="market_shift",
        severity="warning" if falling else "info",
        title=f"{shift.make} {shift.model} Prices {'Falling' if falling else 'Rising'}",
        message=(
            f"Tracked {shift.year_start}-{shift.year_end} {shift.make} {shift.model} values moved "
            f"{'-' if falling else '+'}{shift.shift_percent}% across {shift.affected_vehicles_count} vehicle(s)"
        ),
        actionable=not falling,
        suggested_action=None if falling else "Prices are up for this model - a good moment to list",
    )


def build_alerts(
    market: MarketContext,
    next_cliff: MileageCliffNotice | None,
    equity: EquityProjection | None,
    shifts: Sequence[MarketShiftAlert] = (),
) -> tuple[Alert, ...]:
    alerts: list[Alert] = []

    for shift in shifts:
        alerts.append(market_shift_alert(shift))

    if next_cliff is not None and next_cliff.months_until <= 6:
        urgent = next_cliff.months_until <= 2
        alerts.append(Alert(
            type="mileage_cliff",
            severity="urgent" if urgent else "warning",
            title=f"Approaching {next_cliff.threshold:,} miles",
            message=next_cliff.message,
            actionable=True,
            suggested_action=(
                "Consider selling before crossing this threshold" if urgent
                else "Plan your sale timing around this milestone"
            ),
        ))

    if equity is not None:
        if equity.is_negative_equity_risk:
            alerts.append(Alert(
                type="equity_warning",
                severity="warning",
                title="Negative Equity Risk",
                message=(
                    f"Your depreciation (${equity.monthly_depreciation}/mo) exceeds principal "
                    f"reduction (${equity.monthly_principal_reduction}/mo)"
                ),
                actionable=True,
                suggested_action="Consider selling soon or making extra payments",
            ))
        if equity.current_equity < -2000:
            alerts.append(Alert(
                type="equity_warning",
                severity="urgent",
                title="Significant Negative Equity",
                message=f"You're currently ${abs(equity.current_equity):,} underwater",
                actionable=True,
                suggested_action=(
                    f"Wait {equity.equity_turns_positive_in} months for equity to turn positive"
                    if equity.equity_turns_positive_in
                    else "Consider refinancing or gap insurance"
                ),
            ))

    if market.model_lifecycle_impact:
        alerts.append(Alert(
            type="model_refresh",
            severity="info",
            title="Model Refresh Coming",
            message=market.model_lifecycle_impact,
            actionable=True,
            suggested_action="Consider selling before the new model announcement",
        ))

    if market.seasonal_message:
        rising = market.seasonal_multiplier > 1
        alerts.append(Alert(
            type="seasonal",
            severity="info",
            title="Seasonal Demand Increase" if rising else "Seasonal Demand Decrease",
            message=market.seasonal_message,
            actionable=rising,
            suggested_action="Good time to sell - demand is higher" if rising else None,
        ))

    if market.demand_level == "high" and 0 < market.similar_listings_count < 10:
        alerts.append(Alert(
            type="market_trend",
            severity="info",
            title="Low Inventory, High Demand",
            message=f"Only {market.similar_listings_count} similar vehicles available nearby",
            actionable=True,
            suggested_action="You can price at the higher end of the range",
        ))

    return tuple(alerts)
