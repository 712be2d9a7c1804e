from __future__ import annotations

import calendar
from datetime import datetime
from typing import Literal

import numpy as np

from valuation.data_models import EquityProjection, FinanceData, FutureProjection, OptimalSellWindow
from valuation.depreciation import MILEAGE_CLIFFS, monthly_depreciation_rate, seasonal_multiplier


PROJECTION_RANGE_PCT = 0.08
PRINCIPAL_SHARE_OF_PAYMENT = 0.70
SELL_WINDOW_BAND = 0.95
EQUITY_SEARCH_MONTHS = 60
BREAKEVEN_BAND = 200.0


def add_months(moment: datetime, months: int) -> datetime:
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def project_future_value(
    current_value: float,
    current_mileage: int,
    annual_mileage: int,
    segment: str,
    months_ahead: int,
    market_momentum: float = 0.0,
    *,
    now: datetime,
    drivetrain: str | None = None,
) -> FutureProjection:
    projected_mileage = current_mileage + annual_mileage / 12 * months_ahead
    rate = monthly_depreciation_rate(segment)

    value = current_value * (1 - rate) ** months_ahead
    value *= (1 + market_momentum) ** months_ahead

    factors: list[str] = []
    for cliff in MILEAGE_CLIFFS:
        if current_mileage < cliff.threshold <= projected_mileage:
            value *= 1 - cliff.drop_percent
            factors.append(f"Crosses {cliff.threshold:,} mile threshold")

    target_month = add_months(now, months_ahead).month
    seasonal = seasonal_multiplier(segment, target_month, drivetrain)
    value *= seasonal
    if seasonal > 1.02:
        factors.append("Seasonal demand increase")
    elif seasonal < 0.98:
        factors.append("Seasonal demand decrease")

    change = value - current_value
    change_pct = change / current_value * 100 if current_value else 0.0
    return FutureProjection(
        months_ahead=months_ahead,
        estimated=int(round(value)),
        range_low=int(round(value * (1 - PROJECTION_RANGE_PCT))),
        range_high=int(round(value * (1 + PROJECTION_RANGE_PCT))),
        change=int(round(change)),
        change_percent=round(change_pct, 1),
        projected_mileage=int(round(projected_mileage)),
        factors=tuple(factors),
    )


def _sell_recommendation(peak_month: int, start_month: int, end_month: int) -> str:
    if peak_month <= 1:
        return "Sell now for maximum value"
    if peak_month <= 3:
        return f"Optimal sale window: next {peak_month} months"
    if peak_month <= 6:
        return f"Best to sell within {start_month}-{end_month} months"
    return f"Consider holding - value peaks in {peak_month} months"


def find_optimal_sell_window(
    current_value: float,
    current_mileage: int,
    annual_mileage: int,
    segment: str,
    *,
    now: datetime,
    market_momentum: float = 0.0,
    finance: FinanceData | None = None,
    metric: Literal["auto", "value", "equity"] = "auto",
    horizon_months: int = 24,
    drivetrain: str | None = None,
) -> OptimalSellWindow:
    """Scan months 0..horizon and locate the best month to sell.

    ``metric="auto"`` optimizes equity when loan data is present and raw value
    otherwise. The window always spans months whose *value* stays within 5% of
    the peak month's value, walking outward from the peak.
    """
    if metric == "auto":
        metric = "equity" if finance is not None else "value"
    if metric == "equity" and finance is None:
        raise ValueError("equity metric requires finance data")

    values = np.array([
        project_future_value(
            current_value, current_mileage, annual_mileage, segment, month,
            market_momentum, now=now, drivetrain=drivetrain,
        ).estimated
        for month in range(horizon_months + 1)
    ], dtype=float)

    if metric == "equity":
        months = np.arange(horizon_months + 1)
        balances = np.maximum(
            0.0,
            finance.loan_balance - finance.monthly_payment * PRINCIPAL_SHARE_OF_PAYMENT * months,
        )
        scores = values - balances
    else:
        scores = values

    peak = int(np.argmax(scores))
    peak_value = values[peak]
    floor = peak_value * SELL_WINDOW_BAND

    start = peak
    while start - 1 >= 0 and values[start - 1] >= floor:
        start -= 1
    end = peak
    while end + 1 <= horizon_months and values[end + 1] >= floor:
        end += 1

    value_12 = values[12] if horizon_months >= 12 else current_value * 0.85
    return OptimalSellWindow(
        metric=metric,
        start_month=start,
        peak_month=peak,
        end_month=end,
        start_date=add_months(now, start),
        peak_date=add_months(now, peak),
        end_date=add_months(now, end),
        peak_value=int(peak_value),
        savings_vs_waiting_12_months=int(round(peak_value - value_12)),
        recommendation=_sell_recommendation(peak, start, end),
    )


def _equity_status(equity: float) -> str:
    if equity > BREAKEVEN_BAND:
        return "positive"
    if equity < -BREAKEVEN_BAND:
        return "negative"
    return "breakeven"


def calculate_equity_projection(
    current_value: float,
    loan_balance: float,
    monthly_payment: float,
    interest_rate: float,
    segment: str,
) -> EquityProjection:
    current_equity = current_value - loan_balance
    rate = monthly_depreciation_rate(segment)
    monthly_depreciation = current_value * rate
    monthly_interest = loan_balance * (interest_rate / 100) / 12
    principal = monthly_payment - monthly_interest
    at_risk = monthly_depreciation > principal

    turns_positive: int | None = None
    turns_negative: int | None = None
    if current_equity < 0 or at_risk:
        value, balance = current_value, loan_balance
        for month in range(1, EQUITY_SEARCH_MONTHS + 1):
            value *= 1 - rate
            balance = max(0.0, balance - principal)
            if current_equity < 0 and value >= balance:
                turns_positive = month
                break
            if current_equity >= 0 and value < balance:
                turns_negative = month
                break

    if current_equity >= 0 and not at_risk:
        recommendation = "You have positive equity. Good position to sell or trade."
    elif current_equity >= 0:
        recommendation = (
            f"Warning: Depreciation (${monthly_depreciation:,.0f}/mo) exceeds principal reduction "
            f"(${principal:,.0f}/mo). Consider selling within {turns_negative or 6} months."
        )
    elif turns_positive is not None and turns_positive <= 6:
        recommendation = f"Equity turns positive in {turns_positive} months. Consider waiting."
    elif turns_positive is not None:
        recommendation = (
            f"Equity turns positive in {turns_positive} months. "
            "You may need to bring cash to close if selling now."
        )
    else:
        recommendation = "Significant negative equity. Consider refinancing or accelerating payments."

    return EquityProjection(
        current_equity=int(round(current_equity)),
        status=_equity_status(current_equity),
        monthly_depreciation=int(round(monthly_depreciation)),
        monthly_principal_reduction=int(round(principal)),
        is_negative_equity_risk=at_risk,
        recommendation=recommendation,
        equity_turns_positive_in=turns_positive,
        negative_equity_in=turns_negative,
    )
