from __future__ import annotations

import math
from dataclasses import asdict, replace
from datetime import datetime
from typing import Sequence

import numpy as np
import pandas as pd
from scipy import stats

from valuation.data_models import ListingRecord, ListingsStatistics


DEFAULT_PRICE_PER_MILE = 0.10
TRIM_RATIO = 0.10


def market_momentum(average_days_on_market: float) -> float:
    """Signed monthly price drift implied by how fast comparable listings sell."""
    if average_days_on_market < 15:
        return 0.02
    if average_days_on_market < 25:
        return 0.01
    if average_days_on_market > 60:
        return -0.02
    if average_days_on_market > 50:
        return -0.01
    return 0.0


def trim_outliers(frame: pd.DataFrame, ratio: float = TRIM_RATIO) -> pd.DataFrame:
    ordered = frame.sort_values("price", kind="mergesort").reset_index(drop=True)
    cut = math.floor(len(ordered) * ratio)
    return ordered.iloc[cut:len(ordered) - cut]


def price_per_mile(mileage: np.ndarray, price: np.ndarray, default: float = DEFAULT_PRICE_PER_MILE) -> float:
    if len(mileage) < 2 or np.ptp(mileage) == 0:
        return default
    slope = stats.linregress(mileage, price).slope
    if not np.isfinite(slope) or slope == 0:
        return default
    return float(abs(slope))


def _same_trim(a: str | None, b: str | None) -> bool:
    return bool(a) and bool(b) and " ".join(a.lower().split()) == " ".join(b.lower().split())


def compute_statistics(
    listings: Sequence[ListingRecord],
    *,
    target_trim: str | None = None,
    fetched_at: datetime | None = None,
    trim_ratio: float = TRIM_RATIO,
    default_price_per_mile: float = DEFAULT_PRICE_PER_MILE,
) -> ListingsStatistics:
    if not listings:
        return replace(ListingsStatistics.empty(price_per_mile=default_price_per_mile), fetched_at=fetched_at)

    frame = pd.DataFrame([asdict(listing) for listing in listings])
    trimmed = trim_outliers(frame, trim_ratio)
    prices = trimmed["price"].to_numpy(dtype=float)
    mileage = trimmed["mileage"].to_numpy(dtype=float)
    avg_dom = float(trimmed["days_on_market"].mean())
    momentum = market_momentum(avg_dom)

    return ListingsStatistics(
        listings_count=len(listings),
        trimmed_count=len(trimmed),
        mean_price=float(prices.mean()),
        median_price=float(np.median(prices)),
        price_low=float(prices.min()),
        price_high=float(prices.max()),
        average_mileage=float(mileage.mean()),
        average_days_on_market=avg_dom,
        price_per_mile=price_per_mile(mileage, prices, default_price_per_mile),
        market_momentum=momentum,
        momentum_sign=int(np.sign(momentum)),
        exact_trim_match=any(_same_trim(listing.trim, target_trim) for listing in listings),
        fetched_at=fetched_at,
    )


def mileage_adjusted_average(statistics: ListingsStatistics, target_mileage: int, floor_ratio: float = 0.30) -> float:
    """Listings mean shifted to the target odometer using the regression slope."""
    if statistics.is_empty:
        return 0.0
    adjusted = statistics.mean_price - (target_mileage - statistics.average_mileage) * statistics.price_per_mile
    return max(adjusted, statistics.mean_price * floor_ratio)
