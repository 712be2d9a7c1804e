from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ValuationConfig:
    listings_cache_ttl_days: int = 7
    valuation_cache_ttl_days: int = 30
    valuation_mileage_bucket: int = 10_000
    valuation_mileage_tolerance: int = 5_000
    default_annual_mileage: int = 12_000
    projection_horizons: tuple[int, ...] = (3, 6, 12, 24)
    sell_window_months: int = 24
    value_floor_ratio: float = 0.30
    estimate_range_pct: float = 0.10
    projection_range_pct: float = 0.08
    default_price_per_mile: float = 0.10
    listings_trim_ratio: float = 0.10
    min_model_year: int = 1900
    max_future_model_years: int = 2


@dataclass(frozen=True)
class RefreshConfig:
    daily_interval_days: int = 1
    weekly_interval_days: int = 7
    batch_size: int = 100
    worker_count: int = 4
    shift_threshold_pct: float = 1.5
    shift_alert_lifetime_days: int = 7
    shift_year_span: int = 2
    shift_refresh_limit: int = 50
    refresh_cron: str = "0 * * * *"  # Hourly
