from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal


Segment = Literal["economy", "mainstream", "premium", "luxury", "truck", "suv", "sports", "ev", "exotic"]
Condition = Literal["excellent", "good", "fair", "poor"]
Region = Literal["northeast", "southeast", "midwest", "southwest", "west", "pacific"]
Confidence = Literal["high", "medium", "low"]
SellerType = Literal["dealer", "private", "auction"]
RefreshTier = Literal["daily", "weekly"]
PlanType = Literal["free", "pro"]
ShiftDirection = Literal["up", "down"]
SellMetric = Literal["value", "equity"]
EquityStatus = Literal["positive", "negative", "breakeven"]
AlertType = Literal["mileage_cliff", "equity_warning", "model_refresh", "seasonal", "market_trend", "market_shift"]
AlertSeverity = Literal["info", "warning", "urgent"]
DegradedReason = Literal["listings_unavailable", "msrp_unavailable", "all_keys_exhausted", "rate_limited"]

SEGMENTS: tuple[str, ...] = (
    "economy", "mainstream", "premium", "luxury", "truck", "suv", "sports", "ev", "exotic",
)
CONDITIONS: tuple[str, ...] = ("excellent", "good", "fair", "poor")
REGIONS: tuple[str, ...] = ("northeast", "southeast", "midwest", "southwest", "west", "pacific")


def _norm(value: str | None) -> str:
    return " ".join((value or "").lower().split())


# ── Inputs ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class VehicleDescriptor:
    year: int
    make: str
    model: str
    trim: str | None = None
    fuel_type: str | None = None
    drivetrain: str | None = None

    def cache_key(self) -> str:
        return "|".join([_norm(self.make), _norm(self.model), str(self.year), _norm(self.trim) or "all"])


@dataclass(frozen=True)
class VehicleUsage:
    current_mileage: int
    annual_mileage_estimate: int = 12_000
    condition: Condition = "good"
    region: Region | None = None
    zip_code: str | None = None
    is_urban: bool = True


@dataclass(frozen=True)
class FinanceData:
    loan_balance: float
    monthly_payment: float
    interest_rate: float
    remaining_payments: int | None = None


@dataclass(frozen=True)
class ListingRecord:
    price: float
    mileage: int
    days_on_market: int
    seller_type: SellerType
    distance: float
    year: int
    source: str
    trim: str | None = None


@dataclass(frozen=True)
class Degraded:
    reason: DegradedReason
    detail: str = ""


# ── Listings ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ListingsStatistics:
    listings_count: int
    trimmed_count: int
    mean_price: float
    median_price: float
    price_low: float
    price_high: float
    average_mileage: float
    average_days_on_market: float
    price_per_mile: float
    market_momentum: float
    momentum_sign: int
    exact_trim_match: bool = False
    fetched_at: datetime | None = None
    degraded: Degraded | None = None

    @property
    def is_empty(self) -> bool:
        return self.trimmed_count == 0

    @classmethod
    def empty(cls, *, degraded: Degraded | None = None, price_per_mile: float = 0.10) -> "ListingsStatistics":
        return cls(
            listings_count=0,
            trimmed_count=0,
            mean_price=0.0,
            median_price=0.0,
            price_low=0.0,
            price_high=0.0,
            average_mileage=0.0,
            average_days_on_market=0.0,
            price_per_mile=price_per_mile,
            market_momentum=0.0,
            momentum_sign=0,
            degraded=degraded,
        )


# ── Valuation outputs ───────────────────────────────────────────────

@dataclass(frozen=True)
class TheoreticalValue:
    msrp: float
    age_years: float
    segment: Segment
    base_value: float
    expected_mileage: float
    mileage_adjusted_value: float
    condition_multiplier: float
    regional_multiplier: float
    value: float
    cliffs_applied: tuple[str, ...] = ()


@dataclass(frozen=True)
class ValuationEstimate:
    estimated: int
    trade_in: int
    private_party: int
    instant: int
    confidence: Confidence
    price_low: int
    price_high: int
    segment: Segment
    listings_weight: float
    model_weight: float
    listings_used: int
    mileage: int
    theoretical_value: int
    seasonal_multiplier: float
    market_momentum: float = 0.0
    degraded: tuple[Degraded, ...] = ()

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded)

    def to_json(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "ValuationEstimate":
        data = dict(payload)
        data["degraded"] = tuple(Degraded(**d) for d in data.get("degraded") or ())
        return cls(**data)


@dataclass(frozen=True)
class FutureProjection:
    months_ahead: int
    estimated: int
    range_low: int
    range_high: int
    change: int
    change_percent: float
    projected_mileage: int
    factors: tuple[str, ...] = ()


@dataclass(frozen=True)
class OptimalSellWindow:
    metric: SellMetric
    start_month: int
    peak_month: int
    end_month: int
    start_date: datetime
    peak_date: datetime
    end_date: datetime
    peak_value: int
    savings_vs_waiting_12_months: int
    recommendation: str


@dataclass(frozen=True)
class EquityProjection:
    current_equity: int
    status: EquityStatus
    monthly_depreciation: int
    monthly_principal_reduction: int
    is_negative_equity_risk: bool
    recommendation: str
    equity_turns_positive_in: int | None = None
    negative_equity_in: int | None = None


@dataclass(frozen=True)
class MileageCliffNotice:
    threshold: int
    months_until: float
    expected_value_drop: int
    drop_percent: float
    message: str


@dataclass(frozen=True)
class Alert:
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    actionable: bool
    suggested_action: str | None = None


@dataclass(frozen=True)
class MarketContext:
    similar_listings_count: int
    average_days_on_market: float
    price_competitiveness: Literal["underpriced", "fair", "overpriced"]
    demand_level: Literal["high", "medium", "low"]
    inventory_trend: Literal["increasing", "stable", "decreasing"]
    seasonal_multiplier: float
    regional_multiplier: float
    seasonal_message: str | None = None
    model_lifecycle_impact: str | None = None


@dataclass(frozen=True)
class ValuationResult:
    estimate: ValuationEstimate
    projections: tuple[FutureProjection, ...]
    optimal_sell_window: OptimalSellWindow
    market: MarketContext
    alerts: tuple[Alert, ...] = ()
    equity: EquityProjection | None = None
    value_sell_window: OptimalSellWindow | None = None
    next_mileage_cliff: MileageCliffNotice | None = None
    from_cache: bool = False


# ── Scheduling state ────────────────────────────────────────────────

@dataclass(frozen=True)
class PlanLimits:
    plan_type: PlanType
    max_vehicles: int
    daily_refresh_slots: int
    manual_refresh_interval_days: int

    @property
    def unlimited_vehicles(self) -> bool:
        return self.max_vehicles < 0


PLAN_DEFINITIONS: dict[str, PlanLimits] = {
    "free": PlanLimits(plan_type="free", max_vehicles=1, daily_refresh_slots=0, manual_refresh_interval_days=7),
    "pro": PlanLimits(plan_type="pro", max_vehicles=-1, daily_refresh_slots=10, manual_refresh_interval_days=1),
}


@dataclass
class TrackedVehicle:
    vehicle_id: str
    user_id: str
    descriptor: VehicleDescriptor
    usage: VehicleUsage
    created_at: datetime
    msrp: float | None = None


@dataclass
class RefreshTrackingRecord:
    vehicle_id: str
    user_id: str
    tier: RefreshTier
    priority: bool
    created_at: datetime
    next_scheduled_refresh_at: datetime
    last_auto_refresh_at: datetime | None = None
    last_manual_refresh_at: datetime | None = None
    manual_refreshes_used: int = 0
    manual_refresh_window_reset_at: datetime | None = None
    last_value: float | None = None
    previous_value: float | None = None
    value_change_percent: float | None = None

    def record_value(self, value: float) -> float | None:
        """Shift last value into previous and return the percent change, if any."""
        self.previous_value = self.last_value
        self.last_value = float(value)
        if self.previous_value:
            self.value_change_percent = (self.last_value - self.previous_value) / self.previous_value * 100.0
        else:
            self.value_change_percent = None
        return self.value_change_percent


@dataclass(frozen=True)
class RefreshEligibility:
    can_refresh: bool
    reason: str | None = None
    next_available_at: datetime | None = None
    hours_until_available: float | None = None


@dataclass
class MarketShiftAlert:
    id: str
    make: str
    model: str
    year_start: int
    year_end: int
    shift_percent: float
    direction: ShiftDirection
    detected_at: datetime
    expires_at: datetime
    is_active: bool = True
    affected_vehicles_count: int = 1
    refreshes_triggered: int = 0
    source: str = "refresh_delta"

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now

    def covers(self, descriptor: VehicleDescriptor) -> bool:
        return (
            _norm(descriptor.make) == _norm(self.make)
            and _norm(descriptor.model) == _norm(self.model)
            and self.year_start <= descriptor.year <= self.year_end
        )


@dataclass
class BatchResult:
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    new_alerts: list[MarketShiftAlert] = field(default_factory=list)


RefreshType = Literal["scheduled", "manual", "market_shift"]


@dataclass(frozen=True)
class RefreshOutcome:
    vehicle_id: str
    refresh_type: RefreshType
    success: bool
    eligibility: RefreshEligibility | None = None
    result: ValuationResult | None = None
    change_percent: float | None = None
    new_alert: MarketShiftAlert | None = None


@dataclass(frozen=True)
class VehicleRefreshStatus:
    vehicle_id: str
    tier: RefreshTier
    priority: bool
    last_auto_refresh_at: datetime | None
    last_manual_refresh_at: datetime | None
    next_scheduled_refresh_at: datetime
    eligibility: RefreshEligibility
    last_value: float | None = None
    value_change_percent: float | None = None
    market_shift: MarketShiftAlert | None = None


@dataclass(frozen=True)
class UserRefreshSummary:
    plan_type: PlanType
    total_vehicles: int
    daily_refresh_vehicles: int
    weekly_refresh_vehicles: int
    vehicles_due_for_refresh: int
    manual_refreshes_available: int
    manual_refresh_reset_at: datetime | None
    active_market_shifts: int
