from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, Sequence

from valuation.config import RefreshConfig
from valuation.data_models import PlanLimits, RefreshEligibility, RefreshTier, RefreshTrackingRecord


MANUAL_REFRESHES_PER_WINDOW = 1

INELIGIBLE_REASONS: dict[str, str] = {
    "pro": "You can refresh once per day. Try again tomorrow.",
    "free": "Free plan allows 1 refresh per week. Upgrade to Pro for daily refreshes.",
}


def check_eligibility(
    record: RefreshTrackingRecord | None,
    plan: PlanLimits,
    now: datetime,
) -> RefreshEligibility:
    if record is None or record.manual_refresh_window_reset_at is None:
        return RefreshEligibility(can_refresh=True)

    window = timedelta(days=plan.manual_refresh_interval_days)
    reset_at = record.manual_refresh_window_reset_at
    if now - reset_at >= window:
        return RefreshEligibility(can_refresh=True)
    if record.manual_refreshes_used < MANUAL_REFRESHES_PER_WINDOW:
        return RefreshEligibility(can_refresh=True)

    next_available = reset_at + window
    return RefreshEligibility(
        can_refresh=False,
        reason=INELIGIBLE_REASONS.get(plan.plan_type, INELIGIBLE_REASONS["free"]),
        next_available_at=next_available,
        hours_until_available=round((next_available - now).total_seconds() / 3600, 1),
    )


def grant_manual_refresh(record: RefreshTrackingRecord, now: datetime) -> None:
    record.manual_refresh_window_reset_at = now
    record.manual_refreshes_used = MANUAL_REFRESHES_PER_WINDOW
    record.last_manual_refresh_at = now


def cadence(tier: RefreshTier, config: RefreshConfig) -> timedelta:
    days = config.daily_interval_days if tier == "daily" else config.weekly_interval_days
    return timedelta(days=days)


def advance_schedule(record: RefreshTrackingRecord, now: datetime, config: RefreshConfig) -> None:
    record.last_auto_refresh_at = now
    record.next_scheduled_refresh_at = now + cadence(record.tier, config)


def tier_for_new_vehicle(plan: PlanLimits, daily_in_use: int) -> tuple[RefreshTier, bool]:
    priority = plan.plan_type == "pro"
    if daily_in_use < plan.daily_refresh_slots:
        return "daily", priority
    return "weekly", priority


def can_track_another(plan: PlanLimits, tracked_count: int) -> bool:
    return plan.unlimited_vehicles or tracked_count < plan.max_vehicles


def reassign_tiers(
    records: Sequence[RefreshTrackingRecord],
    plan: PlanLimits,
    now: datetime,
    config: RefreshConfig,
) -> list[RefreshTrackingRecord]:
    """Apply a plan change to every vehicle of one user.

    The ``daily_refresh_slots`` most recently added vehicles get the daily
    tier; Pro keeps priority on every vehicle, Free clears it. Returns the
    records that changed.
    """
    newest_first = sorted(records, key=lambda r: r.created_at, reverse=True)
    is_pro = plan.plan_type == "pro"
    changed: list[RefreshTrackingRecord] = []
    for index, record in enumerate(newest_first):
        tier: RefreshTier = "daily" if is_pro and index < plan.daily_refresh_slots else "weekly"
        priority = is_pro
        if record.tier == tier and record.priority == priority:
            continue
        if tier == "daily":
            record.next_scheduled_refresh_at = min(
                record.next_scheduled_refresh_at, now + cadence("daily", config),
            )
        record.tier = tier
        record.priority = priority
        changed.append(record)
    return changed


def order_due(records: Iterable[RefreshTrackingRecord], now: datetime, limit: int) -> list[RefreshTrackingRecord]:
    due = [r for r in records if r.next_scheduled_refresh_at <= now]
    due.sort(key=lambda r: (not r.priority, r.next_scheduled_refresh_at))
    return due[:limit]
