import asyncio
from datetime import timedelta

import pytest
from conftest import T0

from valuation.config import RefreshConfig
from valuation.data_models import VehicleDescriptor, VehicleUsage
from valuation_service.errors import (
    InvalidVehicleInputError,
    TrackingNotFoundError,
    UpstreamUnavailableError,
    VehicleLimitExceededError,
)
from valuation_service.messaging import REFRESH_EVENTS_TOPIC
from valuation_service.plans import StaticPlanProvider
from valuation_service.refresh_scheduler import RefreshScheduler, outcome_payload


class RecordingValuator:
    """Delegates to a real valuator, remembering call order and failing chosen models."""

    def __init__(self, inner, fail_models=(), on_call=None):
        self.inner = inner
        self.config = inner.config
        self.fail_models = set(fail_models)
        self.on_call = on_call
        self.seen: list[str] = []

    async def valuate(self, descriptor, usage, finance=None, **kwargs):
        self.seen.append(descriptor.model)
        if self.on_call is not None:
            self.on_call()
        if descriptor.model in self.fail_models:
            raise UpstreamUnavailableError("listings down", endpoint="listings.search")
        return await self.inner.valuate(descriptor, usage, finance, **kwargs)


def _car(model, year=2022):
    return VehicleDescriptor(year=year, make="Toyota", model=model)


def _scheduler(store, plans, valuator, detector, clock, kafka, **config):
    return RefreshScheduler(store, plans, valuator, detector, clock, RefreshConfig(**config), bus=kafka)


# ── Tracking lifecycle ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_free_user_tracking_limits(refresher, camry, usage):
    record = await refresher.init_tracking("u1", "v1", camry, usage)
    assert record.tier == "weekly"
    assert not record.priority
    assert record.next_scheduled_refresh_at == T0 + timedelta(days=7)

    assert await refresher.init_tracking("u1", "v1", camry, usage) == record
    with pytest.raises(InvalidVehicleInputError):
        await refresher.init_tracking("u2", "v1", camry, usage)
    with pytest.raises(VehicleLimitExceededError):
        await refresher.init_tracking("u1", "v2", _car("Corolla"), usage)


@pytest.mark.asyncio
async def test_invalid_vehicle_is_never_tracked(refresher, store, usage):
    with pytest.raises(InvalidVehicleInputError):
        await refresher.init_tracking("u1", "v1", VehicleDescriptor(year=2022, make="Nope", model="X"), usage)
    assert await store.get_tracking("v1") is None


@pytest.mark.asyncio
async def test_pro_daily_slots_then_weekly(store, valuator, detector, clock, kafka, usage):
    refresher = _scheduler(store, StaticPlanProvider({"pro1": "pro"}), valuator, detector, clock, kafka)
    tiers = []
    for i in range(11):
        record = await refresher.init_tracking("pro1", f"v{i}", _car("Camry"), usage)
        tiers.append((record.tier, record.priority))
    assert tiers[:10] == [("daily", True)] * 10
    assert tiers[10] == ("weekly", True)


@pytest.mark.asyncio
async def test_plan_downgrade_and_upgrade_retier(store, valuator, detector, clock, kafka, usage):
    plans = StaticPlanProvider({"u1": "pro"})
    refresher = _scheduler(store, plans, valuator, detector, clock, kafka)
    await refresher.init_tracking("u1", "old", _car("Camry"), usage)
    clock.advance(hours=1)
    await refresher.init_tracking("u1", "new", _car("RAV4"), usage)

    plans.set_plan("u1", "free")
    changed = await refresher.apply_plan_change("u1")
    assert {r.vehicle_id for r in changed} == {"old", "new"}
    for vid in ("old", "new"):
        record = await store.get_tracking(vid)
        assert (record.tier, record.priority) == ("weekly", False)

    plans.set_plan("u1", "pro")
    clock.advance(days=2)
    await refresher.apply_plan_change("u1")
    new = await store.get_tracking("new")
    assert (new.tier, new.priority) == ("daily", True)
    assert new.next_scheduled_refresh_at == T0 + timedelta(hours=1, days=1)
    assert await refresher.apply_plan_change("u1") == []


@pytest.mark.asyncio
async def test_remove_tracking(refresher, camry, usage):
    await refresher.init_tracking("u1", "v1", camry, usage)
    assert await refresher.remove_tracking("v1")
    assert not await refresher.remove_tracking("v1")
    with pytest.raises(TrackingNotFoundError):
        await refresher.get_vehicle_refresh_status("u1", "v1")
    await refresher.init_tracking("u1", "v2", camry, usage)


# ── Manual refresh ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_free_manual_refresh_window(refresher, store, clock, kafka, camry, usage):
    await refresher.init_tracking("u1", "v1", camry, usage)
    eligibility = await refresher.check_refresh_eligibility("u1", "v1")
    assert eligibility.can_refresh

    outcome = await refresher.perform_manual_refresh("u1", "v1")
    assert outcome.success
    assert outcome.result.estimate.estimated > 0
    assert outcome.change_percent is None

    clock.advance(days=2)
    refused = await refresher.perform_manual_refresh("u1", "v1")
    assert not refused.success
    assert refused.eligibility.reason.startswith("Free plan allows 1 refresh per week")
    assert refused.eligibility.next_available_at == T0 + timedelta(days=7)
    assert refused.eligibility.hours_until_available == 120.0

    record = await store.get_tracking("v1")
    assert record.last_manual_refresh_at == T0
    assert record.last_auto_refresh_at is None
    assert record.next_scheduled_refresh_at == T0 + timedelta(days=7)
    assert len(await store.list_refresh_history("v1")) == 1
    assert [e["refresh_type"] for e in kafka.drain(REFRESH_EVENTS_TOPIC)] == ["manual"]

    clock.advance(days=5)
    assert (await refresher.check_refresh_eligibility("u1", "v1")).can_refresh


@pytest.mark.asyncio
async def test_manual_refresh_for_someone_elses_vehicle(refresher, camry, usage):
    await refresher.init_tracking("u1", "v1", camry, usage)
    with pytest.raises(TrackingNotFoundError):
        await refresher.perform_manual_refresh("u2", "v1")
    with pytest.raises(TrackingNotFoundError):
        await refresher.check_refresh_eligibility("u2", "v1")


@pytest.mark.asyncio
async def test_concurrent_manual_refreshes_grant_once(refresher, camry, usage):
    await refresher.init_tracking("u1", "v1", camry, usage)
    outcomes = await asyncio.gather(
        refresher.perform_manual_refresh("u1", "v1"),
        refresher.perform_manual_refresh("u1", "v1"),
    )
    assert sorted(o.success for o in outcomes) == [False, True]


@pytest.mark.asyncio
async def test_failed_manual_refresh_keeps_eligibility(store, valuator, detector, clock, kafka, camry, usage):
    flaky = RecordingValuator(valuator, fail_models={"Camry"})
    refresher = _scheduler(store, StaticPlanProvider(), flaky, detector, clock, kafka)
    await refresher.init_tracking("u1", "v1", camry, usage)
    with pytest.raises(UpstreamUnavailableError):
        await refresher.perform_manual_refresh("u1", "v1")
    assert (await refresher.check_refresh_eligibility("u1", "v1")).can_refresh


@pytest.mark.asyncio
async def test_scheduled_refresh_does_not_reset_manual_window(refresher, store, clock, camry, usage):
    await refresher.init_tracking("u1", "v1", camry, usage)
    clock.advance(days=6)
    await refresher.perform_manual_refresh("u1", "v1")

    clock.advance(days=1)
    batch = await refresher.run_scheduled_batch()
    assert batch.processed == 1

    record = await store.get_tracking("v1")
    assert record.last_auto_refresh_at == T0 + timedelta(days=7)
    assert record.next_scheduled_refresh_at == T0 + timedelta(days=14)
    assert record.manual_refresh_window_reset_at == T0 + timedelta(days=6)
    assert not (await refresher.check_refresh_eligibility("u1", "v1")).can_refresh


# ── Batch driver ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_batch_isolates_failures(store, valuator, detector, clock, kafka, usage):
    flaky = RecordingValuator(valuator, fail_models={"Corolla"})
    refresher = _scheduler(store, StaticPlanProvider(), flaky, detector, clock, kafka)
    for i, model in enumerate(("Camry", "Corolla", "RAV4")):
        await refresher.init_tracking(f"u{i}", f"v{i}", _car(model), usage)

    clock.advance(days=7)
    result = await refresher.run_scheduled_batch()
    assert (result.processed, result.errors, result.skipped) == (2, 1, 0)
    assert sorted(flaky.seen) == ["Camry", "Corolla", "RAV4"]

    due = await store.fetch_due_tracking(clock.now())
    assert [r.vehicle_id for r in due] == ["v1"]
    assert (await store.get_tracking("v0")).next_scheduled_refresh_at == clock.now() + timedelta(days=7)
    assert await store.list_refresh_history("v1") == []


@pytest.mark.asyncio
async def test_batch_runs_priority_vehicles_first(store, valuator, detector, clock, kafka, usage):
    recorder = RecordingValuator(valuator)
    plans = StaticPlanProvider({"pro1": "pro"})
    refresher = _scheduler(store, plans, recorder, detector, clock, kafka, worker_count=1)
    await refresher.init_tracking("free1", "vf", _car("Corolla"), usage)
    clock.advance(hours=1)
    await refresher.init_tracking("pro1", "vp", _car("RAV4"), usage)

    clock.advance(days=8)
    result = await refresher.run_scheduled_batch()
    assert result.processed == 2
    assert recorder.seen == ["RAV4", "Corolla"]


@pytest.mark.asyncio
async def test_batch_paging_covers_more_than_one_page(store, valuator, detector, clock, kafka, usage):
    refresher = _scheduler(store, StaticPlanProvider(), valuator, detector, clock, kafka, batch_size=2)
    for i in range(5):
        await refresher.init_tracking(f"u{i}", f"v{i}", _car("Camry"), usage)
    clock.advance(days=7)
    result = await refresher.run_scheduled_batch()
    assert result.processed == 5
    assert await store.fetch_due_tracking(clock.now()) == []


@pytest.mark.asyncio
async def test_cancelled_batch_leaves_rest_due(store, valuator, detector, clock, kafka, usage):
    cancel = asyncio.Event()
    recorder = RecordingValuator(valuator, on_call=cancel.set)
    refresher = _scheduler(store, StaticPlanProvider(), recorder, detector, clock, kafka, worker_count=1)
    for i in range(3):
        await refresher.init_tracking(f"u{i}", f"v{i}", _car("Camry"), usage)

    clock.advance(days=7)
    result = await refresher.run_scheduled_batch(cancel_event=cancel)
    assert (result.processed, result.skipped) == (1, 2)
    assert len(await store.fetch_due_tracking(clock.now())) == 2


@pytest.mark.asyncio
async def test_batch_past_deadline_does_nothing(refresher, store, clock, camry, usage):
    await refresher.init_tracking("u1", "v1", camry, usage)
    clock.advance(days=7)
    result = await refresher.run_scheduled_batch(deadline=clock.now())
    assert (result.processed, result.errors, result.skipped) == (0, 0, 0)
    assert len(await store.fetch_due_tracking(clock.now())) == 1


# ── Status ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_vehicle_status_and_user_summary(store, valuator, detector, clock, kafka, usage):
    refresher = _scheduler(store, StaticPlanProvider({"u1": "pro"}), valuator, detector, clock, kafka)
    await refresher.init_tracking("u1", "v1", _car("Camry"), usage)
    await refresher.init_tracking("u1", "v2", _car("RAV4"), usage)
    outcome = await refresher.perform_manual_refresh("u1", "v1")

    status = await refresher.get_vehicle_refresh_status("u1", "v1")
    assert status.tier == "daily"
    assert status.priority
    assert status.last_manual_refresh_at == T0
    assert status.last_value == outcome.result.estimate.estimated
    assert not status.eligibility.can_refresh
    assert status.market_shift is None

    summary = await refresher.get_user_refresh_summary("u1")
    assert summary.plan_type == "pro"
    assert (summary.total_vehicles, summary.daily_refresh_vehicles, summary.weekly_refresh_vehicles) == (2, 2, 0)
    assert summary.vehicles_due_for_refresh == 0
    assert summary.manual_refreshes_available == 1
    assert summary.manual_refresh_reset_at == T0 + timedelta(days=1)
    assert summary.active_market_shifts == 0

    payload = outcome_payload(outcome)
    assert "result" not in payload
    assert payload["estimate"]["estimated"] == outcome.result.estimate.estimated
