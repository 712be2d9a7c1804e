from datetime import timedelta
from types import SimpleNamespace

import pytest
from conftest import T0

from valuation.config import RefreshConfig, ValuationConfig
from valuation.data_models import TrackedVehicle, VehicleDescriptor, VehicleUsage
from valuation_service.messaging import MARKET_SHIFT_ALERTS_TOPIC
from valuation_service.plans import StaticPlanProvider
from valuation_service.refresh_scheduler import RefreshScheduler


class ScriptedValuator:
    """Returns whatever value is currently set for a model."""

    def __init__(self, values):
        self.config = ValuationConfig()
        self.values = dict(values)

    async def valuate(self, descriptor, usage, finance=None, **kwargs):
        estimate = SimpleNamespace(
            estimated=self.values[descriptor.model], confidence="high", is_degraded=False,
        )
        return SimpleNamespace(estimate=estimate)


def _camry(year=2022):
    return VehicleDescriptor(year=year, make="Toyota", model="Camry")


@pytest.mark.asyncio
async def test_small_deltas_are_ignored(detector):
    assert await detector.record_delta(_camry(), 1.49) is None
    assert await detector.record_delta(_camry(), None) is None
    assert await detector.active_alerts() == []


@pytest.mark.asyncio
async def test_repeat_deltas_join_one_alert(detector, kafka):
    created = await detector.record_delta(_camry(2022), 4.0)
    assert created is not None
    assert (created.direction, created.shift_percent) == ("up", 4.0)
    assert (created.year_start, created.year_end) == (2020, 2024)
    assert created.expires_at == T0 + timedelta(days=7)

    assert await detector.record_delta(_camry(2025), 3.0) is None
    alerts = await detector.active_alerts(make="toyota", model="camry")
    assert len(alerts) == 1
    assert alerts[0].affected_vehicles_count == 2
    assert alerts[0].year_end == 2027

    published = kafka.drain(MARKET_SHIFT_ALERTS_TOPIC)
    assert [e["id"] for e in published] == [created.id]


@pytest.mark.asyncio
async def test_downward_shift_on_other_model_is_separate(detector):
    await detector.record_delta(_camry(), 2.0)
    other = await detector.record_delta(VehicleDescriptor(year=2021, make="Honda", model="Civic"), -2.346)
    assert other.direction == "down"
    assert other.shift_percent == 2.35
    assert len(await detector.active_alerts()) == 2


@pytest.mark.asyncio
async def test_alerts_expire_after_lifetime(detector, clock):
    await detector.record_delta(_camry(), 5.0)
    clock.advance(days=7)
    assert await detector.active_alerts() == []
    assert await detector.expire_stale() == 1
    assert await detector.expire_stale() == 0

    # An expired alert no longer absorbs new deltas.
    assert await detector.record_delta(_camry(), 5.0) is not None


@pytest.mark.asyncio
async def test_trigger_refresh_scope_and_failures(detector, store, clock):
    alert = await detector.record_delta(_camry(2022), 3.0)
    for vid, year, model in (("a", 2021, "Camry"), ("b", 2024, "Camry"), ("c", 2019, "Camry"), ("d", 2022, "Corolla")):
        await store.upsert_tracked_vehicle(TrackedVehicle(
            vehicle_id=vid, user_id=f"u{vid}", descriptor=VehicleDescriptor(year=year, make="Toyota", model=model),
            usage=VehicleUsage(current_mileage=10_000), created_at=T0,
        ))

    seen = []

    async def refresh(vehicle, shift):
        seen.append(vehicle.vehicle_id)
        if vehicle.vehicle_id == "b":
            raise RuntimeError("valuation failed")

    assert await detector.trigger_refresh(alert.id, refresh) == 1
    assert sorted(seen) == ["a", "b"]
    assert (await store.get_shift_alert(alert.id)).refreshes_triggered == 1

    assert await detector.trigger_refresh("missing", refresh) == 0
    clock.advance(days=8)
    assert await detector.trigger_refresh(alert.id, refresh) == 0


@pytest.mark.asyncio
async def test_batch_deltas_raise_alert_and_shift_refresh_leaves_cadence(store, detector, clock, kafka):
    valuator = ScriptedValuator({"Camry": 20_000})
    refresher = RefreshScheduler(store, StaticPlanProvider(), valuator, detector, clock, RefreshConfig(), bus=kafka)
    usage = VehicleUsage(current_mileage=30_000)
    await refresher.init_tracking("u1", "v1", _camry(2022), usage)
    await refresher.init_tracking("u2", "v2", _camry(2023), usage)

    clock.advance(days=7)
    first = await refresher.run_scheduled_batch()
    assert first.processed == 2
    assert first.new_alerts == []

    valuator.values["Camry"] = 20_800
    clock.advance(days=7)
    second = await refresher.run_scheduled_batch()
    assert second.processed == 2
    assert len(second.new_alerts) == 1
    alert = second.new_alerts[0]
    assert (await store.get_shift_alert(alert.id)).affected_vehicles_count == 2
    assert [a.id for a in await refresher.user_market_shifts("u1")] == [alert.id]
    assert (await refresher.get_vehicle_refresh_status("u2", "v2")).market_shift.id == alert.id

    before = await store.get_tracking("v1")
    valuator.values["Camry"] = 21_500
    clock.advance(hours=3)
    assert await refresher.trigger_shift_refresh(alert.id) == 2

    after = await store.get_tracking("v1")
    assert after.next_scheduled_refresh_at == before.next_scheduled_refresh_at
    assert after.last_auto_refresh_at == before.last_auto_refresh_at
    assert after.last_manual_refresh_at is None
    assert after.last_value == 21_500

    stored = await store.get_shift_alert(alert.id)
    assert stored.refreshes_triggered == 2
    # Shift refreshes do not feed the detector again.
    assert stored.affected_vehicles_count == 2
    history = await store.list_refresh_history("v1")
    assert history[0]["refresh_type"] == "market_shift"


@pytest.mark.asyncio
async def test_live_shift_surfaces_as_valuation_alert(detector, valuator, usage):
    valuator.shift_lookup = detector.alerts_covering
    await detector.record_delta(_camry(), -4.0)

    result = await valuator.valuate(_camry(2023), usage)
    shifts = [a for a in result.alerts if a.type == "market_shift"]
    assert len(shifts) == 1
    assert shifts[0].severity == "warning"
    assert "-4.0%" in shifts[0].message

    older = await valuator.valuate(_camry(2015), usage)
    assert not [a for a in older.alerts if a.type == "market_shift"]
