from datetime import timedelta

import pytest
from conftest import T0

from valuation.data_models import RefreshTrackingRecord, TrackedVehicle, VehicleDescriptor, VehicleUsage
from valuation.scheduler import REFRESH_JOB_ID, build_refresh_scheduler
from valuation_service.messaging import REFRESH_EVENTS_TOPIC, KafkaBus
from valuation_service.storage import refresh_tracking_table


def test_scheduler_builds_job():
    scheduler = build_refresh_scheduler("0 * * * *", lambda: None)
    jobs = scheduler.get_jobs()
    assert len(jobs) == 1
    assert jobs[0].id == REFRESH_JOB_ID


def test_scheduler_rejects_bad_cron():
    with pytest.raises(ValueError):
        build_refresh_scheduler("0 * *", lambda: None)


def _record(vid, due, priority=False):
    return RefreshTrackingRecord(
        vehicle_id=vid, user_id="u", tier="weekly", priority=priority,
        created_at=T0, next_scheduled_refresh_at=due,
    )


@pytest.mark.asyncio
async def test_memory_store_due_ordering(store):
    await store.upsert_tracking(_record("late", T0 - timedelta(hours=1)))
    await store.upsert_tracking(_record("early", T0 - timedelta(days=2)))
    await store.upsert_tracking(_record("vip", T0 - timedelta(minutes=5), priority=True))
    await store.upsert_tracking(_record("future", T0 + timedelta(hours=1), priority=True))

    due = await store.fetch_due_tracking(T0)
    assert [r.vehicle_id for r in due] == ["vip", "early", "late"]
    assert [r.vehicle_id for r in await store.fetch_due_tracking(T0, limit=1)] == ["vip"]
    assert not await store.ping()


@pytest.mark.asyncio
async def test_memory_store_vehicle_lookup_is_normalized(store):
    for vid, year in (("a", 2020), ("b", 2023)):
        await store.upsert_tracked_vehicle(TrackedVehicle(
            vehicle_id=vid, user_id="u1", descriptor=VehicleDescriptor(year=year, make="Land Rover", model="Defender"),
            usage=VehicleUsage(current_mileage=5_000), created_at=T0,
        ))
    found = await store.find_vehicles("land  rover", "DEFENDER", 2021, 2025)
    assert [v.vehicle_id for v in found] == ["b"]
    assert found[0].descriptor.make == "Land Rover"
    assert await store.count_user_vehicles("u1") == 2
    assert await store.delete_tracked_vehicle("a")
    assert [v.vehicle_id for v in await store.list_user_vehicles("u1")] == ["b"]


@pytest.mark.asyncio
async def test_refresh_history_newest_first(store):
    for i in range(3):
        await store.insert_refresh_history({
            "vehicle_id": "v1", "user_id": "u1", "refresh_type": "scheduled",
            "value": 20_000 + i, "refreshed_at": T0 + timedelta(days=i),
        })
    rows = await store.list_refresh_history("v1", limit=2)
    assert [r["value"] for r in rows] == [20_002.0, 20_001.0]
    assert rows[0]["confidence"] == "low"


@pytest.mark.asyncio
async def test_cache_falls_back_in_process(cache):
    await cache.connect()
    assert not await cache.ping()
    await cache.set_json("k", {"a": 1}, ttl_seconds=60)
    assert await cache.get_json("k") == {"a": 1}
    await cache.delete("k")
    assert await cache.get_json("k") is None


@pytest.mark.asyncio
async def test_sql_upsert_requires_engine(store):
    with pytest.raises(RuntimeError):
        await store._upsert(refresh_tracking_table, "vehicle_id", {"vehicle_id": "v1"})


@pytest.mark.asyncio
async def test_event_buffer_drops_oldest_when_full():
    bus = KafkaBus(bootstrap_servers="localhost:65535", client_id="test", max_buffered=2)
    for i in range(3):
        await bus.publish(REFRESH_EVENTS_TOPIC, {"n": i})
    assert bus.status() == {"connected": False, "buffered": {REFRESH_EVENTS_TOPIC: 2}, "dropped": 1}
    assert [e["n"] for e in bus.drain(REFRESH_EVENTS_TOPIC)] == [1, 2]


class _RecordingProducer:
    sent: list = []

    def __init__(self, **kwargs):
        pass

    async def start(self):
        pass

    async def stop(self):
        pass

    async def send_and_wait(self, topic, value=None, key=None):
        self.sent.append((topic, value))


@pytest.mark.asyncio
async def test_buffered_events_flush_on_connect(monkeypatch):
    monkeypatch.setattr("valuation_service.messaging.AIOKafkaProducer", _RecordingProducer)
    monkeypatch.setattr(_RecordingProducer, "sent", [])
    bus = KafkaBus(bootstrap_servers="localhost:65535", client_id="test")
    await bus.publish(REFRESH_EVENTS_TOPIC, {"n": 1})
    await bus.connect()
    assert _RecordingProducer.sent == [(REFRESH_EVENTS_TOPIC, {"n": 1})]
    assert bus.drain(REFRESH_EVENTS_TOPIC) == []
    assert bus.status()["connected"] is True
