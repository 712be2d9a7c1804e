from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable

from valuation.config import RefreshConfig
from valuation.data_models import (
    BatchResult,
    MarketShiftAlert,
    RefreshEligibility,
    RefreshOutcome,
    RefreshTrackingRecord,
    RefreshType,
    TrackedVehicle,
    UserRefreshSummary,
    VehicleDescriptor,
    VehicleRefreshStatus,
    VehicleUsage,
)
from valuation.refresh_policy import (
    advance_schedule,
    can_track_another,
    cadence,
    check_eligibility,
    grant_manual_refresh,
    reassign_tiers,
    tier_for_new_vehicle,
)
from valuation_service.clock import Clock
from valuation_service.errors import InvalidVehicleInputError, TrackingNotFoundError, VehicleLimitExceededError
from valuation_service.logging_config import new_batch_id
from valuation_service.market_shift import MarketShiftDetector
from valuation_service.messaging import REFRESH_EVENTS_TOPIC, KafkaBus
from valuation_service.plans import PlanProvider
from valuation_service.storage import PostgresStore
from valuation_service.valuator import Valuator, validate_inputs

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Per-vehicle refresh cadence, manual refresh gating and the batch driver."""

    def __init__(
        self,
        store: PostgresStore,
        plans: PlanProvider,
        valuator: Valuator,
        detector: MarketShiftDetector,
        clock: Clock,
        config: RefreshConfig | None = None,
        bus: KafkaBus | None = None,
    ) -> None:
        self.store = store
        self.plans = plans
        self.valuator = valuator
        self.detector = detector
        self.clock = clock
        self.config = config or RefreshConfig()
        self.bus = bus
        self._vehicle_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _owned_vehicle(self, user_id: str, vehicle_id: str) -> TrackedVehicle:
        vehicle = await self.store.get_tracked_vehicle(vehicle_id)
        if vehicle is None or vehicle.user_id != user_id:
            raise TrackingNotFoundError(vehicle_id)
        return vehicle

    # ── Tracking lifecycle ──────────────────────────────────────────

    async def init_tracking(
        self,
        user_id: str,
        vehicle_id: str,
        descriptor: VehicleDescriptor,
        usage: VehicleUsage,
        msrp: float | None = None,
    ) -> RefreshTrackingRecord:
        now = self.clock.now()
        validate_inputs(descriptor, usage, None, now, self.valuator.config)

        existing = await self.store.get_tracking(vehicle_id)
        if existing is not None:
            if existing.user_id != user_id:
                raise InvalidVehicleInputError(f"vehicle {vehicle_id} is tracked by another user")
            return existing

        plan = await self.plans.get_limits(user_id)
        if not can_track_another(plan, await self.store.count_user_vehicles(user_id)):
            raise VehicleLimitExceededError(user_id, plan.max_vehicles)

        daily_in_use = sum(1 for r in await self.store.list_user_tracking(user_id) if r.tier == "daily")
        tier, priority = tier_for_new_vehicle(plan, daily_in_use)
        record = RefreshTrackingRecord(
            vehicle_id=vehicle_id,
            user_id=user_id,
            tier=tier,
            priority=priority,
            created_at=now,
            next_scheduled_refresh_at=now + cadence(tier, self.config),
            manual_refresh_window_reset_at=now,
        )
        await self.store.upsert_tracked_vehicle(TrackedVehicle(
            vehicle_id=vehicle_id,
            user_id=user_id,
            descriptor=descriptor,
            usage=usage,
            created_at=now,
            msrp=msrp,
        ))
        await self.store.upsert_tracking(record)
        logger.info("Tracking %s for %s on %s tier", vehicle_id, user_id, tier)
        return record

    async def remove_tracking(self, vehicle_id: str) -> bool:
        removed_tracking = await self.store.delete_tracking(vehicle_id)
        removed_vehicle = await self.store.delete_tracked_vehicle(vehicle_id)
        self._vehicle_locks.pop(vehicle_id, None)
        return removed_tracking or removed_vehicle

    async def apply_plan_change(self, user_id: str) -> list[RefreshTrackingRecord]:
        plan = await self.plans.get_limits(user_id)
        now = self.clock.now()
        changed = reassign_tiers(await self.store.list_user_tracking(user_id), plan, now, self.config)
        for record in changed:
            await self.store.upsert_tracking(record)
        logger.info("Plan %s applied to %s: %d vehicles re-tiered", plan.plan_type, user_id, len(changed))
        return changed

    # ── Manual refresh ──────────────────────────────────────────────

    async def check_refresh_eligibility(
        self, user_id: str, vehicle_id: str, now: datetime | None = None,
    ) -> RefreshEligibility:
        plan = await self.plans.get_limits(user_id)
        record = await self.store.get_tracking(vehicle_id)
        if record is not None and record.user_id != user_id:
            raise TrackingNotFoundError(vehicle_id)
        return check_eligibility(record, plan, now or self.clock.now())

    async def perform_manual_refresh(self, user_id: str, vehicle_id: str) -> RefreshOutcome:
        vehicle = await self._owned_vehicle(user_id, vehicle_id)
        async with self._vehicle_locks[vehicle_id]:
            now = self.clock.now()
            eligibility = await self.check_refresh_eligibility(user_id, vehicle_id, now)
            if not eligibility.can_refresh:
                logger.info("Manual refresh refused for %s: %s", vehicle_id, eligibility.reason)
                return RefreshOutcome(
                    vehicle_id=vehicle_id, refresh_type="manual", success=False, eligibility=eligibility,
                )
            return await self._refresh(vehicle, "manual", now)

    # ── Refresh execution ───────────────────────────────────────────

    async def refresh_vehicle(
        self, vehicle: TrackedVehicle, refresh_type: RefreshType, now: datetime | None = None,
    ) -> RefreshOutcome:
        async with self._vehicle_locks[vehicle.vehicle_id]:
            return await self._refresh(vehicle, refresh_type, now or self.clock.now())

    async def refresh_for_shift(self, vehicle: TrackedVehicle, alert: MarketShiftAlert) -> RefreshOutcome:
        return await self.refresh_vehicle(vehicle, "market_shift")

    async def _refresh(self, vehicle: TrackedVehicle, refresh_type: RefreshType, now: datetime) -> RefreshOutcome:
        result = await self.valuator.valuate(
            vehicle.descriptor, vehicle.usage, msrp=vehicle.msrp, force_refresh=True,
        )
        estimate = result.estimate

        record = await self.store.get_tracking(vehicle.vehicle_id)
        if record is None:
            raise TrackingNotFoundError(vehicle.vehicle_id)
        if refresh_type == "scheduled":
            advance_schedule(record, now, self.config)
        elif refresh_type == "manual":
            grant_manual_refresh(record, now)
        previous = record.last_value
        delta = record.record_value(estimate.estimated)
        await self.store.upsert_tracking(record)

        event: dict[str, Any] = {
            "vehicle_id": vehicle.vehicle_id,
            "user_id": vehicle.user_id,
            "refresh_type": refresh_type,
            "value": estimate.estimated,
            "previous_value": previous,
            "change_percent": delta,
            "confidence": estimate.confidence,
            "degraded": estimate.is_degraded,
            "refreshed_at": now,
        }
        await self.store.insert_refresh_history(event)
        if self.bus is not None:
            await self.bus.publish(
                REFRESH_EVENTS_TOPIC, {**event, "refreshed_at": now.isoformat()}, key=vehicle.vehicle_id,
            )

        # Shift-triggered refreshes would otherwise feed back into the detector.
        new_alert = None
        if refresh_type != "market_shift":
            new_alert = await self.detector.record_delta(vehicle.descriptor, delta, now)

        logger.info(
            "Refreshed %s (%s): %d%s", vehicle.vehicle_id, refresh_type, estimate.estimated,
            f" ({delta:+.2f}%)" if delta is not None else "",
        )
        return RefreshOutcome(
            vehicle_id=vehicle.vehicle_id,
            refresh_type=refresh_type,
            success=True,
            result=result,
            change_percent=delta,
            new_alert=new_alert,
        )

    # ── Batch driver ────────────────────────────────────────────────

    async def run_scheduled_batch(
        self,
        now: datetime | None = None,
        deadline: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """Refresh every due vehicle, priority first, with a bounded worker pool.

        Once ``deadline`` passes or ``cancel_event`` is set no new vehicle is
        picked up; in-flight refreshes finish and the rest stay due.
        """
        batch_id = new_batch_id()
        now = now or self.clock.now()
        result = BatchResult()

        def stopped() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                return True
            return deadline is not None and self.clock.now() >= deadline

        await self.detector.expire_stale(now)

        attempted: set[str] = set()
        while not stopped():
            due = await self.store.fetch_due_tracking(now, limit=self.config.batch_size + len(attempted))
            batch = [r for r in due if r.vehicle_id not in attempted][: self.config.batch_size]
            if not batch:
                break
            attempted.update(r.vehicle_id for r in batch)
            await self._run_workers(batch, now, result, stopped)

        logger.info(
            "Batch %s finished: %d processed, %d errors, %d skipped, %d new shifts",
            batch_id, result.processed, result.errors, result.skipped, len(result.new_alerts),
        )
        return result

    async def _run_workers(
        self,
        batch: list[RefreshTrackingRecord],
        now: datetime,
        result: BatchResult,
        stopped: Callable[[], bool],
    ) -> None:
        queue: asyncio.Queue[RefreshTrackingRecord] = asyncio.Queue()
        for record in batch:
            queue.put_nowait(record)

        async def worker() -> None:
            while not stopped():
                try:
                    record = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await self._process_due(record, now, result)

        workers = min(self.config.worker_count, len(batch))
        await asyncio.gather(*(worker() for _ in range(workers)))
        result.skipped += queue.qsize()

    async def _process_due(self, record: RefreshTrackingRecord, now: datetime, result: BatchResult) -> None:
        vehicle = await self.store.get_tracked_vehicle(record.vehicle_id)
        if vehicle is None:
            logger.warning("Tracking row %s has no vehicle, skipping", record.vehicle_id)
            result.skipped += 1
            return
        try:
            outcome = await self.refresh_vehicle(vehicle, "scheduled", now)
        except Exception:
            logger.exception("Scheduled refresh failed for %s", record.vehicle_id)
            result.errors += 1
            return
        result.processed += 1
        if outcome.new_alert is not None:
            result.new_alerts.append(outcome.new_alert)

    async def trigger_shift_refresh(self, alert_id: str) -> int:
        return await self.detector.trigger_refresh(alert_id, self.refresh_for_shift)

    # ── Status ──────────────────────────────────────────────────────

    async def get_vehicle_refresh_status(self, user_id: str, vehicle_id: str) -> VehicleRefreshStatus:
        vehicle = await self._owned_vehicle(user_id, vehicle_id)
        record = await self.store.get_tracking(vehicle_id)
        if record is None:
            raise TrackingNotFoundError(vehicle_id)
        now = self.clock.now()
        shifts = [
            a for a in await self.detector.active_alerts(now, vehicle.descriptor.make, vehicle.descriptor.model)
            if a.covers(vehicle.descriptor)
        ]
        return VehicleRefreshStatus(
            vehicle_id=vehicle_id,
            tier=record.tier,
            priority=record.priority,
            last_auto_refresh_at=record.last_auto_refresh_at,
            last_manual_refresh_at=record.last_manual_refresh_at,
            next_scheduled_refresh_at=record.next_scheduled_refresh_at,
            eligibility=check_eligibility(record, await self.plans.get_limits(user_id), now),
            last_value=record.last_value,
            value_change_percent=record.value_change_percent,
            market_shift=shifts[0] if shifts else None,
        )

    async def user_market_shifts(self, user_id: str) -> list[MarketShiftAlert]:
        vehicles = await self.store.list_user_vehicles(user_id)
        alerts = await self.detector.active_alerts(self.clock.now())
        return [a for a in alerts if any(a.covers(v.descriptor) for v in vehicles)]

    async def get_user_refresh_summary(self, user_id: str) -> UserRefreshSummary:
        now = self.clock.now()
        plan = await self.plans.get_limits(user_id)
        records = await self.store.list_user_tracking(user_id)
        eligibilities = [check_eligibility(r, plan, now) for r in records]
        blocked = [e.next_available_at for e in eligibilities if not e.can_refresh and e.next_available_at]
        daily = sum(1 for r in records if r.tier == "daily")
        return UserRefreshSummary(
            plan_type=plan.plan_type,
            total_vehicles=len(records),
            daily_refresh_vehicles=daily,
            weekly_refresh_vehicles=len(records) - daily,
            vehicles_due_for_refresh=sum(1 for r in records if r.next_scheduled_refresh_at <= now),
            manual_refreshes_available=sum(1 for e in eligibilities if e.can_refresh),
            manual_refresh_reset_at=min(blocked) if blocked else None,
            active_market_shifts=len(await self.user_market_shifts(user_id)),
        )


def outcome_payload(outcome: RefreshOutcome) -> dict[str, Any]:
    payload = asdict(outcome)
    payload.pop("result", None)
    if outcome.result is not None:
        payload["estimate"] = outcome.result.estimate.to_json()
    return payload
