from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Awaitable, Callable
from uuid import uuid4

from valuation.config import RefreshConfig
from valuation.data_models import MarketShiftAlert, TrackedVehicle, VehicleDescriptor
from valuation_service.clock import Clock
from valuation_service.messaging import MARKET_SHIFT_ALERTS_TOPIC, KafkaBus
from valuation_service.storage import PostgresStore

logger = logging.getLogger(__name__)

RefreshFn = Callable[[TrackedVehicle, MarketShiftAlert], Awaitable[object]]


class MarketShiftDetector:
    """Turns large per-vehicle value deltas into make/model scoped, time-boxed alerts."""

    def __init__(
        self,
        store: PostgresStore,
        clock: Clock,
        config: RefreshConfig | None = None,
        bus: KafkaBus | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.config = config or RefreshConfig()
        self.bus = bus
        self._lock = asyncio.Lock()

    def is_significant(self, delta_percent: float | None) -> bool:
        return delta_percent is not None and abs(delta_percent) >= self.config.shift_threshold_pct

    async def record_delta(
        self,
        descriptor: VehicleDescriptor,
        delta_percent: float | None,
        now: datetime | None = None,
    ) -> MarketShiftAlert | None:
        """Fold one refresh delta into the shift alerts.

        Returns the alert only when a new one was opened; deltas joining an
        existing live alert for the same make and model bump its affected
        count and return ``None``.
        """
        if delta_percent is None or not self.is_significant(delta_percent):
            return None
        now = now or self.clock.now()
        span = self.config.shift_year_span

        async with self._lock:
            live = await self.store.list_active_shift_alerts(now, descriptor.make, descriptor.model)
            if live:
                alert = live[0]
                alert.affected_vehicles_count += 1
                alert.year_start = min(alert.year_start, descriptor.year - span)
                alert.year_end = max(alert.year_end, descriptor.year + span)
                await self.store.upsert_shift_alert(alert)
                logger.info(
                    "Market shift %s now affects %d vehicles", alert.id, alert.affected_vehicles_count,
                )
                return None

            alert = MarketShiftAlert(
                id=str(uuid4()),
                make=descriptor.make,
                model=descriptor.model,
                year_start=descriptor.year - span,
                year_end=descriptor.year + span,
                shift_percent=round(abs(delta_percent), 2),
                direction="up" if delta_percent > 0 else "down",
                detected_at=now,
                expires_at=now + timedelta(days=self.config.shift_alert_lifetime_days),
            )
            await self.store.upsert_shift_alert(alert)

        logger.info(
            "Market shift detected: %s %s %s %.2f%%",
            descriptor.make, descriptor.model, alert.direction, alert.shift_percent,
        )
        if self.bus is not None:
            await self.bus.publish(MARKET_SHIFT_ALERTS_TOPIC, asdict(alert), key=alert.id)
        return alert

    async def expire_stale(self, now: datetime | None = None) -> int:
        expired = await self.store.expire_shift_alerts(now or self.clock.now())
        if expired:
            logger.info("Expired %d market shift alerts", expired)
        return expired

    async def active_alerts(
        self, now: datetime | None = None, make: str | None = None, model: str | None = None,
    ) -> list[MarketShiftAlert]:
        return await self.store.list_active_shift_alerts(now or self.clock.now(), make, model)

    async def alerts_covering(self, descriptor: VehicleDescriptor) -> list[MarketShiftAlert]:
        live = await self.active_alerts(make=descriptor.make, model=descriptor.model)
        return [alert for alert in live if alert.covers(descriptor)]

    async def trigger_refresh(
        self,
        alert_id: str,
        refresh_fn: RefreshFn,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> int:
        """Re-valuate vehicles in the alert's scope; returns how many refreshed."""
        now = now or self.clock.now()
        alert = await self.store.get_shift_alert(alert_id)
        if alert is None or not alert.is_live(now):
            return 0

        vehicles = await self.store.find_vehicles(
            alert.make, alert.model, alert.year_start, alert.year_end,
            limit=limit or self.config.shift_refresh_limit,
        )
        refreshed = 0
        for vehicle in vehicles:
            try:
                await refresh_fn(vehicle, alert)
            except Exception:
                logger.exception("Shift refresh failed for vehicle %s", vehicle.vehicle_id)
                continue
            refreshed += 1

        async with self._lock:
            current = await self.store.get_shift_alert(alert_id) or alert
            current.refreshes_triggered += refreshed
            await self.store.upsert_shift_alert(current)
        logger.info("Market shift %s triggered %d refreshes", alert_id, refreshed)
        return refreshed
