from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from valuation.data_models import (
    MarketShiftAlert,
    RefreshTrackingRecord,
    TrackedVehicle,
    VehicleDescriptor,
    VehicleUsage,
)
from valuation.refresh_policy import order_due

logger = logging.getLogger(__name__)

metadata = MetaData()

tracked_vehicles_table = Table(
    "tracked_vehicles",
    metadata,
    Column("vehicle_id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("make", String(64), nullable=False, index=True),
    Column("model", String(64), nullable=False, index=True),
    Column("year", Integer, nullable=False),
    Column("descriptor_json", JSON, nullable=False),
    Column("usage_json", JSON, nullable=False),
    Column("msrp", Float, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

refresh_tracking_table = Table(
    "refresh_tracking",
    metadata,
    Column("vehicle_id", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("tier", String(16), nullable=False),
    Column("priority", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("next_scheduled_refresh_at", DateTime(timezone=True), nullable=False, index=True),
    Column("last_auto_refresh_at", DateTime(timezone=True), nullable=True),
    Column("last_manual_refresh_at", DateTime(timezone=True), nullable=True),
    Column("manual_refreshes_used", Integer, nullable=False, default=0),
    Column("manual_refresh_window_reset_at", DateTime(timezone=True), nullable=True),
    Column("last_value", Float, nullable=True),
    Column("previous_value", Float, nullable=True),
    Column("value_change_percent", Float, nullable=True),
)

refresh_history_table = Table(
    "refresh_history",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("vehicle_id", String(64), nullable=False, index=True),
    Column("user_id", String(64), nullable=False),
    Column("refresh_type", String(16), nullable=False),
    Column("value", Float, nullable=False),
    Column("previous_value", Float, nullable=True),
    Column("change_percent", Float, nullable=True),
    Column("confidence", String(8), nullable=False),
    Column("degraded", Boolean, nullable=False, default=False),
    Column("refreshed_at", DateTime(timezone=True), nullable=False),
)

market_shift_alerts_table = Table(
    "market_shift_alerts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("make", String(64), nullable=False, index=True),
    Column("model", String(64), nullable=False, index=True),
    Column("year_start", Integer, nullable=False),
    Column("year_end", Integer, nullable=False),
    Column("shift_percent", Float, nullable=False),
    Column("direction", String(8), nullable=False),
    Column("detected_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("affected_vehicles_count", Integer, nullable=False, default=1),
    Column("refreshes_triggered", Integer, nullable=False, default=0),
    Column("source", String(32), nullable=False, default="refresh_delta"),
)


def _norm(value: str) -> str:
    return " ".join(value.lower().split())


class RedisCache:
    """Namespaced JSON cache; expiry is advisory, callers check their own timestamps."""

    def __init__(self, redis_url: str, namespace: str = "valuation") -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self._client: Any = None
        self._mem: dict[str, str] = {}
        self._expiry: dict[str, float] = {}

    def _build_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def connect(self) -> None:
        self._client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await asyncio.wait_for(self._client.ping(), timeout=0.75)
        except Exception:
            logger.warning("Redis unreachable at %s, using in-process cache", self.redis_url)
            self._client = None

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await asyncio.wait_for(self._client.ping(), timeout=0.75))
        except Exception:
            return False

    async def get_json(self, key: str) -> dict[str, Any] | None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                raw = await self._client.get(full_key)
                return None if raw is None else json.loads(raw)
            except Exception:
                logger.warning("Redis read failed for %s", full_key, exc_info=True)
                return None
        now = asyncio.get_running_loop().time()
        if full_key in self._expiry and now > self._expiry[full_key]:
            self._mem.pop(full_key, None)
            self._expiry.pop(full_key, None)
            return None
        raw = self._mem.get(full_key)
        return None if raw is None else json.loads(raw)

    async def set_json(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None:
        full_key = self._build_key(key)
        payload = json.dumps(value, default=str)
        if self._client is not None:
            try:
                await self._client.set(full_key, payload, ex=ttl_seconds)
                return
            except Exception:
                logger.warning("Redis write failed for %s, keeping entry in process", full_key)
        self._mem[full_key] = payload
        if ttl_seconds:
            self._expiry[full_key] = asyncio.get_running_loop().time() + ttl_seconds
        else:
            self._expiry.pop(full_key, None)

    async def delete(self, key: str) -> None:
        full_key = self._build_key(key)
        if self._client is not None:
            try:
                await self._client.delete(full_key)
            except Exception:
                logger.warning("Redis delete failed for %s", full_key)
        self._mem.pop(full_key, None)
        self._expiry.pop(full_key, None)


# ── Row mapping ─────────────────────────────────────────────────────

def _vehicle_row(vehicle: TrackedVehicle) -> dict[str, Any]:
    return {
        "vehicle_id": vehicle.vehicle_id,
        "user_id": vehicle.user_id,
        "make": _norm(vehicle.descriptor.make),
        "model": _norm(vehicle.descriptor.model),
        "year": vehicle.descriptor.year,
        "descriptor_json": asdict(vehicle.descriptor),
        "usage_json": asdict(vehicle.usage),
        "msrp": vehicle.msrp,
        "created_at": vehicle.created_at,
    }


def _vehicle_from_row(row: dict[str, Any]) -> TrackedVehicle:
    return TrackedVehicle(
        vehicle_id=row["vehicle_id"],
        user_id=row["user_id"],
        descriptor=VehicleDescriptor(**row["descriptor_json"]),
        usage=VehicleUsage(**row["usage_json"]),
        created_at=row["created_at"],
        msrp=row.get("msrp"),
    )


class PostgresStore:
    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.engine: AsyncEngine | None = None
        self._fallback_mode = False
        self._mem_vehicles: dict[str, dict[str, Any]] = {}
        self._mem_tracking: dict[str, dict[str, Any]] = {}
        self._mem_history: list[dict[str, Any]] = []
        self._mem_shift_alerts: dict[str, dict[str, Any]] = {}

    async def connect(self) -> None:
        try:
            self.engine = create_async_engine(self.dsn, future=True)
            await self.init_schema()
        except Exception:
            logger.warning("Postgres unreachable, using in-memory store")
            self._fallback_mode = True
            self.engine = None

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    async def ping(self) -> bool:
        if self.engine is None or self._fallback_mode:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(select(1))
            return True
        except Exception:
            return False

    async def init_schema(self) -> None:
        if self.engine is None:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def _upsert(self, table: Table, key_col: str, row: dict[str, Any]) -> None:
        if self.engine is None:
            raise RuntimeError("PostgresStore has no engine; call connect() first")
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(table).where(table.c[key_col] == row[key_col]).values(**row)
            )
            if result.rowcount == 0:
                await conn.execute(insert(table).values(**row))

    # ── Tracked vehicles ────────────────────────────────────────────

    async def upsert_tracked_vehicle(self, vehicle: TrackedVehicle) -> None:
        row = _vehicle_row(vehicle)
        if self.engine is None:
            self._mem_vehicles[vehicle.vehicle_id] = row
            return
        await self._upsert(tracked_vehicles_table, "vehicle_id", row)

    async def get_tracked_vehicle(self, vehicle_id: str) -> TrackedVehicle | None:
        if self.engine is None:
            row = self._mem_vehicles.get(vehicle_id)
            return _vehicle_from_row(row) if row else None
        stmt = select(tracked_vehicles_table).where(tracked_vehicles_table.c.vehicle_id == vehicle_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return _vehicle_from_row(dict(row._mapping)) if row else None

    async def list_user_vehicles(self, user_id: str) -> list[TrackedVehicle]:
        if self.engine is None:
            rows = [r for r in self._mem_vehicles.values() if r["user_id"] == user_id]
            return [_vehicle_from_row(r) for r in sorted(rows, key=lambda r: r["created_at"])]
        stmt = (
            select(tracked_vehicles_table)
            .where(tracked_vehicles_table.c.user_id == user_id)
            .order_by(tracked_vehicles_table.c.created_at)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [_vehicle_from_row(dict(r._mapping)) for r in rows]

    async def count_user_vehicles(self, user_id: str) -> int:
        if self.engine is None:
            return sum(1 for r in self._mem_vehicles.values() if r["user_id"] == user_id)
        stmt = select(func.count()).select_from(tracked_vehicles_table).where(
            tracked_vehicles_table.c.user_id == user_id
        )
        async with self.engine.connect() as conn:
            return int((await conn.execute(stmt)).scalar_one())

    async def find_vehicles(
        self, make: str, model: str, year_start: int, year_end: int, limit: int = 50,
    ) -> list[TrackedVehicle]:
        make_n, model_n = _norm(make), _norm(model)
        if self.engine is None:
            rows = [
                r for r in self._mem_vehicles.values()
                if r["make"] == make_n and r["model"] == model_n and year_start <= r["year"] <= year_end
            ]
            rows.sort(key=lambda r: r["created_at"])
            return [_vehicle_from_row(r) for r in rows[:limit]]
        stmt = (
            select(tracked_vehicles_table)
            .where(tracked_vehicles_table.c.make == make_n)
            .where(tracked_vehicles_table.c.model == model_n)
            .where(tracked_vehicles_table.c.year >= year_start)
            .where(tracked_vehicles_table.c.year <= year_end)
            .order_by(tracked_vehicles_table.c.created_at)
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [_vehicle_from_row(dict(r._mapping)) for r in rows]

    async def delete_tracked_vehicle(self, vehicle_id: str) -> bool:
        if self.engine is None:
            return self._mem_vehicles.pop(vehicle_id, None) is not None
        async with self.engine.begin() as conn:
            result = await conn.execute(
                delete(tracked_vehicles_table).where(tracked_vehicles_table.c.vehicle_id == vehicle_id)
            )
        return result.rowcount > 0

    # ── Refresh tracking ────────────────────────────────────────────

    async def upsert_tracking(self, record: RefreshTrackingRecord) -> None:
        row = asdict(record)
        if self.engine is None:
            self._mem_tracking[record.vehicle_id] = row
            return
        await self._upsert(refresh_tracking_table, "vehicle_id", row)

    async def get_tracking(self, vehicle_id: str) -> RefreshTrackingRecord | None:
        if self.engine is None:
            row = self._mem_tracking.get(vehicle_id)
            return RefreshTrackingRecord(**row) if row else None
        stmt = select(refresh_tracking_table).where(refresh_tracking_table.c.vehicle_id == vehicle_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return RefreshTrackingRecord(**dict(row._mapping)) if row else None

    async def list_user_tracking(self, user_id: str) -> list[RefreshTrackingRecord]:
        if self.engine is None:
            return [RefreshTrackingRecord(**r) for r in self._mem_tracking.values() if r["user_id"] == user_id]
        stmt = select(refresh_tracking_table).where(refresh_tracking_table.c.user_id == user_id)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [RefreshTrackingRecord(**dict(r._mapping)) for r in rows]

    async def fetch_due_tracking(self, now: datetime, limit: int = 100) -> list[RefreshTrackingRecord]:
        """Due records, priority first then oldest due time first."""
        if self.engine is None:
            return order_due((RefreshTrackingRecord(**r) for r in self._mem_tracking.values()), now, limit)
        stmt = (
            select(refresh_tracking_table)
            .where(refresh_tracking_table.c.next_scheduled_refresh_at <= now)
            .order_by(
                refresh_tracking_table.c.priority.desc(),
                refresh_tracking_table.c.next_scheduled_refresh_at.asc(),
            )
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [RefreshTrackingRecord(**dict(r._mapping)) for r in rows]

    async def delete_tracking(self, vehicle_id: str) -> bool:
        if self.engine is None:
            return self._mem_tracking.pop(vehicle_id, None) is not None
        async with self.engine.begin() as conn:
            result = await conn.execute(
                delete(refresh_tracking_table).where(refresh_tracking_table.c.vehicle_id == vehicle_id)
            )
        return result.rowcount > 0

    # ── Refresh history ─────────────────────────────────────────────

    async def insert_refresh_history(self, record: dict[str, Any]) -> str:
        row_id = str(uuid4())
        row = {
            "id": row_id,
            "vehicle_id": record["vehicle_id"],
            "user_id": record["user_id"],
            "refresh_type": record["refresh_type"],
            "value": float(record["value"]),
            "previous_value": record.get("previous_value"),
            "change_percent": record.get("change_percent"),
            "confidence": record.get("confidence", "low"),
            "degraded": bool(record.get("degraded", False)),
            "refreshed_at": record["refreshed_at"],
        }
        if self.engine is None:
            self._mem_history.append(row)
            return row_id
        async with self.engine.begin() as conn:
            await conn.execute(insert(refresh_history_table).values(**row))
        return row_id

    async def list_refresh_history(self, vehicle_id: str, limit: int = 50) -> list[dict[str, Any]]:
        if self.engine is None:
            rows = [r for r in self._mem_history if r["vehicle_id"] == vehicle_id]
            return sorted(rows, key=lambda r: r["refreshed_at"], reverse=True)[:limit]
        stmt = (
            select(refresh_history_table)
            .where(refresh_history_table.c.vehicle_id == vehicle_id)
            .order_by(refresh_history_table.c.refreshed_at.desc())
            .limit(limit)
        )
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [dict(r._mapping) for r in rows]

    # ── Market shift alerts ─────────────────────────────────────────

    async def upsert_shift_alert(self, alert: MarketShiftAlert) -> None:
        row = asdict(alert)
        row["make"], row["model"] = _norm(alert.make), _norm(alert.model)
        if self.engine is None:
            self._mem_shift_alerts[alert.id] = row
            return
        await self._upsert(market_shift_alerts_table, "id", row)

    async def get_shift_alert(self, alert_id: str) -> MarketShiftAlert | None:
        if self.engine is None:
            row = self._mem_shift_alerts.get(alert_id)
            return MarketShiftAlert(**row) if row else None
        stmt = select(market_shift_alerts_table).where(market_shift_alerts_table.c.id == alert_id)
        async with self.engine.connect() as conn:
            row = (await conn.execute(stmt)).first()
        return MarketShiftAlert(**dict(row._mapping)) if row else None

    async def list_active_shift_alerts(
        self, now: datetime, make: str | None = None, model: str | None = None,
    ) -> list[MarketShiftAlert]:
        if self.engine is None:
            rows = [
                r for r in self._mem_shift_alerts.values()
                if r["is_active"] and r["expires_at"] > now
                and (make is None or r["make"] == _norm(make))
                and (model is None or r["model"] == _norm(model))
            ]
            rows.sort(key=lambda r: r["detected_at"], reverse=True)
            return [MarketShiftAlert(**r) for r in rows]
        t = market_shift_alerts_table
        stmt = select(t).where(t.c.is_active == True).where(t.c.expires_at > now)  # noqa: E712
        if make is not None:
            stmt = stmt.where(t.c.make == _norm(make))
        if model is not None:
            stmt = stmt.where(t.c.model == _norm(model))
        stmt = stmt.order_by(t.c.detected_at.desc())
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).all()
        return [MarketShiftAlert(**dict(r._mapping)) for r in rows]

    async def expire_shift_alerts(self, now: datetime) -> int:
        if self.engine is None:
            expired = 0
            for row in self._mem_shift_alerts.values():
                if row["is_active"] and row["expires_at"] <= now:
                    row["is_active"] = False
                    expired += 1
            return expired
        t = market_shift_alerts_table
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(t).where(t.c.is_active == True).where(t.c.expires_at <= now).values(is_active=False)  # noqa: E712
            )
        return result.rowcount
