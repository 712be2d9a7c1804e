from __future__ import annotations

import time
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from valuation.config import RefreshConfig, ValuationConfig
from valuation.data_models import FinanceData, VehicleDescriptor, VehicleUsage
from valuation.scheduler import build_refresh_scheduler
from valuation_service.clock import Clock, SystemClock
from valuation_service.errors import (
    InvalidVehicleInputError,
    TrackingNotFoundError,
    VehicleLimitExceededError,
)
from valuation_service.key_pool import KeyPool
from valuation_service.listings import ListingsAggregator
from valuation_service.logging_config import configure_logging, get_request_id, request_id
from valuation_service.market_shift import MarketShiftDetector
from valuation_service.messaging import VALUATION_RESULTS_TOPIC, KafkaBus
from valuation_service.msrp import MsrpResolver
from valuation_service.plans import StaticPlanProvider
from valuation_service.rate_limited_client import RateLimitedClient
from valuation_service.refresh_scheduler import RefreshScheduler, outcome_payload
from valuation_service.settings import ServiceSettings
from valuation_service.sources import (
    ListingsSource,
    MarketCheckListingsSource,
    MarketCheckPriceSource,
    PriceSource,
)
from valuation_service.storage import PostgresStore, RedisCache
from valuation_service.valuator import Valuator


# ── Request / Response Models ───────────────────────────────────────

class VehicleIn(BaseModel):
    year: int
    make: str = Field(min_length=1)
    model: str = Field(min_length=1)
    trim: str | None = None
    fuel_type: str | None = None
    drivetrain: str | None = None

    def to_descriptor(self) -> VehicleDescriptor:
        return VehicleDescriptor(**self.model_dump())


class UsageIn(BaseModel):
    current_mileage: int
    annual_mileage_estimate: int = 12_000
    condition: str = "good"
    region: str | None = None
    zip_code: str | None = None
    is_urban: bool = True

    def to_usage(self) -> VehicleUsage:
        return VehicleUsage(**self.model_dump())


class FinanceIn(BaseModel):
    loan_balance: float
    monthly_payment: float
    interest_rate: float
    remaining_payments: int | None = None


class ValuationRequest(BaseModel):
    vehicle: VehicleIn
    usage: UsageIn
    finance: FinanceIn | None = None
    msrp: float | None = Field(default=None, gt=0)
    force_refresh: bool = False
    sell_metric: Literal["auto", "value", "equity"] = "auto"


class TrackVehicleRequest(BaseModel):
    vehicle_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    vehicle: VehicleIn
    usage: UsageIn
    msrp: float | None = Field(default=None, gt=0)


class PlanChangeRequest(BaseModel):
    plan_type: Literal["free", "pro"]


class BatchRunResponse(BaseModel):
    processed: int
    errors: int
    skipped: int
    new_alerts: list[str]
    shift_refreshes: int = 0


class HealthResponse(BaseModel):
    status: str


class ReadinessResponse(BaseModel):
    status: str
    checks: dict[str, bool]


# ── Prometheus-style Metrics ────────────────────────────────────────

_prom_counters: dict[str, int] = defaultdict(int)
_prom_histograms: dict[str, list[float]] = defaultdict(list)


def _record_latency(name: str, seconds: float) -> None:
    _prom_histograms[name].append(seconds)
    _prom_counters[f"{name}_count"] += 1


def _prometheus_text() -> str:
    lines: list[str] = []
    for k, v in sorted(_prom_counters.items()):
        lines.append(f"# TYPE valuation_{k} counter")
        lines.append(f"valuation_{k} {v}")
    for name, vals in sorted(_prom_histograms.items()):
        if not vals:
            continue
        ordered = sorted(vals)
        n = len(ordered)
        lines.append(f"# TYPE valuation_{name}_seconds summary")
        for q in (0.5, 0.9, 0.99):
            lines.append(f'valuation_{name}_seconds{{quantile="{q}"}} {ordered[min(int(n * q), n - 1)]:.6f}')
        lines.append(f"valuation_{name}_seconds_count {n}")
        lines.append(f"valuation_{name}_seconds_sum {sum(ordered):.6f}")
    return "\n".join(lines) + "\n"


# ── App Factory ─────────────────────────────────────────────────────

def create_app(
    settings: ServiceSettings | None = None,
    *,
    clock: Clock | None = None,
    listings_source: ListingsSource | None = None,
    price_source: PriceSource | None = None,
    plans: StaticPlanProvider | None = None,
) -> FastAPI:
    settings = settings or ServiceSettings()
    configure_logging(level=settings.log_level, fmt=settings.log_format)

    clock = clock or SystemClock()
    valuation_cfg = ValuationConfig()
    refresh_cfg = RefreshConfig(worker_count=settings.refresh_workers, refresh_cron=settings.refresh_cron)

    cache = RedisCache(redis_url=settings.redis_url)
    store = PostgresStore(dsn=settings.postgres_dsn)
    kafka = KafkaBus(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        client_id=settings.kafka_client_id,
        max_buffered=settings.kafka_max_buffered_events,
    )

    key_pool = KeyPool(settings.api_keys(), clock=clock)
    client = RateLimitedClient(
        key_pool,
        requests_per_minute=settings.upstream_rate_limit_rpm,
        max_retries=settings.upstream_max_retries,
        backoff_base_seconds=settings.upstream_backoff_base_seconds,
        backoff_max_seconds=settings.upstream_backoff_max_seconds,
        max_concurrency=settings.upstream_max_concurrency,
        max_rate_wait_seconds=settings.upstream_max_rate_wait_seconds,
    )
    listings_source = listings_source or MarketCheckListingsSource(
        client, settings.marketcheck_base_url, timeout=settings.upstream_timeout_seconds,
    )
    price_source = price_source or MarketCheckPriceSource(
        client, settings.marketcheck_base_url, timeout=settings.upstream_timeout_seconds,
    )

    plans = plans or StaticPlanProvider()
    detector = MarketShiftDetector(store, clock, refresh_cfg, bus=kafka)
    valuator = Valuator(
        ListingsAggregator(listings_source, cache, clock, valuation_cfg),
        MsrpResolver(price_source, cache, clock, valuation_cfg),
        cache,
        clock,
        valuation_cfg,
        shift_lookup=detector.alerts_covering,
    )
    refresher = RefreshScheduler(store, plans, valuator, detector, clock, refresh_cfg, bus=kafka)

    async def run_refresh_job() -> BatchRunResponse:
        t0 = time.monotonic()
        now = clock.now()
        result = await refresher.run_scheduled_batch(
            now, now + timedelta(seconds=settings.refresh_batch_deadline_seconds),
        )
        shift_refreshes = 0
        if settings.auto_trigger_shift_refresh:
            for alert in result.new_alerts:
                shift_refreshes += await refresher.trigger_shift_refresh(alert.id)
        _record_latency("refresh_batch", time.monotonic() - t0)
        _prom_counters["refresh_processed"] += result.processed
        _prom_counters["refresh_errors"] += result.errors
        _prom_counters["market_shifts_detected"] += len(result.new_alerts)
        return BatchRunResponse(
            processed=result.processed,
            errors=result.errors,
            skipped=result.skipped,
            new_alerts=[a.id for a in result.new_alerts],
            shift_refreshes=shift_refreshes,
        )

    scheduler = build_refresh_scheduler(settings.refresh_cron, run_refresh_job)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await cache.connect()
        await store.connect()
        await kafka.connect()
        if settings.refresh_scheduler_enabled:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler.running:
                scheduler.shutdown(wait=False)
            await cache.close()
            await store.close()
            await kafka.close()

    app = FastAPI(title="Vehicle Valuation API", version="0.1.0", lifespan=lifespan)
    app.state.refresher = refresher
    app.state.key_pool = key_pool

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next: Any) -> Response:
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        request_id.set(rid)
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    # ── Error mapping ───────────────────────────────────────────────

    @app.exception_handler(InvalidVehicleInputError)
    async def invalid_input_handler(_: Request, exc: InvalidVehicleInputError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(VehicleLimitExceededError)
    async def limit_handler(_: Request, exc: VehicleLimitExceededError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "max_vehicles": exc.max_vehicles})

    @app.exception_handler(TrackingNotFoundError)
    async def not_found_handler(_: Request, exc: TrackingNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    # ── Valuation ───────────────────────────────────────────────────

    @app.post("/valuations")
    async def valuate(payload: ValuationRequest) -> dict[str, Any]:
        t0 = time.monotonic()
        descriptor = payload.vehicle.to_descriptor()
        finance = FinanceData(**payload.finance.model_dump()) if payload.finance else None
        result = await valuator.valuate(
            descriptor,
            payload.usage.to_usage(),
            finance,
            msrp=payload.msrp,
            force_refresh=payload.force_refresh,
            sell_metric=payload.sell_metric,
        )
        estimate = result.estimate
        await kafka.publish(
            VALUATION_RESULTS_TOPIC,
            {"vehicle": descriptor.cache_key(), "request_id": get_request_id(), **estimate.to_json()},
            key=descriptor.cache_key(),
        )

        _record_latency("valuate", time.monotonic() - t0)
        _prom_counters[f"confidence_{estimate.confidence}"] += 1
        if result.from_cache:
            _prom_counters["valuation_cache_hit"] += 1
        if estimate.is_degraded:
            _prom_counters["valuation_degraded"] += 1
        return jsonable_encoder(asdict(result))

    # ── Tracking ────────────────────────────────────────────────────

    @app.post("/users/{user_id}/vehicles", status_code=status.HTTP_201_CREATED)
    async def track_vehicle(user_id: str, payload: TrackVehicleRequest) -> dict[str, Any]:
        record = await refresher.init_tracking(
            user_id,
            payload.vehicle_id,
            payload.vehicle.to_descriptor(),
            payload.usage.to_usage(),
            msrp=payload.msrp,
        )
        return jsonable_encoder(asdict(record))

    @app.delete("/vehicles/{vehicle_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def untrack_vehicle(vehicle_id: str) -> Response:
        if not await refresher.remove_tracking(vehicle_id):
            raise HTTPException(status_code=404, detail="Vehicle not tracked")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/users/{user_id}/vehicles/{vehicle_id}/refresh-eligibility")
    async def refresh_eligibility(user_id: str, vehicle_id: str) -> dict[str, Any]:
        eligibility = await refresher.check_refresh_eligibility(user_id, vehicle_id)
        return jsonable_encoder(asdict(eligibility))

    @app.get("/users/{user_id}/vehicles/{vehicle_id}/refresh-status")
    async def refresh_status(user_id: str, vehicle_id: str) -> dict[str, Any]:
        return jsonable_encoder(asdict(await refresher.get_vehicle_refresh_status(user_id, vehicle_id)))

    @app.post("/users/{user_id}/vehicles/{vehicle_id}/refresh")
    async def manual_refresh(user_id: str, vehicle_id: str) -> JSONResponse:
        outcome = await refresher.perform_manual_refresh(user_id, vehicle_id)
        body = jsonable_encoder(outcome_payload(outcome))
        if not outcome.success:
            _prom_counters["manual_refresh_refused"] += 1
            return JSONResponse(status_code=429, content=body)
        _prom_counters["manual_refresh"] += 1
        return JSONResponse(status_code=200, content=body)

    @app.get("/vehicles/{vehicle_id}/refresh-history")
    async def refresh_history(vehicle_id: str, limit: int = 20) -> dict[str, Any]:
        rows = await store.list_refresh_history(vehicle_id, limit=min(limit, 100))
        return {"count": len(rows), "history": jsonable_encoder(rows)}

    @app.get("/users/{user_id}/refresh-summary")
    async def refresh_summary(user_id: str) -> dict[str, Any]:
        return jsonable_encoder(asdict(await refresher.get_user_refresh_summary(user_id)))

    @app.put("/users/{user_id}/plan")
    async def change_plan(user_id: str, payload: PlanChangeRequest) -> dict[str, Any]:
        limits = plans.set_plan(user_id, payload.plan_type)
        changed = await refresher.apply_plan_change(user_id)
        return {
            "plan": asdict(limits),
            "changed": [{"vehicle_id": r.vehicle_id, "tier": r.tier, "priority": r.priority} for r in changed],
        }

    # ── Scheduled refresh / market shifts ───────────────────────────

    @app.post("/refresh/run", response_model=BatchRunResponse)
    async def run_refresh() -> BatchRunResponse:
        return await run_refresh_job()

    @app.get("/market-shifts")
    async def market_shifts(make: str | None = None, model: str | None = None) -> dict[str, Any]:
        alerts = await detector.active_alerts(make=make, model=model)
        return {"count": len(alerts), "alerts": jsonable_encoder([asdict(a) for a in alerts])}

    @app.get("/users/{user_id}/market-shifts")
    async def user_market_shifts(user_id: str) -> dict[str, Any]:
        alerts = await refresher.user_market_shifts(user_id)
        return {"count": len(alerts), "alerts": jsonable_encoder([asdict(a) for a in alerts])}

    @app.post("/market-shifts/{alert_id}/refresh")
    async def market_shift_refresh(alert_id: str) -> dict[str, Any]:
        if await store.get_shift_alert(alert_id) is None:
            raise HTTPException(status_code=404, detail="Market shift not found")
        refreshed = await refresher.trigger_shift_refresh(alert_id)
        _prom_counters["shift_refreshes"] += refreshed
        return {"alert_id": alert_id, "refreshed": refreshed}

    # ── Health ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/ready", response_model=ReadinessResponse)
    async def ready() -> ReadinessResponse:
        checks = {
            "redis": await cache.ping(),
            "postgres": await store.ping(),
            "kafka": await kafka.ping(),
            "api_keys": key_pool.status()["available"] > 0,
        }
        if not all(checks.values()):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=ReadinessResponse(status="degraded", checks=checks).model_dump(),
            )
        return ReadinessResponse(status="ready", checks=checks)

    @app.get("/metrics")
    async def get_metrics() -> dict[str, Any]:
        latencies = sorted(_prom_histograms.get("valuate", []))
        return {
            "counters": dict(_prom_counters),
            "valuate_latency": {
                "count": len(latencies),
                "p50_ms": round(latencies[len(latencies) // 2] * 1000, 1) if latencies else 0,
                "p95_ms": round(latencies[int(len(latencies) * 0.95)] * 1000, 1) if latencies else 0,
            },
            "key_pool": key_pool.status(),
            "event_buffer": kafka.status(),
        }

    @app.get("/metrics/prometheus")
    async def get_prometheus_metrics() -> Response:
        return Response(content=_prometheus_text(), media_type="text/plain; charset=utf-8")

    return app


app = create_app()
