from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from valuation.data_models import ListingRecord
from valuation_service.errors import (
    InvalidCredentialError,
    QuotaExhaustedError,
    TerminalUpstreamError,
    TransientUpstreamError,
)
from valuation_service.rate_limited_client import RateLimitedClient

logger = logging.getLogger(__name__)

LISTINGS_ENDPOINT = "listings.search"
PRICE_ENDPOINT = "price.lookup"

_QUOTA_MARKERS = ("quota", "monthly limit", "plan limit")


@dataclass(frozen=True)
class PriceQuote:
    price: float
    range_low: float | None = None
    range_high: float | None = None
    confidence: str | None = None


class ListingsSource(Protocol):
    async def search(
        self, make: str, model: str, year: int, trim: str | None = None, location: str | None = None,
    ) -> list[ListingRecord]: ...


class PriceSource(Protocol):
    async def lookup(
        self, make: str, model: str, year: int, trim: str | None, mileage: int,
    ) -> PriceQuote: ...


def raise_for_upstream(response: httpx.Response, endpoint: str) -> None:
    """Translate an HTTP status into the upstream error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    body = response.text[:300]
    if status in (401, 403):
        raise InvalidCredentialError(f"{endpoint} rejected key: {body}", endpoint=endpoint, status_code=status)
    if status == 402 or (status == 429 and any(m in body.lower() for m in _QUOTA_MARKERS)):
        raise QuotaExhaustedError(f"{endpoint} quota exhausted: {body}", endpoint=endpoint, status_code=status)
    if status == 429 or status >= 500:
        raise TransientUpstreamError(f"{endpoint} returned {status}", endpoint=endpoint, status_code=status)
    raise TerminalUpstreamError(f"{endpoint} returned {status}: {body}", endpoint=endpoint, status_code=status)


def _safe_float(v: Any) -> float | None:
    if v is None:
        return None
    try:
        value = float(v)
    except (ValueError, TypeError):
        return None
    return value if math.isfinite(value) else None


def _seller_type(raw: Any) -> str:
    value = str(raw or "dealer").lower()
    if value in ("dealer", "private", "auction"):
        return value
    return "private" if value.startswith("fsbo") else "dealer"


def parse_listing(item: Any, default_year: int) -> ListingRecord | None:
    """Build a listing from one search hit; malformed hits yield ``None``."""
    if not isinstance(item, dict):
        return None
    price = _safe_float(item.get("price"))
    if not price or price <= 0:
        return None
    build = item.get("build")
    if not isinstance(build, dict):
        build = {}
    trim = build.get("trim")
    try:
        return ListingRecord(
            price=price,
            mileage=int(_safe_float(item.get("miles")) or 0),
            days_on_market=int(_safe_float(item.get("dom")) or 0),
            seller_type=_seller_type(item.get("seller_type")),
            distance=_safe_float(item.get("dist")) or 0.0,
            year=int(build.get("year") or default_year),
            source=str(item.get("source") or "marketcheck"),
            trim=None if trim is None else str(trim),
        )
    except (ValueError, TypeError, OverflowError):
        logger.debug("Skipping malformed listing %r", item.get("id"))
        return None


def _json_object(data: Any, endpoint: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise TerminalUpstreamError(f"{endpoint} returned {type(data).__name__}, expected object", endpoint=endpoint)
    return data


class _MarketCheckBase:
    def __init__(
        self,
        client: RateLimitedClient,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _get_json(self, path: str, params: dict[str, Any], api_key: str, endpoint: str) -> Any:
        query = {k: v for k, v in params.items() if v is not None}
        query["api_key"] = api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
                resp = await http.get(f"{self.base_url}{path}", params=query)
        except httpx.HTTPError as exc:
            raise TransientUpstreamError(f"{endpoint} transport error: {exc}", endpoint=endpoint) from exc
        raise_for_upstream(resp, endpoint)
        try:
            return resp.json()
        except ValueError as exc:
            raise TerminalUpstreamError(f"{endpoint} returned invalid JSON", endpoint=endpoint) from exc


class MarketCheckListingsSource(_MarketCheckBase):
    """Active comparable listings from the MarketCheck search API."""

    async def search(
        self, make: str, model: str, year: int, trim: str | None = None, location: str | None = None,
    ) -> list[ListingRecord]:
        params = {
            "make": make,
            "model": model,
            "year": year,
            "trim": trim,
            "zip": location,
            "radius": 100 if location else None,
            "rows": 50,
        }

        async def _request(api_key: str) -> dict[str, Any]:
            return await self._get_json("/search/car/active", params, api_key, LISTINGS_ENDPOINT)

        data = _json_object(await self.client.call(LISTINGS_ENDPOINT, _request), LISTINGS_ENDPOINT)
        hits = data.get("listings") or []
        if not isinstance(hits, list):
            raise TerminalUpstreamError(f"{LISTINGS_ENDPOINT} listings field is not a list", endpoint=LISTINGS_ENDPOINT)
        records = [parse_listing(item, year) for item in hits]
        listings = [r for r in records if r is not None]
        logger.info("Fetched %d listings for %s %s %s", len(listings), year, make, model)
        return listings


class MarketCheckPriceSource(_MarketCheckBase):
    """Market price prediction for a year/make/model/trim at a given mileage."""

    async def lookup(
        self, make: str, model: str, year: int, trim: str | None, mileage: int,
    ) -> PriceQuote:
        params = {"make": make, "model": model, "year": year, "trim": trim, "miles": mileage}

        async def _request(api_key: str) -> dict[str, Any]:
            return await self._get_json("/predict/car/price", params, api_key, PRICE_ENDPOINT)

        data = _json_object(await self.client.call(PRICE_ENDPOINT, _request), PRICE_ENDPOINT)
        price = _safe_float(data.get("predicted_price") or data.get("price"))
        if not price or price <= 0:
            raise TerminalUpstreamError(f"{PRICE_ENDPOINT} returned no price", endpoint=PRICE_ENDPOINT)
        bounds = data.get("price_range")
        if not isinstance(bounds, dict):
            bounds = {}
        confidence = data.get("confidence")
        return PriceQuote(
            price=price,
            range_low=_safe_float(bounds.get("lower_bound")),
            range_high=_safe_float(bounds.get("upper_bound")),
            confidence=None if confidence is None else str(confidence),
        )
