from __future__ import annotations


class ValuationError(Exception):
    """Base class for errors raised by the valuation service."""


class InvalidVehicleInputError(ValuationError, ValueError):
    """Input rejected before any upstream call; retrying cannot help."""


class VehicleLimitExceededError(ValuationError):
    def __init__(self, user_id: str, max_vehicles: int) -> None:
        super().__init__(f"user {user_id} already tracks the plan maximum of {max_vehicles} vehicles")
        self.user_id = user_id
        self.max_vehicles = max_vehicles


class TrackingNotFoundError(ValuationError, LookupError):
    def __init__(self, vehicle_id: str) -> None:
        super().__init__(f"vehicle {vehicle_id} is not tracked")
        self.vehicle_id = vehicle_id


# ── Upstream ────────────────────────────────────────────────────────

class UpstreamError(ValuationError):
    def __init__(self, message: str, *, endpoint: str = "", status_code: int | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Network failure, 5xx or plain 429; worth retrying with backoff."""


class TerminalUpstreamError(UpstreamError):
    """4xx that a retry cannot fix."""


class QuotaExhaustedError(UpstreamError):
    """Key has used its quota for the current billing period."""


class InvalidCredentialError(UpstreamError):
    """Key was rejected outright."""


class AllKeysExhaustedError(UpstreamError):
    """No key in the pool is usable."""


class UpstreamUnavailableError(UpstreamError):
    """Transient failures persisted past the retry limit or the rate-limit wait cap."""
