"""Error taxonomy — every failure carries a stable code and a readable reason."""
from __future__ import annotations


class ExposureError(Exception):
    """Base class for all errors raised by the exposure core."""

    default_code = "exposure_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(ExposureError):
    """Zero/out-of-range amounts, empty identifiers, mismatched lengths."""

    default_code = "invalid_input"


class CapacityError(ExposureError):
    """Position size, leverage, concentration or counterparty cap exceeded."""

    default_code = "capacity_exceeded"


class CircuitBreakerError(CapacityError):
    """New capital refused while the circuit breaker is active."""

    default_code = "circuit_breaker_active"


class VenueUnavailableError(ExposureError):
    """An external dependency cannot serve the request (no quotes, no price...)."""

    default_code = "venue_unavailable"


class TimingError(ExposureError):
    """Quote expired, cooldown not elapsed, or contract not yet mature."""

    default_code = "too_soon"


class AuthorizationError(ExposureError):
    """Administrator-only operation invoked by someone else."""

    default_code = "unauthorized"


class ReentrancyError(ExposureError):
    """Nested call into an instance that already has an operation in flight."""

    default_code = "reentrant_call"
