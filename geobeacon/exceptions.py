"""Exception hierarchy for geobeacon.

Cycle-stage failures derive from ``TelemetryError`` and are caught at the tick
boundary by ``run_cycle``.  Service and job registration failures propagate to
the caller (bootstrap or CLI).
"""

from __future__ import annotations


class GeobeaconError(Exception):
    """Base exception for all geobeacon errors."""

    def __init__(self, message: str, original_error: Exception | None = None) -> None:
        super().__init__(message)
        self.original_error = original_error


# ---------------------------------------------------------------------------
# Telemetry cycle errors
# ---------------------------------------------------------------------------


class TelemetryError(GeobeaconError):
    """Base exception for a failure in one Identity → Location → Sink cycle."""

    #: Cycle stage reported in CycleResult.stage.
    stage: str = "cycle"


class PermissionDenied(TelemetryError):
    """Raised when a required OS capability has not been granted."""

    stage = "permission"

    def __init__(
        self,
        message: str | None = None,
        capabilities: list | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.capabilities = list(capabilities or [])
        default_message = "Required capabilities not granted"
        if self.capabilities:
            default_message += ": " + ", ".join(str(c) for c in self.capabilities)
        super().__init__(message or default_message, original_error)


class IdentityUnavailable(TelemetryError):
    """Raised when the anonymous identity backend is unreachable or rejects us."""

    stage = "identity"

    def __init__(
        self, message: str | None = None, original_error: Exception | None = None
    ) -> None:
        super().__init__(message or "Anonymous identity is unavailable", original_error)


class LocationUnavailable(TelemetryError):
    """Raised when no location fix can be obtained.

    Covers disabled location services, no fix obtainable, and permissions
    revoked since the last check.
    """

    stage = "location"

    def __init__(
        self, message: str | None = None, original_error: Exception | None = None
    ) -> None:
        super().__init__(message or "Location fix unavailable", original_error)


class WriteFailed(TelemetryError):
    """Raised when the remote document store rejects or cannot receive a write."""

    stage = "sink"

    def __init__(
        self,
        message: str | None = None,
        original_error: Exception | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message or "Telemetry write failed", original_error)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Scheduler errors
# ---------------------------------------------------------------------------


class ServiceError(GeobeaconError):
    """Base exception for foreground service errors."""


class ServiceConfigurationError(ServiceError):
    """Raised when the foreground service configuration is invalid."""


class ServiceStateError(ServiceError):
    """Raised on an illegal foreground service state transition."""


class JobRegistrationError(GeobeaconError):
    """Raised when the OS periodic job could not be registered or cancelled."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigValidationError(GeobeaconError, ValueError):
    """Raised when agent_config.yaml fails validation."""
