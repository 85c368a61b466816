"""Termux:API location source.

Runs ``termux-location`` on Android.  The command blocks until the OS
positioning subsystem returns a fix, which can take several seconds without a
clear sky; it runs as a subprocess so only the awaiting cycle is suspended.

Sample output::

    {"latitude": 37.4219, "longitude": -122.084, "altitude": 12.0,
     "accuracy": 4.8, "bearing": 0.0, "speed": 0.0,
     "elapsedMs": 37, "provider": "gps"}

Failures come back as ``{"API_ERROR": "..."}``, empty output when location
services are disabled, or a non-zero exit when Termux:API is missing.
"""

from __future__ import annotations

import logging

from geobeacon.exceptions import LocationUnavailable
from geobeacon.platform.termux import run_command
from geobeacon.telemetry.base import LocationSample, LocationSource, utc_now

logger = logging.getLogger("geobeacon.telemetry.sources.termux")

_PROVIDERS = ("gps", "network", "passive")
_REQUESTS = ("once", "last", "updates")


class TermuxLocationSource(LocationSource):
    """High-accuracy fix via ``termux-location``."""

    SOURCE_ID = "termux"
    DISPLAY_NAME = "Termux:API location"

    def __init__(
        self,
        provider: str = "gps",
        request: str = "once",
        timeout: float | None = None,
        command: str = "termux-location",
    ) -> None:
        """Initialize the source.

        Args:
            provider: Positioning provider (``gps`` is the high-accuracy one).
            request:  ``once`` waits for a fresh fix; ``last`` returns the cached one.
            timeout:  Optional wall-clock limit; None waits as long as the OS does.
            command:  Executable name, overridable for tests.
        """
        if provider not in _PROVIDERS:
            raise ValueError(f"Unknown location provider {provider!r}; expected one of {_PROVIDERS}")
        if request not in _REQUESTS:
            raise ValueError(f"Unknown location request {request!r}; expected one of {_REQUESTS}")
        self._provider = provider
        self._request = request
        self._timeout = timeout
        self._command = command

    async def acquire(self) -> LocationSample:
        args = [self._command, "-p", self._provider, "-r", self._request]
        result = await run_command(args, timeout=self._timeout)

        if result.returncode is None:
            raise LocationUnavailable(f"{self._command} did not run: {result.stderr}")
        if not result.ok:
            raise LocationUnavailable(
                f"{self._command} exited {result.returncode}: {result.stderr or 'no details'}"
            )

        try:
            payload = result.json()
        except ValueError as exc:
            # Empty output is what termux-location prints with location services off
            raise LocationUnavailable("No fix returned (location services disabled?)", exc) from exc

        return self._parse(payload)

    def _parse(self, payload: object) -> LocationSample:
        """Convert termux-location JSON into a LocationSample.

        Raises:
            LocationUnavailable: On API errors or missing coordinates.
        """
        if not isinstance(payload, dict):
            raise LocationUnavailable(f"Unexpected termux-location payload: {payload!r}")
        if "API_ERROR" in payload:
            raise LocationUnavailable(f"termux-location API error: {payload['API_ERROR']}")

        try:
            sample = LocationSample(
                latitude=float(payload["latitude"]),
                longitude=float(payload["longitude"]),
                captured_at=utc_now(),
                accuracy_m=_safe_float(payload.get("accuracy")),
                provider=payload.get("provider", self._provider),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise LocationUnavailable(f"Invalid coordinates in termux-location output: {exc}", exc) from exc

        logger.debug(
            "Location obtained: %.6f, %.6f (±%s m, %s)",
            sample.latitude,
            sample.longitude,
            sample.accuracy_m,
            sample.provider,
        )
        return sample


def _safe_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
