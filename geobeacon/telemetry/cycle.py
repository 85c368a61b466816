"""One Identity → Location → Sink telemetry cycle.

Both schedulers call ``run_cycle``.  A cycle never raises: every failure is
caught at this boundary, logged, and returned as a CycleResult so the caller's
timer or job stays alive.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from geobeacon.exceptions import TelemetryError
from geobeacon.telemetry.base import (
    DeviceIdentity,
    IdentityProvider,
    LocationSample,
    LocationSource,
    TelemetrySink,
    utc_now,
)

logger = logging.getLogger("geobeacon.telemetry.cycle")


@dataclass
class CycleResult:
    """Result of a single telemetry cycle.

    Attributes:
        trigger:     Which scheduler ran the cycle ('foreground', 'fallback', 'manual').
        status:      'success', 'skipped' (sample not newer than the stored
                     record, nothing written) or 'error'.
        stage:       Stage that failed ('identity', 'location', 'sink', 'cycle'), if any.
        error:       Error message if status == 'error'.
        identity:    The identity used, once resolved.
        sample:      The sample acquired, if any.
        started_at:  UTC timestamp when the cycle began.
        duration_s:  Wall-clock duration in seconds.
    """

    trigger: str
    status: str = "success"
    stage: str | None = None
    error: str | None = None
    identity: DeviceIdentity | None = None
    sample: LocationSample | None = None
    started_at: datetime = field(default_factory=utc_now)
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        """True only when the sample was actually written."""
        return self.status == "success"

    @property
    def failed(self) -> bool:
        return self.status == "error"


async def run_cycle(
    identity_provider: IdentityProvider,
    source: LocationSource,
    sink: TelemetrySink,
    trigger: str = "manual",
) -> CycleResult:
    """Resolve the identity, acquire a fix and publish it.

    Stages run strictly in order; a failed stage skips the rest, so a missing
    fix never reaches the sink.

    Args:
        identity_provider: Anonymous identity provider.
        source:            Location source.
        sink:              Telemetry sink.
        trigger:           Label of the calling scheduler, for logs.

    Returns:
        CycleResult (never raises, except for cancellation).
    """
    result = CycleResult(trigger=trigger)
    started = time.monotonic()

    try:
        result.identity = await identity_provider.get_identity()
        result.sample = await source.acquire()
        if not await sink.publish(result.identity, result.sample):
            result.status = "skipped"
    except TelemetryError as exc:
        result.status = "error"
        result.stage = exc.stage
        result.error = str(exc)
        logger.warning("[%s] %s stage failed: %s", trigger, exc.stage, exc)
    except Exception as exc:
        result.status = "error"
        result.stage = "cycle"
        result.error = f"{type(exc).__name__}: {exc}"
        logger.exception("[%s] Unexpected error updating location", trigger)
    finally:
        result.duration_s = time.monotonic() - started

    if result.ok:
        logger.info(
            "[%s] Location %.6f, %.6f published for %s in %.2fs",
            trigger,
            result.sample.latitude,
            result.sample.longitude,
            result.identity,
            result.duration_s,
        )
    elif result.status == "skipped":
        logger.warning(
            "[%s] Location captured at %s not published for %s: stored record is as recent",
            trigger,
            result.sample.captured_at.isoformat(),
            result.identity,
        )
    return result
