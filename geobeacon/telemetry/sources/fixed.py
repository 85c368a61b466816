"""Fixed-coordinate location source for desktop development and dry runs."""

from __future__ import annotations

import logging

from geobeacon.telemetry.base import LocationSample, LocationSource, utc_now

logger = logging.getLogger("geobeacon.telemetry.sources.fixed")


class FixedLocationSource(LocationSource):
    """Always reports the configured coordinate, stamped with the current time."""

    SOURCE_ID = "fixed"
    DISPLAY_NAME = "Fixed coordinate"

    def __init__(self, latitude: float = 0.0, longitude: float = 0.0) -> None:
        # Validate eagerly so a bad setting fails at startup, not on every tick
        LocationSample(latitude=latitude, longitude=longitude)
        self._latitude = latitude
        self._longitude = longitude

    async def acquire(self) -> LocationSample:
        sample = LocationSample(
            latitude=self._latitude,
            longitude=self._longitude,
            captured_at=utc_now(),
            provider=self.SOURCE_ID,
        )
        logger.debug("Fixed location: %.6f, %.6f", sample.latitude, sample.longitude)
        return sample
