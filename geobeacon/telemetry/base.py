"""Base classes and data models for the geobeacon telemetry pipeline.

Every identity provider, location source, and telemetry sink implements one of
the ABCs below and exchanges the models defined here.  Both schedulers drive
the same three collaborators through ``geobeacon.telemetry.cycle.run_cycle``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

from geobeacon.exceptions import WriteFailed

logger = logging.getLogger("geobeacon.telemetry")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceIdentity:
    """Stable anonymous identity of this installation.

    Equality and hashing use ``uid`` only, so two lookups that refreshed the
    bearer token in between still compare equal.

    Attributes:
        uid:      Backend-issued anonymous user id; the telemetry document key.
        id_token: Current bearer token for the remote store (never logged).
    """

    uid: str
    id_token: str | None = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        return self.uid


# ---------------------------------------------------------------------------
# Location sample
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeoPoint:
    """Latitude/longitude pair as stored in a telemetry record."""

    latitude: float
    longitude: float


@dataclass(frozen=True)
class LocationSample:
    """One coordinate fix.

    Immutable and ephemeral: produced by a LocationSource and handed by value
    to a TelemetrySink.  Only latitude, longitude and captured_at are written
    to the remote store.

    Attributes:
        latitude:    Decimal degrees, -90..90.
        longitude:   Decimal degrees, -180..180.
        captured_at: UTC timestamp of the fix.
        accuracy_m:  Reported horizontal accuracy in metres, if known.
        provider:    Positioning provider that produced the fix (gps, network, …).
    """

    latitude: float
    longitude: float
    captured_at: datetime = field(default_factory=utc_now)
    accuracy_m: float | None = None
    provider: str | None = None

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")
        if self.captured_at.tzinfo is None:
            # Naive timestamps are taken as UTC
            object.__setattr__(self, "captured_at", self.captured_at.replace(tzinfo=timezone.utc))

    @property
    def geo_point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------


class IdentityProvider(ABC):
    """Obtains the stable anonymous identity of this device."""

    @abstractmethod
    async def get_identity(self) -> DeviceIdentity:
        """Return the current identity, establishing a session if none exists.

        Called once per cycle: another process may have re-established the
        session since the last call.

        Raises:
            IdentityUnavailable: If the anonymous-session backend is unreachable.
        """


class LocationSource(ABC):
    """Wraps the OS positioning capability.

    Subclasses must implement ``acquire()``.
    """

    #: Slug used by the source registry and settings.
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Source"

    @abstractmethod
    async def acquire(self) -> LocationSample:
        """Obtain one high-accuracy fix.

        Suspends the calling cycle until the OS returns a fix or fails.  Must
        only be awaited from a scheduler context, never a UI context.

        Raises:
            LocationUnavailable: Location disabled, no fix, or permission revoked.
        """

    async def aclose(self) -> None:
        """Release resources held by the source.  No-op by default."""
        return None


class TelemetrySink(ABC):
    """Merge-upserts location samples into a remote document store.

    Subclasses must implement ``publish()``.
    """

    #: Slug used by the sink registry and settings.
    SINK_ID: str = "unknown"

    #: Fields written on every publish; all other document fields are left alone.
    MERGE_FIELDS: tuple[str, ...] = ("location", "timestamp")

    @abstractmethod
    async def publish(self, identity: DeviceIdentity, sample: LocationSample) -> bool:
        """Merge the sample into the record keyed by ``identity``.

        Creates the record if absent; otherwise overwrites only ``location``
        and ``timestamp``.  A sample not newer than the stored timestamp leaves
        the record unchanged.  No retry is attempted.

        Returns:
            True if the record was written, False if the sample was skipped
            as stale.

        Raises:
            WriteFailed: Network unavailable, backend rejection, or empty uid.
        """

    async def aclose(self) -> None:
        """Release resources held by the sink.  No-op by default."""
        return None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_uid(identity: DeviceIdentity) -> str:
        """Return the document id for ``identity`` or raise WriteFailed."""
        uid = (identity.uid or "").strip()
        if not uid:
            raise WriteFailed("Refusing to write telemetry for an empty identity")
        if "/" in uid:
            raise WriteFailed(f"Malformed identity {uid!r}: contains '/'")
        return uid

    @staticmethod
    def _is_stale(stored_timestamp: datetime | None, sample: LocationSample) -> bool:
        """Return True if the stored record is at least as recent as ``sample``."""
        return stored_timestamp is not None and stored_timestamp >= sample.captured_at
