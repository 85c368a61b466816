"""geobeacon telemetry pipeline.

Subpackages:
    sources/ — Location sources (Termux:API, fixed coordinate)
    sinks/   — Telemetry sinks (Firestore REST, in-memory)

Core modules:
    base     — Data models and collaborator ABCs
    identity — Anonymous identity provider and credential store
    cycle    — The Identity → Location → Sink cycle both schedulers run
"""

from geobeacon.telemetry.base import (
    DeviceIdentity,
    GeoPoint,
    IdentityProvider,
    LocationSample,
    LocationSource,
    TelemetrySink,
)
from geobeacon.telemetry.cycle import CycleResult, run_cycle

__all__ = [
    "CycleResult",
    "DeviceIdentity",
    "GeoPoint",
    "IdentityProvider",
    "LocationSample",
    "LocationSource",
    "TelemetrySink",
    "run_cycle",
]
