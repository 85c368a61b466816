"""Telemetry sinks for geobeacon.

Each sink implements the TelemetrySink ABC: a merge-upsert of the latest
sample into one document per device identity.

Available sinks:
    FirestoreSink — Cloud Firestore REST API (transactional, last-write-wins)
    MemorySink    — In-process document map (dry runs, tests)
"""

from geobeacon.telemetry.sinks.firestore import FirestoreSink
from geobeacon.telemetry.sinks.memory import MemorySink

__all__ = [
    "FirestoreSink",
    "MemorySink",
]

# Registry: sink_id → sink class
SINK_REGISTRY: dict[str, type] = {
    "firestore": FirestoreSink,
    "memory": MemorySink,
}


def get_sink(sink_id: str) -> "type":
    """Return the telemetry sink class for a given slug.

    Raises:
        KeyError: If the sink_id is not registered.
    """
    if sink_id not in SINK_REGISTRY:
        raise KeyError(
            f"No telemetry sink registered for '{sink_id}'. "
            f"Available: {list(SINK_REGISTRY)}"
        )
    return SINK_REGISTRY[sink_id]
