"""In-process telemetry sink with the same merge semantics as Firestore.

Used for dry runs (``GEOBEACON_TELEMETRY_SINK=memory``) and tests.  Documents
are plain dicts keyed by collection and uid; ``location`` holds a GeoPoint
and ``timestamp`` the sample's capture time.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict

from geobeacon.telemetry.base import DeviceIdentity, LocationSample, TelemetrySink

logger = logging.getLogger("geobeacon.telemetry.sinks.memory")


class MemorySink(TelemetrySink):
    """Dict-backed document store with merge-upsert and last-write-wins."""

    SINK_ID = "memory"

    def __init__(self, collection: str = "locations") -> None:
        self._collection = collection
        self._documents: dict[str, dict[str, dict]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self.write_count = 0

    async def publish(self, identity: DeviceIdentity, sample: LocationSample) -> bool:
        uid = self._require_uid(identity)

        async with self._lock:
            documents = self._documents[self._collection]
            current = documents.get(uid)
            if current is not None and self._is_stale(current.get("timestamp"), sample):
                logger.debug(
                    "Skipping stale sample for %s (%s <= stored %s)",
                    uid, sample.captured_at.isoformat(), current["timestamp"].isoformat(),
                )
                return False

            merged = dict(current or {})
            merged["location"] = sample.geo_point
            merged["timestamp"] = sample.captured_at
            documents[uid] = merged
            self.write_count += 1

        logger.debug("Location updated under %s/%s", self._collection, uid)
        return True

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def get(self, uid: str, collection: str | None = None) -> dict | None:
        """Return a copy of the stored document, or None."""
        document = self._documents[collection or self._collection].get(uid)
        return copy.deepcopy(document) if document is not None else None

    def put(self, uid: str, fields: dict, collection: str | None = None) -> None:
        """Store a document as-is (other writers' fields, fixtures)."""
        self._documents[collection or self._collection][uid] = dict(fields)

    def count(self, collection: str | None = None) -> int:
        return len(self._documents[collection or self._collection])
