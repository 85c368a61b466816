"""Cloud Firestore telemetry sink (REST v1).

One publish is a short read-write transaction:

1. ``:beginTransaction``
2. ``GET {collection}/{uid}`` inside the transaction (only ``timestamp``)
3. ``:commit`` an ``update`` write with ``updateMask`` = location, timestamp,
   or ``:rollback`` when the stored timestamp is already as recent

Any failure after step 1 also rolls the transaction back so the document is
not left locked against the other scheduler.  ``publish`` returns False when
the sample was skipped as stale.

The update mask makes the write a merge-upsert: the document is created if
absent and no other field is touched.  The transactional read gives
last-write-wins by sample timestamp when the foreground timer and the periodic
job publish at the same moment.  Contention surfaces as 409 ABORTED and is
reported as WriteFailed; there is no retry.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

import httpx

from geobeacon.exceptions import WriteFailed
from geobeacon.telemetry.base import DeviceIdentity, LocationSample, TelemetrySink

logger = logging.getLogger("geobeacon.telemetry.sinks.firestore")

_FIRESTORE_API_BASE = "https://firestore.googleapis.com/v1"

# Firestore returns nanosecond precision; datetime keeps microseconds
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime as an RFC 3339 UTC string."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a Firestore ``timestampValue`` into an aware UTC datetime."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(_FRACTION_RE.sub(r".\1", value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Could not parse Firestore timestamp: %r", value)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def build_merge_write(document_name: str, sample: LocationSample) -> dict:
    """Build a Firestore ``Write`` that merges the sample into ``document_name``.

    Args:
        document_name: Full resource name ``projects/…/documents/{collection}/{uid}``.
        sample:        The location sample.

    Returns:
        Write dict for ``:commit``.
    """
    return {
        "update": {
            "name": document_name,
            "fields": {
                "location": {
                    "geoPointValue": {
                        "latitude": sample.latitude,
                        "longitude": sample.longitude,
                    }
                },
                "timestamp": {"timestampValue": format_timestamp(sample.captured_at)},
            },
        },
        "updateMask": {"fieldPaths": list(TelemetrySink.MERGE_FIELDS)},
    }


class FirestoreSink(TelemetrySink):
    """Merge-upsert into ``{collection}/{uid}`` via the Firestore REST API."""

    SINK_ID = "firestore"

    def __init__(
        self,
        project_id: str,
        collection: str = "locations",
        database: str = "(default)",
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the sink.

        Args:
            project_id:  Firebase / GCP project id.
            collection:  Collection holding one document per device.
            database:    Firestore database id.
            http_client: Optional pre-configured httpx client (for testing).
            timeout:     Per-request timeout when no client is injected.
        """
        self._project_id = project_id
        self._collection = collection
        self._database = database
        self._http_client = http_client
        self._timeout = timeout

    @property
    def _root(self) -> str:
        return f"projects/{self._project_id}/databases/{self._database}/documents"

    def document_name(self, uid: str) -> str:
        return f"{self._root}/{self._collection}/{uid}"

    async def publish(self, identity: DeviceIdentity, sample: LocationSample) -> bool:
        uid = self._require_uid(identity)
        if not self._project_id:
            raise WriteFailed("Firestore project id is not configured (GEOBEACON_FIREBASE_PROJECT_ID)")
        if not identity.id_token:
            raise WriteFailed(f"No bearer token for identity {uid}")

        headers = {"Authorization": f"Bearer {identity.id_token}"}
        base = f"{_FIRESTORE_API_BASE}/{self._root}"
        name = self.document_name(uid)

        if self._http_client:
            return await self._transact(self._http_client, base, name, headers, sample)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._transact(client, base, name, headers, sample)

    async def _transact(
        self,
        client: httpx.AsyncClient,
        base: str,
        name: str,
        headers: dict,
        sample: LocationSample,
    ) -> bool:
        try:
            begin = await client.post(
                f"{base}:beginTransaction",
                json={"options": {"readWrite": {}}},
                headers=headers,
            )
            self._raise_for_status(begin)
            transaction = begin.json()["transaction"]

            try:
                written = await self._read_and_commit(client, base, name, headers, sample, transaction)
            except Exception:
                # Release the read lock held by the transaction before reporting
                await self._rollback(client, base, headers, transaction)
                raise
        except httpx.HTTPError as exc:
            raise WriteFailed(f"Firestore unreachable: {exc}", exc) from exc
        except (KeyError, ValueError) as exc:
            raise WriteFailed(f"Unexpected Firestore response: {exc}", exc) from exc

        if written:
            logger.debug("Location updated in Firestore under %s", name)
        return written

    async def _read_and_commit(
        self,
        client: httpx.AsyncClient,
        base: str,
        name: str,
        headers: dict,
        sample: LocationSample,
        transaction: str,
    ) -> bool:
        current = await client.get(
            f"{_FIRESTORE_API_BASE}/{name}",
            params={"transaction": transaction, "mask.fieldPaths": "timestamp"},
            headers=headers,
        )
        if current.status_code == 404:
            stored = None
        else:
            self._raise_for_status(current)
            fields = current.json().get("fields", {})
            stored = parse_timestamp(fields.get("timestamp", {}).get("timestampValue"))

        if self._is_stale(stored, sample):
            logger.debug(
                "Skipping stale sample for %s (%s <= stored %s)",
                name, format_timestamp(sample.captured_at), format_timestamp(stored),
            )
            await self._rollback(client, base, headers, transaction)
            return False

        commit = await client.post(
            f"{base}:commit",
            json={"writes": [build_merge_write(name, sample)], "transaction": transaction},
            headers=headers,
        )
        self._raise_for_status(commit)
        return True

    @staticmethod
    async def _rollback(client: httpx.AsyncClient, base: str, headers: dict, transaction: str) -> None:
        """Best-effort rollback; a failure is logged, never raised."""
        try:
            response = await client.post(
                f"{base}:rollback", json={"transaction": transaction}, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.warning("Could not roll back Firestore transaction: %s", exc)
            return
        if not response.is_success:
            logger.warning("Firestore rollback rejected: %d", response.status_code)

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        """Raise WriteFailed for any non-2xx Firestore response."""
        if response.is_success:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        detail = error.get("status", "") if isinstance(error, dict) else ""
        logger.error(
            "Firestore API error: %s %s → %d %s",
            response.request.method, response.request.url.path, response.status_code, detail,
        )
        raise WriteFailed(
            f"Firestore rejected the write ({response.status_code}{' ' + detail if detail else ''})",
            status_code=response.status_code,
        )
