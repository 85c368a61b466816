"""Tests for telemetry sinks: merge-upsert, idempotence and convergence."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from geobeacon.exceptions import WriteFailed
from geobeacon.telemetry.base import DeviceIdentity, GeoPoint, LocationSample
from geobeacon.telemetry.sinks import get_sink
from geobeacon.telemetry.sinks.firestore import (
    FirestoreSink,
    build_merge_write,
    format_timestamp,
    parse_timestamp,
)
from geobeacon.telemetry.sinks.memory import MemorySink
from geobeacon.tests.conftest import TEST_PROJECT, FakeFirebase, at

DOC = f"projects/{TEST_PROJECT}/databases/(default)/documents/locations/u1"


def _firestore(firebase: FakeFirebase) -> FirestoreSink:
    return FirestoreSink(project_id=TEST_PROJECT, http_client=firebase.client())


def _geo(document: dict) -> tuple[float, float]:
    value = document["location"]["geoPointValue"]
    return value["latitude"], value["longitude"]


# ---------------------------------------------------------------------------
# Memory sink
# ---------------------------------------------------------------------------


class TestMemorySink:
    @pytest.mark.asyncio
    async def test_scenario_two_updates_one_document(
        self, memory_sink: MemorySink, identity, sample_t100, sample_t200
    ) -> None:
        await memory_sink.publish(identity, sample_t100)
        assert memory_sink.get("u1") == {"location": GeoPoint(37.0, -122.0), "timestamp": at(100)}

        await memory_sink.publish(identity, sample_t200)
        assert memory_sink.get("u1") == {"location": GeoPoint(37.1, -122.1), "timestamp": at(200)}
        assert memory_sink.count() == 1

    @pytest.mark.asyncio
    async def test_other_fields_untouched(self, memory_sink: MemorySink, identity, sample_t100) -> None:
        memory_sink.put("u1", {"nickname": "phone", "timestamp": at(0)})
        await memory_sink.publish(identity, sample_t100)
        document = memory_sink.get("u1")
        assert document["nickname"] == "phone"
        assert document["location"] == GeoPoint(37.0, -122.0)

    @pytest.mark.asyncio
    async def test_publish_sequence_keeps_last(self, memory_sink: MemorySink, identity) -> None:
        memory_sink.put("u1", {"nickname": "phone"})
        samples = [LocationSample(10.0 + i, 20.0 + i, captured_at=at(i)) for i in range(1, 6)]
        for sample in samples:
            await memory_sink.publish(identity, sample)
        assert memory_sink.get("u1") == {
            "nickname": "phone",
            "location": GeoPoint(15.0, 25.0),
            "timestamp": at(5),
        }

    @pytest.mark.asyncio
    async def test_republishing_same_sample_is_noop(self, memory_sink: MemorySink, identity, sample_t100) -> None:
        assert await memory_sink.publish(identity, sample_t100) is True
        before = memory_sink.get("u1")
        assert await memory_sink.publish(identity, sample_t100) is False
        assert memory_sink.get("u1") == before
        assert memory_sink.write_count == 1

    @pytest.mark.asyncio
    async def test_regressed_clock_skips_write(self, memory_sink: MemorySink, identity) -> None:
        assert await memory_sink.publish(identity, LocationSample(10.0, 10.0, captured_at=at(500)))
        written = await memory_sink.publish(identity, LocationSample(20.0, 20.0, captured_at=at(100)))
        assert written is False
        assert memory_sink.get("u1") == {"location": GeoPoint(10.0, 10.0), "timestamp": at(500)}
        assert memory_sink.write_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reverse", [False, True])
    async def test_concurrent_writes_converge(
        self, memory_sink: MemorySink, identity, sample_t100, sample_t200, reverse: bool
    ) -> None:
        order = [sample_t100, sample_t200]
        if reverse:
            order.reverse()
        await asyncio.gather(*(memory_sink.publish(identity, s) for s in order))
        assert memory_sink.get("u1")["location"] == GeoPoint(37.1, -122.1)
        assert memory_sink.get("u1")["timestamp"] == at(200)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("uid", ["", "   ", "a/b"])
    async def test_bad_uid_rejected(self, memory_sink: MemorySink, sample_t100, uid: str) -> None:
        with pytest.raises(WriteFailed):
            await memory_sink.publish(DeviceIdentity(uid=uid), sample_t100)
        assert memory_sink.count() == 0


# ---------------------------------------------------------------------------
# Firestore sink
# ---------------------------------------------------------------------------


class TestFirestoreHelpers:
    def test_timestamp_round_trip_with_nanoseconds(self) -> None:
        assert parse_timestamp("2026-01-01T00:01:40.123456789Z") == at(100.123456)

    def test_format_timestamp_utc(self) -> None:
        assert format_timestamp(at(100)) == "2026-01-01T00:01:40Z"

    def test_parse_invalid(self) -> None:
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None

    def test_merge_write_shape(self, sample_t100) -> None:
        write = build_merge_write(DOC, sample_t100)
        assert write["updateMask"] == {"fieldPaths": ["location", "timestamp"]}
        assert write["update"]["name"] == DOC
        assert write["update"]["fields"]["location"] == {
            "geoPointValue": {"latitude": 37.0, "longitude": -122.0}
        }
        assert write["update"]["fields"]["timestamp"] == {"timestampValue": "2026-01-01T00:01:40Z"}

    def test_registry(self) -> None:
        assert get_sink("firestore") is FirestoreSink
        assert get_sink("memory") is MemorySink
        with pytest.raises(KeyError):
            get_sink("postgres")


class TestFirestoreSink:
    @pytest.mark.asyncio
    async def test_scenario_two_updates_one_document(
        self, firebase: FakeFirebase, identity, sample_t100, sample_t200
    ) -> None:
        sink = _firestore(firebase)
        await sink.publish(identity, sample_t100)
        assert _geo(firebase.documents[DOC]) == (37.0, -122.0)

        await sink.publish(identity, sample_t200)
        assert _geo(firebase.documents[DOC]) == (37.1, -122.1)
        assert firebase.documents[DOC]["timestamp"] == {"timestampValue": "2026-01-01T00:03:20Z"}
        assert list(firebase.documents) == [DOC]

    @pytest.mark.asyncio
    async def test_transaction_request_sequence(self, firebase: FakeFirebase, identity, sample_t100) -> None:
        await _firestore(firebase).publish(identity, sample_t100)
        methods = [(r.method, r.url.path.rsplit(":", 1)[-1] if ":" in r.url.path else "doc") for r in firebase.requests]
        assert methods == [("POST", "beginTransaction"), ("GET", "doc"), ("POST", "commit")]

        get = firebase.requests[1]
        assert get.url.params["transaction"] == "tx-1"
        assert get.url.params["mask.fieldPaths"] == "timestamp"
        commit = json.loads(firebase.requests[2].content)
        assert commit["transaction"] == "tx-1"
        assert all(r.headers["Authorization"] == "Bearer token-u1" for r in firebase.requests)

    @pytest.mark.asyncio
    async def test_other_fields_untouched(self, firebase: FakeFirebase, identity, sample_t100) -> None:
        firebase.documents[DOC] = {"nickname": {"stringValue": "phone"}}
        await _firestore(firebase).publish(identity, sample_t100)
        assert firebase.documents[DOC]["nickname"] == {"stringValue": "phone"}
        assert _geo(firebase.documents[DOC]) == (37.0, -122.0)

    @pytest.mark.asyncio
    async def test_older_sample_rolls_back(
        self, firebase: FakeFirebase, identity, sample_t100, sample_t200
    ) -> None:
        sink = _firestore(firebase)
        await sink.publish(identity, sample_t200)
        firebase.requests.clear()

        assert await sink.publish(identity, sample_t100) is False
        assert firebase.paths()[-1].endswith(":rollback")
        assert _geo(firebase.documents[DOC]) == (37.1, -122.1)

    @pytest.mark.asyncio
    async def test_commit_rejection_raises(self, firebase: FakeFirebase, identity, sample_t100) -> None:
        firebase.fail_commit = 409
        with pytest.raises(WriteFailed) as exc_info:
            await _firestore(firebase).publish(identity, sample_t100)
        assert exc_info.value.status_code == 409
        assert "ABORTED" in str(exc_info.value)
        assert DOC not in firebase.documents
        assert firebase.paths()[-1].endswith(":rollback")

    @pytest.mark.asyncio
    async def test_failed_read_rolls_back(self, firebase: FakeFirebase, identity, sample_t100) -> None:
        firebase.fail_get = 500
        with pytest.raises(WriteFailed) as exc_info:
            await _firestore(firebase).publish(identity, sample_t100)
        assert exc_info.value.status_code == 500
        assert [r.method for r in firebase.requests] == ["POST", "GET", "POST"]
        begin, read, rollback = firebase.paths()
        assert begin.endswith(":beginTransaction")
        assert read.endswith("/locations/u1")
        assert rollback.endswith(":rollback")
        assert json.loads(firebase.requests[2].content) == {"transaction": "tx-1"}
        assert DOC not in firebase.documents

    @pytest.mark.asyncio
    async def test_rollback_failure_does_not_mask_error(
        self, firebase: FakeFirebase, identity, sample_t100
    ) -> None:
        def _handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith(":rollback"):
                raise httpx.ConnectError("offline", request=request)
            return firebase.handler(request)

        firebase.fail_get = 503
        sink = FirestoreSink(
            project_id=TEST_PROJECT,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(_handler)),
        )
        with pytest.raises(WriteFailed) as exc_info:
            await sink.publish(identity, sample_t100)
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_empty_uid_no_io(self, firebase: FakeFirebase, sample_t100) -> None:
        with pytest.raises(WriteFailed):
            await _firestore(firebase).publish(DeviceIdentity(uid="", id_token="t"), sample_t100)
        assert firebase.requests == []

    @pytest.mark.asyncio
    async def test_missing_token_no_io(self, firebase: FakeFirebase, sample_t100) -> None:
        with pytest.raises(WriteFailed):
            await _firestore(firebase).publish(DeviceIdentity(uid="u1"), sample_t100)
        assert firebase.requests == []

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self, identity, sample_t100) -> None:
        def _boom(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("offline", request=request)

        sink = FirestoreSink(
            project_id=TEST_PROJECT,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(_boom)),
        )
        with pytest.raises(WriteFailed) as exc_info:
            await sink.publish(identity, sample_t100)
        assert isinstance(exc_info.value.original_error, httpx.ConnectError)
