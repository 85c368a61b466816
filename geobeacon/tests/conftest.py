"""Shared fixtures: samples, fake Firebase backends, credential stores."""

from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import jwt
import pytest

from geobeacon.config import Settings
from geobeacon.config_loader import AgentConfig, load_agent_config
from geobeacon.platform.termux import CommandResult
from geobeacon.service.fallback import CrontabJobBackend, JobBackend, PeriodicTask
from geobeacon.telemetry.base import DeviceIdentity, LocationSample
from geobeacon.telemetry.identity import CredentialStore
from geobeacon.telemetry.sinks.memory import MemorySink

TEST_PROJECT = "geobeacon-test"
TEST_API_KEY = "test-api-key"
EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """UTC datetime ``seconds`` after a fixed epoch."""
    return EPOCH + timedelta(seconds=seconds)


def make_id_token(uid: str, expires_in: int = 3600) -> str:
    """Unsigned-verification JWT with an ``exp`` claim, like Firebase id tokens."""
    now = int(time.time())
    return jwt.encode(
        {"sub": uid, "user_id": uid, "iat": now, "exp": now + expires_in},
        "test-secret",
        algorithm="HS256",
    )


# ---------------------------------------------------------------------------
# Fake Firebase (Auth + Firestore REST)
# ---------------------------------------------------------------------------


class FakeFirebase:
    """In-memory stand-in for the Firebase Auth and Firestore REST endpoints.

    Attributes:
        documents:     Full document name → Firestore ``fields`` dict.
        requests:      Every request received, in order.
        sign_ups:      Number of anonymous sign-ups served.
        refresh_status: Status returned by the token endpoint (200 or an error).
        fail_commit:   Status to return from ``:commit`` instead of succeeding.
        fail_get:      Status to return from the transactional document read.
    """

    def __init__(self) -> None:
        self.documents: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.sign_ups = 0
        self.refresh_status = 200
        self.fail_commit: int | None = None
        self.fail_get: int | None = None
        self.token_ttl = 3600

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path

        if host == "identitytoolkit.googleapis.com" and path.endswith("accounts:signUp"):
            self.sign_ups += 1
            uid = f"anon-{self.sign_ups}"
            return httpx.Response(
                200,
                json={
                    "localId": uid,
                    "idToken": make_id_token(uid, self.token_ttl),
                    "refreshToken": f"refresh-{uid}",
                },
            )

        if host == "securetoken.googleapis.com":
            if self.refresh_status != 200:
                return httpx.Response(
                    self.refresh_status, json={"error": {"message": "TOKEN_EXPIRED"}}
                )
            form = dict(httpx.QueryParams(request.content.decode()))
            uid = form["refresh_token"].removeprefix("refresh-")
            return httpx.Response(
                200,
                json={
                    "id_token": make_id_token(uid),
                    "refresh_token": form["refresh_token"],
                    "user_id": uid,
                },
            )

        if host == "firestore.googleapis.com":
            return self._firestore(request, path.removeprefix("/v1/"))

        return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})

    def _firestore(self, request: httpx.Request, path: str) -> httpx.Response:
        if path.endswith(":beginTransaction"):
            return httpx.Response(200, json={"transaction": "tx-1"})
        if path.endswith(":rollback"):
            return httpx.Response(200, json={})
        if path.endswith(":commit"):
            if self.fail_commit:
                return httpx.Response(self.fail_commit, json={"error": {"status": "ABORTED"}})
            body = json.loads(request.content)
            for write in body["writes"]:
                name = write["update"]["name"]
                merged = dict(self.documents.get(name, {}))
                for field_path in write["updateMask"]["fieldPaths"]:
                    merged[field_path] = write["update"]["fields"][field_path]
                self.documents[name] = merged
            return httpx.Response(200, json={"commitTime": "2026-01-01T00:00:00Z"})
        if request.method == "GET":
            if self.fail_get:
                return httpx.Response(self.fail_get, json={"error": {"status": "INTERNAL"}})
            if path not in self.documents:
                return httpx.Response(404, json={"error": {"status": "NOT_FOUND"}})
            return httpx.Response(200, json={"name": path, "fields": self.documents[path]})
        return httpx.Response(400, json={"error": {"status": "INVALID_ARGUMENT"}})

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def firebase() -> FakeFirebase:
    return FakeFirebase()


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def identity() -> DeviceIdentity:
    return DeviceIdentity(uid="u1", id_token="token-u1")


@pytest.fixture
def sample_t100() -> LocationSample:
    return LocationSample(latitude=37.0, longitude=-122.0, captured_at=at(100))


@pytest.fixture
def sample_t200() -> LocationSample:
    return LocationSample(latitude=37.1, longitude=-122.1, captured_at=at(200))


@pytest.fixture
def memory_sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def credential_store(tmp_path: Path) -> CredentialStore:
    return CredentialStore(tmp_path / "credential.json")


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def agent_config() -> AgentConfig:
    """The bundled agent config."""
    return load_agent_config()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated to a temp state dir with headless backends."""
    return Settings(
        _env_file=None,
        state_dir=tmp_path / "state",
        firebase_api_key=TEST_API_KEY,
        firebase_project_id=TEST_PROJECT,
        location_source="fixed",
        telemetry_sink="memory",
        job_backend="crontab",
        permission_backend="static",
        notification_backend="log",
        fixed_latitude=37.0,
        fixed_longitude=-122.0,
        stop_grace_seconds=0.5,
    )


# ---------------------------------------------------------------------------
# Scheduler fakes
# ---------------------------------------------------------------------------


class RecordingJobBackend(JobBackend):
    """Job backend that keeps registrations in a dict keyed by unique name."""

    BACKEND_ID = "recording"

    def __init__(self) -> None:
        self.jobs: dict[str, tuple[PeriodicTask, list[str]]] = {}
        self.register_calls = 0

    async def register(self, task: PeriodicTask, command: list[str]) -> None:
        self.register_calls += 1
        self.jobs[task.unique_name] = (task, command)

    async def cancel(self, unique_name: str) -> bool:
        return self.jobs.pop(unique_name, None) is not None


@pytest.fixture
def job_backend() -> RecordingJobBackend:
    return RecordingJobBackend()


class FakeCrontab:
    """Plays ``crontab -l`` / ``crontab -`` against an in-memory table."""

    def __init__(self, content: str | None = None) -> None:
        self.content = content

    async def __call__(self, args, input_text=None, timeout=None) -> CommandResult:
        if args[1] == "-l":
            if self.content is None:
                return CommandResult(args=args, returncode=1, stderr="no crontab for user")
            return CommandResult(args=args, returncode=0, stdout=self.content)
        self.content = input_text
        return CommandResult(args=args, returncode=0)

    def tagged(self, unique_name: str) -> list[str]:
        tag = CrontabJobBackend.tag(unique_name)
        return [line for line in (self.content or "").splitlines() if line.endswith(tag)]
