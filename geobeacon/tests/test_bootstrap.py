"""Tests for per-process runtime construction and the launcher bootstrap."""

from __future__ import annotations

import logging
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from geobeacon.exceptions import JobRegistrationError
from geobeacon.main import bootstrap
from geobeacon.platform.notifications import LogNotificationSurface, NotificationChannel
from geobeacon.platform.permissions import Capability, PermissionGate, StaticPermissionBackend
from geobeacon.runtime import (
    build_notification_surface,
    build_permission_gate,
    build_runtime,
    configure_logging,
    notification_channel,
)
from geobeacon.service.fallback import FallbackScheduler
from geobeacon.service.foreground import BackgroundService, ServiceState
from geobeacon.telemetry.identity import AnonymousIdentityProvider
from geobeacon.telemetry.sinks.memory import MemorySink
from geobeacon.telemetry.sources.fixed import FixedLocationSource
from geobeacon.tests.conftest import RecordingJobBackend


class TestRuntime:
    @pytest.mark.asyncio
    async def test_build_from_settings(self, settings) -> None:
        async with build_runtime(settings) as runtime:
            assert isinstance(runtime.identity_provider, AnonymousIdentityProvider)
            assert isinstance(runtime.source, FixedLocationSource)
            assert isinstance(runtime.sink, MemorySink)
        assert runtime.http_client.is_closed

    @pytest.mark.asyncio
    async def test_run_cycle(self, settings, firebase) -> None:
        async with build_runtime(settings, http_client=firebase.client()) as runtime:
            result = await runtime.run_cycle(trigger="manual")
            assert result.ok
            assert runtime.sink.get(result.identity.uid)["timestamp"] == result.sample.captured_at

    def test_unknown_backend(self, settings) -> None:
        settings.permission_backend = "magic"
        with pytest.raises(KeyError, match="Available"):
            build_permission_gate(settings)

    def test_notification_channel_from_config(self, agent_config) -> None:
        channel = notification_channel(agent_config)
        assert channel == NotificationChannel(
            "location_service", "Location Tracking", "Background service for location tracking"
        )

    def test_configure_logging_to_file(self, tmp_path) -> None:
        log_file = tmp_path / "logs" / "geobeacon.log"
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            configure_logging("DEBUG", log_file)
            logging.getLogger("geobeacon.test").info("hello")
            for handler in root.handlers:
                handler.flush()
            assert "geobeacon.test — hello" in log_file.read_text()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:], root.level = saved[0], saved[1]


class TestBootstrap:
    @pytest.fixture
    def notifications(self) -> LogNotificationSurface:
        return LogNotificationSurface()

    @pytest.fixture
    def scheduler(self, job_backend: RecordingJobBackend) -> FallbackScheduler:
        return FallbackScheduler(job_backend)

    async def _bootstrap(self, settings, firebase, notifications, scheduler, **kwargs):
        service = kwargs.pop("service", None) or BackgroundService(notifications, settings)
        popen = MagicMock(return_value=MagicMock(pid=os.getpid()))
        with patch("geobeacon.main.configure_logging"), patch(
            "geobeacon.main.build_runtime",
            lambda s, a: build_runtime(s, a, http_client=firebase.client()),
        ), patch("geobeacon.service.foreground.subprocess.Popen", popen):
            result = await bootstrap(
                settings,
                notifications=notifications,
                scheduler=scheduler,
                service=service,
                **kwargs,
            )
        return result, service, popen

    @pytest.mark.asyncio
    async def test_full_bootstrap(self, settings, firebase, notifications, scheduler, job_backend) -> None:
        result, service, popen = await self._bootstrap(settings, firebase, notifications, scheduler)

        assert result.ok
        assert result.identity.uid == "anon-1"
        assert result.permissions.granted
        assert result.channel_ready and notifications.has_channel("location_service")
        assert result.task.unique_name == "updateLocationTask"
        assert list(job_backend.jobs) == ["updateLocationTask"]
        assert result.service_pid == os.getpid()
        assert service.state is ServiceState.STARTED
        # auto_start plus the explicit start spawn a single process
        popen.assert_called_once()

    @pytest.mark.asyncio
    async def test_sign_in_failure_does_not_stop_bootstrap(
        self, settings, firebase, notifications, scheduler
    ) -> None:
        settings.firebase_api_key = ""
        result, _, _ = await self._bootstrap(settings, firebase, notifications, scheduler)
        assert result.identity is None
        assert result.task is not None
        assert result.service_pid is not None
        assert any(e.startswith("sign-in") for e in result.errors)

    @pytest.mark.asyncio
    async def test_denied_permissions_logged_and_ignored(
        self, settings, firebase, notifications, scheduler
    ) -> None:
        gate = PermissionGate(StaticPermissionBackend(granted={Capability.LOCATION}))
        result, _, _ = await self._bootstrap(
            settings, firebase, notifications, scheduler, permission_gate=gate
        )
        assert not result.permissions.granted
        assert Capability.LOCATION_ALWAYS in result.permissions.denied
        assert result.ok

    @pytest.mark.asyncio
    async def test_job_registration_failure_still_starts_service(
        self, settings, firebase, notifications, job_backend
    ) -> None:
        job_backend.register = AsyncMock(side_effect=JobRegistrationError("refused"))
        result, _, _ = await self._bootstrap(
            settings, firebase, notifications, FallbackScheduler(job_backend)
        )
        assert result.task is None
        assert result.service_pid == os.getpid()
        assert not result.ok

    def test_build_notification_surface(self, settings) -> None:
        assert isinstance(build_notification_surface(settings), LogNotificationSurface)
