"""Self-contained per-process bootstrap.

The foreground service and the periodic job each run in a process the OS
started with no state from the launcher.  ``build_runtime()`` re-creates every
dependency from settings: logging, agent config, HTTP client, identity
provider, location source and sink.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import httpx

from geobeacon.config import Settings, get_settings
from geobeacon.config_loader import AgentConfig, get_agent_config
from geobeacon.platform.notifications import (
    NOTIFICATION_SURFACES,
    Importance,
    NotificationChannel,
    NotificationSurface,
)
from geobeacon.platform.permissions import PERMISSION_BACKENDS, PermissionGate
from geobeacon.telemetry.base import IdentityProvider, LocationSource, TelemetrySink
from geobeacon.telemetry.cycle import CycleResult, run_cycle
from geobeacon.telemetry.identity import AnonymousIdentityProvider, CredentialStore
from geobeacon.telemetry.sinks import get_sink
from geobeacon.telemetry.sinks.firestore import FirestoreSink
from geobeacon.telemetry.sources import get_source
from geobeacon.telemetry.sources.fixed import FixedLocationSource
from geobeacon.telemetry.sources.termux import TermuxLocationSource

logger = logging.getLogger("geobeacon.runtime")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Configure the root logger for this process.

    Detached processes have no terminal, so they log to ``log_file``.
    """
    handlers: list[logging.Handler]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers = [logging.FileHandler(log_file, encoding="utf-8")]
    else:
        handlers = [logging.StreamHandler(sys.stdout)]
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
        force=True,
    )
    # httpx logs every request URL at INFO, including the API key query param
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Component factories
# ---------------------------------------------------------------------------


def build_identity_provider(settings: Settings, http_client: httpx.AsyncClient | None = None) -> IdentityProvider:
    return AnonymousIdentityProvider(
        api_key=settings.firebase_api_key,
        store=CredentialStore(settings.resolved_credential_path),
        http_client=http_client,
        timeout=settings.http_timeout_seconds,
    )


def build_source(settings: Settings) -> LocationSource:
    source_cls = get_source(settings.location_source)
    if source_cls is TermuxLocationSource:
        return TermuxLocationSource(
            provider=settings.termux_location_provider,
            request=settings.termux_location_request,
            timeout=settings.location_timeout_seconds,
        )
    if source_cls is FixedLocationSource:
        return FixedLocationSource(settings.fixed_latitude, settings.fixed_longitude)
    return source_cls()


def build_sink(
    settings: Settings,
    agent_config: AgentConfig,
    http_client: httpx.AsyncClient | None = None,
) -> TelemetrySink:
    sink_cls = get_sink(settings.telemetry_sink)
    if sink_cls is FirestoreSink:
        return FirestoreSink(
            project_id=settings.firebase_project_id,
            collection=agent_config.collection,
            http_client=http_client,
            timeout=settings.http_timeout_seconds,
        )
    return sink_cls(collection=agent_config.collection)


def build_permission_gate(settings: Settings) -> PermissionGate:
    try:
        backend_cls = PERMISSION_BACKENDS[settings.permission_backend]
    except KeyError:
        raise KeyError(
            f"No permission backend registered for '{settings.permission_backend}'. "
            f"Available: {list(PERMISSION_BACKENDS)}"
        ) from None
    return PermissionGate(backend_cls())


def build_notification_surface(settings: Settings) -> NotificationSurface:
    try:
        surface_cls = NOTIFICATION_SURFACES[settings.notification_backend]
    except KeyError:
        raise KeyError(
            f"No notification backend registered for '{settings.notification_backend}'. "
            f"Available: {list(NOTIFICATION_SURFACES)}"
        ) from None
    return surface_cls()


def notification_channel(agent_config: AgentConfig) -> NotificationChannel:
    cfg = agent_config.notification_channel
    return NotificationChannel(
        channel_id=cfg.channel_id,
        display_name=cfg.name,
        description=cfg.description,
        importance=Importance(cfg.importance),
    )


# ---------------------------------------------------------------------------
# Runtime
# ---------------------------------------------------------------------------


@dataclass
class Runtime:
    """Everything one process needs to run telemetry cycles."""

    settings: Settings
    agent_config: AgentConfig
    identity_provider: IdentityProvider
    source: LocationSource
    sink: TelemetrySink
    http_client: httpx.AsyncClient | None = None

    async def run_cycle(self, trigger: str) -> CycleResult:
        return await run_cycle(self.identity_provider, self.source, self.sink, trigger=trigger)

    async def aclose(self) -> None:
        await self.source.aclose()
        await self.sink.aclose()
        if self.http_client is not None:
            await self.http_client.aclose()

    async def __aenter__(self) -> "Runtime":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def build_runtime(
    settings: Settings | None = None,
    agent_config: AgentConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Runtime:
    """Create a Runtime from scratch for the current process.

    Args:
        settings:     Override settings (defaults to environment).
        agent_config: Override agent config (defaults to agent_config.yaml).
        http_client:  Shared httpx client; one is created when omitted.

    Returns:
        Runtime; close it with ``aclose()`` or ``async with``.
    """
    settings = settings or get_settings()
    agent_config = agent_config or get_agent_config(settings.agent_config_path)
    client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    runtime = Runtime(
        settings=settings,
        agent_config=agent_config,
        identity_provider=build_identity_provider(settings, client),
        source=build_source(settings),
        sink=build_sink(settings, agent_config, client),
        http_client=client,
    )
    logger.debug(
        "Runtime ready: source=%s sink=%s",
        settings.location_source,
        settings.telemetry_sink,
    )
    return runtime
