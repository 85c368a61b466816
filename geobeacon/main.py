"""geobeacon launcher: one-shot bootstrap that arms both schedulers.

Run on the device:
    geobeacon start
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from geobeacon.config import Settings, get_settings
from geobeacon.config_loader import AgentConfig, get_agent_config
from geobeacon.exceptions import IdentityUnavailable, JobRegistrationError
from geobeacon.platform.notifications import NotificationSurface
from geobeacon.platform.permissions import PermissionGate, PermissionReport
from geobeacon.runtime import (
    build_notification_surface,
    build_permission_gate,
    build_runtime,
    configure_logging,
    notification_channel,
)
from geobeacon.service.fallback import FallbackScheduler, PeriodicTask, get_job_backend
from geobeacon.service.foreground import BackgroundService, ForegroundServiceConfig, on_start
from geobeacon.telemetry.base import DeviceIdentity

logger = logging.getLogger("geobeacon")


@dataclass
class BootstrapResult:
    """What ``bootstrap()`` managed to set up.

    Attributes:
        identity:     Anonymous identity, if sign-in succeeded.
        permissions:  Permission gate report.
        channel_ready: Whether the notification channel was created.
        task:         Registered periodic task, if registration succeeded.
        service_pid:  Pid of the foreground service process.
        errors:       Non-fatal problems encountered along the way.
    """

    permissions: PermissionReport
    identity: DeviceIdentity | None = None
    channel_ready: bool = False
    task: PeriodicTask | None = None
    service_pid: int | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.task is not None and self.service_pid is not None


async def bootstrap(
    settings: Settings | None = None,
    agent_config: AgentConfig | None = None,
    *,
    log_file: Path | None = None,
    permission_gate: PermissionGate | None = None,
    notifications: NotificationSurface | None = None,
    scheduler: FallbackScheduler | None = None,
    service: BackgroundService | None = None,
) -> BootstrapResult:
    """Sign in, request capabilities, then arm the fallback job and the service.

    Sign-in and permission failures are logged and bootstrap carries on: each
    scheduler re-establishes the session itself, and a missing capability
    shows up later as a failed cycle.

    Raises:
        ServiceConfigurationError: If the foreground service config is invalid.
    """
    settings = settings or get_settings()
    agent_config = agent_config or get_agent_config(settings.agent_config_path)

    # 1. Logging
    configure_logging(settings.log_level, log_file)
    logger.info(
        "Starting %s v%s [%s]", settings.app_name, settings.app_version, settings.environment
    )

    # 2. Anonymous sign-in
    identity = None
    errors: list[str] = []
    async with build_runtime(settings, agent_config) as runtime:
        try:
            identity = await runtime.identity_provider.get_identity()
            logger.info("Signed in anonymously as %s", identity)
        except IdentityUnavailable as exc:
            errors.append(f"sign-in: {exc}")
            logger.warning("Anonymous sign-in failed, continuing: %s", exc)

    # 3. Permissions
    gate = permission_gate or build_permission_gate(settings)
    report = await gate.ensure_capabilities()
    if not report.granted:
        errors.append("denied: " + ", ".join(str(c) for c in report.denied))

    result = BootstrapResult(permissions=report, identity=identity, errors=errors)

    # 4. Notification channel, before the service starts
    notifications = notifications or build_notification_surface(settings)
    result.channel_ready = await notifications.create_channel(notification_channel(agent_config))

    # 5. Fallback job
    task_cfg = agent_config.fallback_task
    if scheduler is None:
        scheduler = FallbackScheduler(
            get_job_backend(settings.job_backend, settings.state_dir),
            notifications=notifications,
            notification_channel_id=agent_config.notification_channel.channel_id,
            log_file=settings.log_path,
        )
    scheduler.initialize(is_in_debug_mode=task_cfg.debug or settings.debug)
    try:
        result.task = await scheduler.register_periodic_task(
            task_cfg.task_id, task_cfg.unique_name, frequency=task_cfg.frequency
        )
    except JobRegistrationError as exc:
        errors.append(f"fallback: {exc}")
        logger.error("Periodic task registration failed: %s", exc)

    # 6. Foreground service
    fg_cfg = agent_config.foreground_service
    service = service or BackgroundService(notifications, settings)
    service.configure(
        ForegroundServiceConfig(
            on_start=on_start,
            auto_start=fg_cfg.auto_start,
            is_foreground_mode=fg_cfg.is_foreground_mode,
            notification_channel_id=agent_config.notification_channel.channel_id,
            initial_title=fg_cfg.initial_title,
            initial_body=fg_cfg.initial_body,
            notification_id=fg_cfg.notification_id,
        )
    )
    result.service_pid = service.start_service()

    logger.info(
        "Bootstrap complete: task=%s service_pid=%s problems=%d",
        result.task.unique_name if result.task else None,
        result.service_pid,
        len(errors),
    )
    return result
