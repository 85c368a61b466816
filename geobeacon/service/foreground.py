"""Foreground service: a long-lived process that runs telemetry on a fixed timer.

Lifecycle (``ServiceState``)::

    CREATED ─configure()─▶ CONFIGURED ─start_service()─▶ STARTED       (launcher)
    STARTED ─start_timer()─▶ RUNNING ─stopService─▶ STOPPING ─▶ STOPPED  (service)

``BackgroundService`` is the launcher-side handle.  ``start_service()`` spawns
``python -m geobeacon service run`` as a detached process; inside it
``run_service()`` builds a ``ServiceInstance`` and hands it to the configured
``on_start`` entry point, which bootstraps from scratch and starts the timer.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from geobeacon.config import Settings, get_settings
from geobeacon.exceptions import IdentityUnavailable, ServiceConfigurationError, ServiceStateError
from geobeacon.platform.notifications import ForegroundNotification, NotificationSurface
from geobeacon.runtime import build_runtime
from geobeacon.service.channel import (
    STOP_EVENT,
    EventChannel,
    Subscription,
    bind_stop_signals,
    send_event,
    serve_channel,
    unbind_stop_signals,
)

logger = logging.getLogger("geobeacon.service.foreground")


class ServiceState(str, Enum):
    CREATED = "created"
    CONFIGURED = "configured"
    STARTED = "started"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


_TRANSITIONS: dict[ServiceState, set[ServiceState]] = {
    ServiceState.CREATED: {ServiceState.CONFIGURED},
    ServiceState.CONFIGURED: {ServiceState.CONFIGURED, ServiceState.STARTED},
    ServiceState.STARTED: {ServiceState.RUNNING, ServiceState.STOPPING},
    ServiceState.RUNNING: {ServiceState.STOPPING},
    ServiceState.STOPPING: {ServiceState.STOPPED},
    ServiceState.STOPPED: set(),
}


def _check_transition(current: ServiceState, target: ServiceState) -> None:
    if target not in _TRANSITIONS[current]:
        raise ServiceStateError(f"Illegal service transition {current.value} → {target.value}")


EntryPoint = Callable[["ServiceInstance"], Awaitable[None]]
TickCallback = Callable[[int], Awaitable[object]]


@dataclass
class ForegroundServiceConfig:
    """How the foreground service is started and presented.

    Attributes:
        on_start:                Module-level coroutine function run inside the
                                 service process; must be importable by name.
        auto_start:              Start the service as soon as it is configured.
        is_foreground_mode:      Show the ongoing notification.
        notification_channel_id: Channel the notification is posted into.
        initial_title:           Notification title.
        initial_body:            Notification body.
        notification_id:         Stable notification id.
    """

    on_start: EntryPoint
    auto_start: bool = True
    is_foreground_mode: bool = True
    notification_channel_id: str = "location_service"
    initial_title: str = "Location sharing active"
    initial_body: str = "Sharing location in the background"
    notification_id: int = 888

    def validate(self) -> list[str]:
        errors = []
        if not callable(self.on_start):
            errors.append("on_start must be callable")
        elif "<locals>" in getattr(self.on_start, "__qualname__", "<locals>"):
            errors.append("on_start must be a module-level function")
        if not self.notification_channel_id:
            errors.append("notification_channel_id is required")
        if self.notification_id <= 0:
            errors.append(f"notification_id must be positive, got {self.notification_id}")
        return errors

    @property
    def entry_point(self) -> str:
        """``module:qualname`` of ``on_start``, resolvable in a fresh process."""
        return f"{self.on_start.__module__}:{self.on_start.__qualname__}"

    def to_args(self) -> list[str]:
        """CLI options for ``geobeacon service run`` that reproduce this config."""
        args = [
            "--entry", self.entry_point,
            "--channel", self.notification_channel_id,
            "--title", self.initial_title,
            "--body", self.initial_body,
            "--notification-id", str(self.notification_id),
        ]
        if not self.is_foreground_mode:
            args.append("--background")
        return args


def resolve_entry_point(path: str) -> EntryPoint:
    """Import ``module:qualname`` and return the callable."""
    module_name, _, qualname = path.partition(":")
    if not module_name or not qualname:
        raise ServiceConfigurationError(f"Entry point must look like 'module:function', got {path!r}")
    try:
        target = importlib.import_module(module_name)
        for part in qualname.split("."):
            target = getattr(target, part)
    except (ImportError, AttributeError) as exc:
        raise ServiceConfigurationError(f"Cannot resolve entry point {path!r}: {exc}", exc) from exc
    if not callable(target):
        raise ServiceConfigurationError(f"Entry point {path!r} is not callable")
    return target


# ---------------------------------------------------------------------------
# Service side
# ---------------------------------------------------------------------------


class ServiceInstance:
    """The running service as seen by its ``on_start`` entry point."""

    def __init__(
        self,
        config: ForegroundServiceConfig,
        notifications: NotificationSurface,
        channel: EventChannel | None = None,
        stop_grace_seconds: float = 5.0,
    ) -> None:
        self.config = config
        self.notifications = notifications
        self.channel = channel or EventChannel()
        self.state = ServiceState.STARTED
        self.tick_count = 0
        self._stop_grace = stop_grace_seconds
        self._stopping = asyncio.Event()
        self._stopped = asyncio.Event()
        self._timer: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()

    def _transition(self, target: ServiceState) -> None:
        _check_transition(self.state, target)
        logger.debug("Service %s → %s", self.state.value, target.value)
        self.state = target

    # ── Channel ──

    def on(self, event: str) -> Subscription:
        return self.channel.on(event)

    def invoke(self, event: str, payload: dict | None = None) -> int:
        return self.channel.invoke(event, payload)

    @property
    def stopping(self) -> bool:
        """True once a stop has been requested and shutdown has begun."""
        return self._stopping.is_set()

    def stop_self(self) -> None:
        """Ask the service to stop; shutdown happens in ``run()``."""
        self.invoke(STOP_EVENT)

    # ── Notification ──

    async def set_as_foreground_service(self, action_label: str = "Stop") -> None:
        """Post the ongoing notification with a Stop button."""
        await self.set_notification(self.config.initial_title, self.config.initial_body, action_label)

    async def set_notification(self, title: str, body: str, action_label: str = "Stop") -> None:
        if self.stopping:
            logger.debug("Service is stopping; notification not posted")
            return
        await self.notifications.show(
            ForegroundNotification(
                notification_id=self.config.notification_id,
                channel_id=self.config.notification_channel_id,
                title=title,
                body=body,
                action_label=action_label,
                action_command=[sys.executable, "-m", "geobeacon", "service", "stop"],
            )
        )

    # ── Timer ──

    def start_timer(self, interval: float, callback: TickCallback) -> None:
        """Run ``callback`` every ``interval`` seconds until the service stops.

        Each tick runs as its own task, so a slow tick never delays the next
        one and a failing tick never stops the timer.  Does nothing once the
        service is stopping.
        """
        if interval <= 0:
            raise ServiceConfigurationError(f"Timer interval must be > 0, got {interval}")
        if self.stopping:
            logger.info("Service is stopping; timer not started")
            return
        if self._timer is not None:
            raise ServiceStateError("Timer already started")
        self._transition(ServiceState.RUNNING)
        self._timer = asyncio.create_task(self._timer_loop(interval, callback), name="foreground-timer")
        logger.info("Foreground timer started (every %.1fs)", interval)

    async def _timer_loop(self, interval: float, callback: TickCallback) -> None:
        loop = asyncio.get_running_loop()
        next_at = loop.time() + interval
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, next_at - loop.time()))
                break
            except asyncio.TimeoutError:
                pass
            next_at += interval
            self.tick_count += 1
            task = asyncio.create_task(self._run_tick(self.tick_count, callback), name=f"tick-{self.tick_count}")
            self._ticks.add(task)
            task.add_done_callback(self._ticks.discard)

    async def _run_tick(self, tick: int, callback: TickCallback) -> None:
        try:
            await callback(tick)
        except asyncio.CancelledError:
            logger.debug("Tick %d cancelled", tick)
            raise
        except Exception:
            logger.exception("Tick %d failed", tick)

    # ── Lifecycle ──

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def run(self, entry: EntryPoint) -> None:
        """Run ``entry`` and keep the service alive until ``stopService``."""
        stop_sub = self.on(STOP_EVENT)
        entry_task = asyncio.create_task(entry(self), name="on_start")
        stop_task = asyncio.create_task(stop_sub.next(), name="stop-listener")
        try:
            done, _ = await asyncio.wait({entry_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            entry_returned = (
                entry_task in done and not entry_task.cancelled() and entry_task.exception() is None
            )
            if entry_returned and stop_task not in done:
                await stop_task
        finally:
            stop_task.cancel()
            stop_sub.close()
            await self._shutdown()

        if not entry_task.done():
            _, pending = await asyncio.wait({entry_task}, timeout=self._stop_grace)
            for task in pending:
                logger.warning("on_start still running after %.1fs; cancelling", self._stop_grace)
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if entry_task.done() and not entry_task.cancelled():
            error = entry_task.exception()
            if error is not None:
                logger.error("on_start failed: %s", error, exc_info=error)

    async def _shutdown(self) -> None:
        if self.state in (ServiceState.STOPPING, ServiceState.STOPPED):
            return
        self._transition(ServiceState.STOPPING)
        self._stopping.set()

        if self._timer is not None:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)

        # Ticks already dispatched get a grace period, then are cancelled
        in_flight = set(self._ticks)
        if in_flight:
            logger.info("Waiting up to %.1fs for %d in-flight tick(s)", self._stop_grace, len(in_flight))
            _, pending = await asyncio.wait(in_flight, timeout=self._stop_grace)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        if self.config.is_foreground_mode:
            try:
                await self.notifications.cancel(self.config.notification_id)
            except Exception as exc:
                logger.warning("Could not remove notification: %s", exc)

        self._transition(ServiceState.STOPPED)
        self._stopped.set()
        logger.info("Foreground service stopped after %d tick(s)", self.tick_count)


async def on_start(instance: ServiceInstance) -> None:
    """Default entry point: bootstrap from scratch and publish on a timer."""
    async with build_runtime() as runtime:
        try:
            identity = await runtime.identity_provider.get_identity()
            logger.info("Service signed in as %s", identity)
        except IdentityUnavailable as exc:
            logger.warning("Sign-in failed, ticks will retry: %s", exc)

        if instance.stopping:
            logger.info("Stop requested during startup; not starting the timer")
            return

        if instance.config.is_foreground_mode:
            await instance.set_as_foreground_service(
                runtime.agent_config.foreground_service.stop_action_label
            )

        async def tick(n: int) -> None:
            await runtime.run_cycle(trigger="foreground")

        instance.start_timer(runtime.agent_config.foreground_service.interval_seconds, tick)
        await instance.wait_stopped()


async def run_service(
    config: ForegroundServiceConfig,
    notifications: NotificationSurface,
    settings: Settings | None = None,
) -> ServiceInstance:
    """Service process main: own the pid file and socket, run until stopped."""
    settings = settings or get_settings()
    instance = ServiceInstance(config, notifications, stop_grace_seconds=settings.stop_grace_seconds)

    existing = read_pid(settings.pid_path)
    if existing is not None and existing != os.getpid():
        raise ServiceStateError(f"Foreground service already running (pid {existing})")
    write_pid(settings.pid_path, os.getpid())

    server = await serve_channel(instance.channel, settings.socket_path)
    bind_stop_signals(instance.channel)
    logger.info("Foreground service started (pid %d)", os.getpid())
    try:
        await instance.run(config.on_start)
    finally:
        unbind_stop_signals()
        server.close()
        await server.wait_closed()
        settings.socket_path.unlink(missing_ok=True)
        remove_pid(settings.pid_path)
    return instance


# ---------------------------------------------------------------------------
# Pid file
# ---------------------------------------------------------------------------


def write_pid(path: Path, pid: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(str(pid))


def remove_pid(path: Path) -> None:
    path.unlink(missing_ok=True)


def read_pid(path: Path) -> int | None:
    """Return the pid recorded in ``path`` if that process is alive.

    A stale pid file is removed.
    """
    if not path.exists():
        return None
    try:
        pid = int(path.read_text().strip())
        os.kill(pid, 0)
    except (ValueError, ProcessLookupError):
        remove_pid(path)
        return None
    except PermissionError:
        # Alive but owned by another user
        pass
    return pid


# ---------------------------------------------------------------------------
# Launcher side
# ---------------------------------------------------------------------------


class BackgroundService:
    """Launcher-side handle that configures and starts the service process."""

    def __init__(self, notifications: NotificationSurface, settings: Settings | None = None) -> None:
        self._notifications = notifications
        self._settings = settings or get_settings()
        self.config: ForegroundServiceConfig | None = None
        self.state = ServiceState.CREATED
        self.pid: int | None = None

    def _transition(self, target: ServiceState) -> None:
        _check_transition(self.state, target)
        self.state = target

    def configure(self, config: ForegroundServiceConfig) -> None:
        """Validate ``config``; starts the service right away when ``auto_start``.

        Raises:
            ServiceConfigurationError: Invalid config or the notification
                channel has not been created.
        """
        errors = config.validate()
        if config.is_foreground_mode and not self._notifications.has_channel(config.notification_channel_id):
            errors.append(
                f"notification channel {config.notification_channel_id!r} must be created before the service starts"
            )
        if errors:
            raise ServiceConfigurationError("Invalid foreground service config: " + "; ".join(errors))

        self.config = config
        self._transition(ServiceState.CONFIGURED)
        logger.info("Foreground service configured (entry %s)", config.entry_point)
        if config.auto_start:
            self.start_service()

    def command(self) -> list[str]:
        if self.config is None:
            raise ServiceStateError("configure() must be called before the service can start")
        return [
            sys.executable, "-m", "geobeacon",
            "--log-file", str(self._settings.log_path),
            "service", "run",
            *self.config.to_args(),
        ]

    def start_service(self) -> int:
        """Spawn the service process, or return the pid of the one already running."""
        argv = self.command()
        pid = read_pid(self._settings.pid_path)
        if pid is not None:
            logger.info("Foreground service already running (pid %d)", pid)
        else:
            self._settings.state_dir.mkdir(parents=True, exist_ok=True)
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
            )
            pid = proc.pid
            write_pid(self._settings.pid_path, pid)
            logger.info("Foreground service launched (pid %d)", pid)

        self.pid = pid
        if self.state is not ServiceState.STARTED:
            self._transition(ServiceState.STARTED)
        return pid

    def is_running(self) -> bool:
        return read_pid(self._settings.pid_path) is not None

    async def invoke(self, event: str, data: dict | None = None) -> bool:
        """Send ``event`` to the running service."""
        return await send_event(self._settings.socket_path, event, data)

    async def stop_service(self) -> bool:
        """Deliver ``stopService``; falls back to SIGTERM when the socket is gone."""
        if await self.invoke(STOP_EVENT):
            return True
        pid = read_pid(self._settings.pid_path)
        if pid is None:
            return False
        logger.info("Event socket unavailable, sending SIGTERM to pid %d", pid)
        os.kill(pid, signal.SIGTERM)
        return True
