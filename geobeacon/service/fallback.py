"""Fallback scheduler: an OS-level periodic job that runs one cycle per invocation.

The OS owns the cadence and survives reboots; this module only registers the
job and provides the entry point each invocation runs:

    python -m geobeacon task run <task_id>

Backends:
    termux  — Android JobScheduler through ``termux-job-scheduler``
    crontab — the user's crontab (desktop/Linux)
"""

from __future__ import annotations

import logging
import shlex
import shutil
import sys
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable

from geobeacon.exceptions import JobRegistrationError, ServiceStateError
from geobeacon.platform.notifications import ForegroundNotification, NotificationSurface
from geobeacon.platform.termux import run_command
from geobeacon.runtime import build_runtime

logger = logging.getLogger("geobeacon.service.fallback")

# Android JobScheduler will not run periodic jobs more often than this
MIN_FREQUENCY = timedelta(minutes=15)

DEBUG_NOTIFICATION_ID = 889

Dispatcher = Callable[[str], Awaitable[bool]]


class TaskState(str, Enum):
    UNREGISTERED = "unregistered"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class PeriodicTask:
    """A periodic job registration.

    Attributes:
        task_id:     Task name passed to each invocation.
        unique_name: Registration key; registering it again replaces the job.
        frequency:   Cadence requested from the OS.
        state:       Registration state.
    """

    task_id: str = "location_task"
    unique_name: str = "updateLocationTask"
    frequency: timedelta = MIN_FREQUENCY
    state: TaskState = TaskState.UNREGISTERED


def task_command(task_id: str, log_file: Path | None = None) -> list[str]:
    """argv each OS invocation runs."""
    argv = [sys.executable, "-m", "geobeacon"]
    if log_file is not None:
        argv += ["--log-file", str(log_file)]
    return argv + ["task", "run", task_id]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class JobBackend(ABC):
    """OS facility that runs a command periodically."""

    BACKEND_ID: str = "unknown"

    @abstractmethod
    async def register(self, task: PeriodicTask, command: list[str]) -> None:
        """Register or replace the job for ``task.unique_name``.

        Raises:
            JobRegistrationError: If the OS refused the registration.
        """

    @abstractmethod
    async def cancel(self, unique_name: str) -> bool:
        """Remove the job; returns False if none was registered."""


class TermuxJobBackend(JobBackend):
    """Android JobScheduler via Termux:API.

    ``termux-job-scheduler`` runs a script, so each job gets a generated shell
    script under ``script_dir``.  The job id is derived from the unique name,
    so registering the same name again replaces the existing job.
    """

    BACKEND_ID = "termux"

    def __init__(self, script_dir: Path) -> None:
        self._script_dir = script_dir

    @staticmethod
    def job_id(unique_name: str) -> int:
        return zlib.crc32(unique_name.encode("utf-8")) & 0x7FFFFFFF

    def script_path(self, unique_name: str) -> Path:
        return self._script_dir / f"{unique_name}.sh"

    def _write_script(self, unique_name: str, command: list[str]) -> Path:
        path = self.script_path(unique_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        shell = shutil.which("sh") or "/bin/sh"
        path.write_text(f"#!{shell}\nexec {shlex.join(command)}\n", encoding="utf-8")
        path.chmod(0o700)
        return path

    async def register(self, task: PeriodicTask, command: list[str]) -> None:
        script = self._write_script(task.unique_name, command)
        period_ms = int(task.frequency.total_seconds() * 1000)
        result = await run_command(
            [
                "termux-job-scheduler",
                "--job-id", str(self.job_id(task.unique_name)),
                "--period-ms", str(period_ms),
                "--persisted", "true",
                "--script", str(script),
            ],
            timeout=30,
        )
        if not result.ok:
            raise JobRegistrationError(
                f"termux-job-scheduler refused {task.unique_name!r}: "
                f"{result.stderr or result.stdout.strip() or result.returncode}"
            )

    async def cancel(self, unique_name: str) -> bool:
        result = await run_command(
            ["termux-job-scheduler", "--cancel", "--job-id", str(self.job_id(unique_name))],
            timeout=30,
        )
        self.script_path(unique_name).unlink(missing_ok=True)
        if result.returncode is None:
            raise JobRegistrationError(f"termux-job-scheduler unavailable: {result.stderr}")
        return result.ok


class CrontabJobBackend(JobBackend):
    """User crontab entries tagged ``# geobeacon:<unique_name>``."""

    BACKEND_ID = "crontab"

    TAG_PREFIX = "# geobeacon:"

    def __init__(self, crontab_command: str = "crontab") -> None:
        self._crontab = crontab_command

    @classmethod
    def tag(cls, unique_name: str) -> str:
        return f"{cls.TAG_PREFIX}{unique_name}"

    @staticmethod
    def schedule_expression(frequency: timedelta) -> str:
        """Closest cron schedule for ``frequency`` (minute resolution)."""
        minutes = max(1, int(frequency.total_seconds() // 60))
        if minutes < 60:
            return f"*/{minutes} * * * *"
        hours = minutes // 60
        if hours < 24:
            return f"0 */{hours} * * *"
        return "0 0 * * *"

    async def _read(self) -> str:
        result = await run_command([self._crontab, "-l"], timeout=15)
        if result.returncode is None:
            raise JobRegistrationError(f"{self._crontab} unavailable: {result.stderr}")
        # `crontab -l` exits non-zero when the user has no crontab yet
        return result.stdout if result.ok else ""

    async def _write(self, content: str) -> None:
        result = await run_command([self._crontab, "-"], input_text=content, timeout=15)
        if not result.ok:
            raise JobRegistrationError(f"Could not install crontab: {result.stderr or result.returncode}")

    def _without(self, content: str, unique_name: str) -> list[str]:
        tag = self.tag(unique_name)
        return [line for line in content.splitlines() if not line.rstrip().endswith(tag)]

    async def register(self, task: PeriodicTask, command: list[str]) -> None:
        lines = self._without(await self._read(), task.unique_name)
        lines.append(
            f"{self.schedule_expression(task.frequency)} {shlex.join(command)} "
            f">/dev/null 2>&1 {self.tag(task.unique_name)}"
        )
        await self._write("\n".join(lines) + "\n")

    async def cancel(self, unique_name: str) -> bool:
        content = await self._read()
        lines = self._without(content, unique_name)
        if len(lines) == len(content.splitlines()):
            return False
        await self._write("\n".join(lines) + "\n" if lines else "")
        return True


# Registry: backend_id → backend class
JOB_BACKENDS: dict[str, type] = {
    "termux": TermuxJobBackend,
    "crontab": CrontabJobBackend,
}


def get_job_backend(backend_id: str, state_dir: Path) -> JobBackend:
    """Instantiate the job backend registered under ``backend_id``.

    Raises:
        KeyError: If no backend is registered for the slug.
    """
    if backend_id == "termux":
        return TermuxJobBackend(state_dir / "jobs")
    try:
        return JOB_BACKENDS[backend_id]()
    except KeyError:
        raise KeyError(
            f"No job backend registered for '{backend_id}'. Available: {list(JOB_BACKENDS)}"
        ) from None


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


async def dispatch_task(task_name: str) -> bool:
    """Default dispatcher: bootstrap from scratch and run one cycle."""
    async with build_runtime() as runtime:
        result = await runtime.run_cycle(trigger=f"fallback:{task_name}")
        # Only errors are reported to the OS scheduler as failures
        return not result.failed


class FallbackScheduler:
    """Registers the periodic job and runs it when the OS calls back."""

    def __init__(
        self,
        backend: JobBackend,
        notifications: NotificationSurface | None = None,
        notification_channel_id: str = "location_service",
        log_file: Path | None = None,
    ) -> None:
        self._backend = backend
        self._notifications = notifications
        self._channel_id = notification_channel_id
        self._log_file = log_file
        self._dispatcher: Dispatcher | None = None
        self._debug = False
        self.tasks: dict[str, PeriodicTask] = {}

    @property
    def initialized(self) -> bool:
        return self._dispatcher is not None

    def initialize(self, dispatcher: Dispatcher = dispatch_task, is_in_debug_mode: bool = False) -> None:
        self._dispatcher = dispatcher
        self._debug = is_in_debug_mode
        logger.debug("Fallback scheduler initialised (backend=%s, debug=%s)", self._backend.BACKEND_ID, is_in_debug_mode)

    async def register_periodic_task(
        self,
        task_id: str,
        unique_name: str,
        frequency: timedelta = MIN_FREQUENCY,
    ) -> PeriodicTask:
        """Register ``task_id`` to run every ``frequency`` under ``unique_name``.

        Registering an existing unique name replaces its schedule.  A frequency
        below 15 minutes is raised to 15 minutes.

        Raises:
            ServiceStateError: If ``initialize()`` has not been called.
            JobRegistrationError: If the OS refused the job.
        """
        if not self.initialized:
            raise ServiceStateError("initialize() must be called before registering tasks")
        if frequency < MIN_FREQUENCY:
            logger.warning(
                "Requested frequency %s for %r is below the OS minimum; using %s",
                frequency,
                unique_name,
                MIN_FREQUENCY,
            )
            frequency = MIN_FREQUENCY

        task = PeriodicTask(task_id=task_id, unique_name=unique_name, frequency=frequency)
        await self._backend.register(task, task_command(task_id, self._log_file))
        task.state = TaskState.RUNNING
        self.tasks[unique_name] = task
        logger.info("Periodic task %r registered as %r every %s", task_id, unique_name, frequency)
        return task

    async def cancel(self, unique_name: str) -> bool:
        cancelled = await self._backend.cancel(unique_name)
        task = self.tasks.get(unique_name)
        if task is not None:
            task.state = TaskState.STOPPED
        logger.info("Periodic task %r %s", unique_name, "cancelled" if cancelled else "was not registered")
        return cancelled

    async def execute_task(self, task_name: str) -> bool:
        """Run one invocation through the dispatcher.

        Returns:
            True on success; False tells the OS scheduler the run failed.
        """
        if not self.initialized:
            raise ServiceStateError("initialize() must be called before executing tasks")

        level = logging.INFO if self._debug else logging.DEBUG
        logger.log(level, "Executing task %r", task_name)
        try:
            ok = await self._dispatcher(task_name)
        except Exception:
            logger.exception("Task %r raised", task_name)
            ok = False
        logger.log(level, "Task %r finished: %s", task_name, "success" if ok else "failure")

        if self._debug and self._notifications is not None:
            await self._notify(task_name, ok)
        return ok

    async def _notify(self, task_name: str, ok: bool) -> None:
        try:
            await self._notifications.show(
                ForegroundNotification(
                    notification_id=DEBUG_NOTIFICATION_ID,
                    channel_id=self._channel_id,
                    title=f"Task {task_name}",
                    body="Succeeded" if ok else "Failed",
                )
            )
        except Exception as exc:
            logger.warning("Debug notification failed: %s", exc)
