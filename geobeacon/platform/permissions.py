"""Permission Gate: request the OS capabilities background telemetry needs.

Capabilities are requested one after another and a denial never stops the
sequence.  The report goes back to the caller, who decides whether to
proceed; the pipeline itself only fails later, as LocationUnavailable or
WriteFailed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from geobeacon.exceptions import PermissionDenied
from geobeacon.platform.termux import android_sdk_level, run_command

logger = logging.getLogger("geobeacon.platform.permissions")

# Android 13 (API 33) introduced the POST_NOTIFICATIONS runtime permission
NOTIFICATION_PERMISSION_MIN_SDK = 33


class Capability(str, Enum):
    LOCATION = "location"
    LOCATION_ALWAYS = "location_always"
    IGNORE_BATTERY_OPTIMIZATIONS = "ignore_battery_optimizations"
    NOTIFICATION = "notification"

    def __str__(self) -> str:
        return self.value


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    NOT_REQUIRED = "not_required"  # OS version does not gate this capability

    @property
    def satisfied(self) -> bool:
        return self in (PermissionStatus.GRANTED, PermissionStatus.NOT_REQUIRED)


#: Request order used by the gate.
REQUIRED_CAPABILITIES: tuple[Capability, ...] = (
    Capability.LOCATION,
    Capability.LOCATION_ALWAYS,
    Capability.IGNORE_BATTERY_OPTIMIZATIONS,
    Capability.NOTIFICATION,
)


@dataclass
class PermissionReport:
    """Outcome of one ``ensure_capabilities()`` pass.

    Attributes:
        statuses: Capability → final status, in request order.
        prompted: Capabilities that needed a request (were not already granted).
    """

    statuses: dict[Capability, PermissionStatus] = field(default_factory=dict)
    prompted: list[Capability] = field(default_factory=list)

    @property
    def granted(self) -> bool:
        return all(status.satisfied for status in self.statuses.values())

    @property
    def denied(self) -> list[Capability]:
        return [cap for cap, status in self.statuses.items() if not status.satisfied]

    def raise_for_denied(self) -> None:
        """Raise PermissionDenied if any capability is unsatisfied."""
        if not self.granted:
            raise PermissionDenied(capabilities=self.denied)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class PermissionBackend(ABC):
    """Platform-specific capability checks and requests."""

    BACKEND_ID: str = "unknown"

    @abstractmethod
    async def status(self, capability: Capability) -> PermissionStatus:
        """Return the current status without prompting the user."""

    @abstractmethod
    async def request(self, capability: Capability) -> PermissionStatus:
        """Request the capability; may surface an OS permission dialog."""


class StaticPermissionBackend(PermissionBackend):
    """Fixed grants, for desktop development and tests."""

    BACKEND_ID = "static"

    def __init__(self, granted: set[Capability] | None = None) -> None:
        self._granted = set(REQUIRED_CAPABILITIES if granted is None else granted)
        self.requests: list[Capability] = []

    async def status(self, capability: Capability) -> PermissionStatus:
        return PermissionStatus.GRANTED if capability in self._granted else PermissionStatus.DENIED

    async def request(self, capability: Capability) -> PermissionStatus:
        self.requests.append(capability)
        return await self.status(capability)


class TermuxPermissionBackend(PermissionBackend):
    """Capability probes through Termux:API.

    Android grants Termux:API permissions on first use of the command that
    needs them, so a request runs that command and a zero exit means granted.
    ``status()`` only reports grants already observed in this process.
    """

    BACKEND_ID = "termux"

    _PROBES: dict[Capability, list[str]] = {
        Capability.LOCATION: ["termux-location", "-p", "network", "-r", "last"],
        # Background location rides on the same grant for Termux:API
        Capability.LOCATION_ALWAYS: ["termux-location", "-p", "passive", "-r", "last"],
        # Holding a wake lock prompts for the battery optimisation exemption
        Capability.IGNORE_BATTERY_OPTIMIZATIONS: ["termux-wake-lock"],
        Capability.NOTIFICATION: ["termux-notification-list"],
    }

    def __init__(self, probe_timeout: float = 60.0) -> None:
        self._probe_timeout = probe_timeout
        self._granted: set[Capability] = set()

    async def status(self, capability: Capability) -> PermissionStatus:
        if capability is Capability.NOTIFICATION and not await self._notifications_gated():
            return PermissionStatus.NOT_REQUIRED
        return PermissionStatus.GRANTED if capability in self._granted else PermissionStatus.DENIED

    async def request(self, capability: Capability) -> PermissionStatus:
        if capability is Capability.NOTIFICATION and not await self._notifications_gated():
            return PermissionStatus.NOT_REQUIRED

        result = await run_command(self._PROBES[capability], timeout=self._probe_timeout)
        if result.ok and "API_ERROR" not in result.stdout:
            self._granted.add(capability)
            return PermissionStatus.GRANTED
        logger.debug("Probe for %s failed: %s", capability, result.stderr or result.stdout.strip())
        return PermissionStatus.DENIED

    async def _notifications_gated(self) -> bool:
        sdk = await android_sdk_level()
        return sdk is not None and sdk >= NOTIFICATION_PERMISSION_MIN_SDK


# Registry: backend_id → backend class
PERMISSION_BACKENDS: dict[str, type] = {
    "termux": TermuxPermissionBackend,
    "static": StaticPermissionBackend,
}


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class PermissionGate:
    """Request every required capability and report the outcome."""

    def __init__(
        self,
        backend: PermissionBackend,
        capabilities: tuple[Capability, ...] = REQUIRED_CAPABILITIES,
    ) -> None:
        self._backend = backend
        self._capabilities = capabilities

    async def ensure_capabilities(self) -> PermissionReport:
        """Request each capability in turn.

        Already-granted capabilities short-circuit without prompting.  A
        failing request is recorded as DENIED and the next one still runs.

        Returns:
            PermissionReport.
        """
        report = PermissionReport()
        for capability in self._capabilities:
            try:
                status = await self._backend.status(capability)
                if not status.satisfied:
                    report.prompted.append(capability)
                    status = await self._backend.request(capability)
            except Exception as exc:
                logger.warning("Requesting %s failed: %s", capability, exc)
                status = PermissionStatus.DENIED
            report.statuses[capability] = status
            logger.debug("Capability %s: %s", capability, status.value)

        if report.granted:
            logger.info("All %d capabilities granted", len(report.statuses))
        else:
            logger.warning(
                "Capabilities not granted: %s",
                ", ".join(str(c) for c in report.denied),
            )
        return report
