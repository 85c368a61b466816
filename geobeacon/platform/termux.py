"""Asynchronous runner for Termux:API shell commands.

Every OS collaborator on Android (location, notifications, job scheduler,
wake lock, permission probes) is reached through a ``termux-*`` command.
Commands run as asyncio subprocesses so a slow command only suspends the
awaiting coroutine.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("geobeacon.platform.termux")


@dataclass
class CommandResult:
    """Outcome of one command invocation.

    Attributes:
        args:       The argv that was executed.
        returncode: Process exit status (None when the command never ran).
        stdout:     Decoded standard output.
        stderr:     Decoded standard error, or the reason the command did not run.
    """

    args: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def json(self) -> Any:
        """Parse stdout as JSON.

        Raises:
            ValueError: If stdout is empty or not valid JSON.
        """
        if not self.stdout.strip():
            raise ValueError(f"{self.args[0]} produced no output")
        return json.loads(self.stdout)


async def run_command(
    args: list[str],
    input_text: str | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run ``args`` and capture its output.

    A missing executable or an exceeded timeout is reported in the result
    rather than raised, mirroring a non-zero exit.

    Args:
        args:       Command and arguments.
        input_text: Optional text written to stdin.
        timeout:    Seconds to wait before killing the process (None = no limit).

    Returns:
        CommandResult.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as exc:
        logger.debug("Command %s could not be started: %s", args[0], exc)
        return CommandResult(args=list(args), returncode=None, stderr=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input_text.encode() if input_text is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Command %s timed out after %.1fs", args[0], timeout)
        return CommandResult(args=list(args), returncode=None, stderr="timeout")

    result = CommandResult(
        args=list(args),
        returncode=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace").strip(),
    )
    if not result.ok:
        logger.debug("Command %s exited %s: %s", args[0], result.returncode, result.stderr)
    return result


async def android_sdk_level() -> int | None:
    """Return the Android API level via ``getprop``, or None off-device."""
    result = await run_command(["getprop", "ro.build.version.sdk"], timeout=5)
    if not result.ok:
        return None
    try:
        return int(result.stdout.strip())
    except ValueError:
        return None
