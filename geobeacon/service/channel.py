"""Event channel between the foreground service and the outside world.

Inside the service process, events are delivered to subscribers through
``EventChannel``.  Other processes reach the channel over a Unix socket that
accepts newline-delimited JSON messages such as ``{"event": "stopService"}``.
SIGTERM and SIGINT are mapped onto the same stop event.

Delivery is one-shot with no acknowledgement: a sender that finds nobody
listening just gets ``False`` back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections import defaultdict
from pathlib import Path
from typing import Any

logger = logging.getLogger("geobeacon.service.channel")

STOP_EVENT = "stopService"

_STOP_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class Subscription:
    """Async iterator over the payloads of one event name."""

    def __init__(self, channel: EventChannel, event: str) -> None:
        self._channel = channel
        self.event = event
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.closed = False

    def _deliver(self, payload: dict[str, Any]) -> None:
        if not self.closed:
            self._queue.put_nowait(payload)

    async def next(self) -> dict[str, Any]:
        """Wait for the next delivery of this event."""
        return await self._queue.get()

    def close(self) -> None:
        self.closed = True
        self._channel._unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self.next()


class EventChannel:
    """In-process publish/subscribe keyed by event name."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def on(self, event: str) -> Subscription:
        subscription = Subscription(self, event)
        self._subscribers[event].append(subscription)
        return subscription

    def invoke(self, event: str, payload: dict[str, Any] | None = None) -> int:
        """Deliver ``event`` to every current subscriber.

        Returns:
            Number of subscribers that received it.
        """
        subscribers = list(self._subscribers.get(event, ()))
        for subscription in subscribers:
            subscription._deliver(dict(payload or {}))
        logger.debug("Event %r delivered to %d subscriber(s)", event, len(subscribers))
        return len(subscribers)

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.event, [])
        if subscription in subscribers:
            subscribers.remove(subscription)


# ---------------------------------------------------------------------------
# Unix socket transport
# ---------------------------------------------------------------------------


async def serve_channel(channel: EventChannel, socket_path: Path) -> asyncio.AbstractServer:
    """Listen on ``socket_path`` and forward received events into ``channel``.

    A stale socket file left by a killed process is replaced.
    """
    socket_path.parent.mkdir(parents=True, exist_ok=True)
    if socket_path.exists():
        socket_path.unlink()

    async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                try:
                    message = json.loads(line)
                except ValueError:
                    logger.warning("Ignoring malformed event message: %r", line[:200])
                    continue
                event = message.get("event") if isinstance(message, dict) else None
                if not isinstance(event, str) or not event:
                    logger.warning("Ignoring event message without a name: %r", message)
                    continue
                data = message.get("data") or {}
                if not isinstance(data, dict):
                    logger.warning("Ignoring event %r with non-object data: %r", event, data)
                    continue
                logger.info("Received event %r", event)
                channel.invoke(event, data)
        finally:
            writer.close()

    server = await asyncio.start_unix_server(_handle, path=str(socket_path))
    logger.debug("Event channel listening on %s", socket_path)
    return server


async def send_event(
    socket_path: Path,
    event: str,
    data: dict[str, Any] | None = None,
    timeout: float = 5.0,
) -> bool:
    """Send one event to the service listening on ``socket_path``.

    Returns:
        True if the message was written, False if no service is listening.
    """
    message = {"event": event}
    if data:
        message["data"] = data
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(socket_path)), timeout=timeout
        )
    except (FileNotFoundError, ConnectionRefusedError, asyncio.TimeoutError) as exc:
        logger.debug("No service listening on %s: %s", socket_path, exc)
        return False

    try:
        writer.write(json.dumps(message).encode() + b"\n")
        await writer.drain()
    finally:
        writer.close()
        await writer.wait_closed()
    return True


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------


def bind_stop_signals(channel: EventChannel, loop: asyncio.AbstractEventLoop | None = None) -> None:
    """Map SIGTERM and SIGINT to the stop event on ``channel``."""
    loop = loop or asyncio.get_running_loop()
    for sig in _STOP_SIGNALS:
        loop.add_signal_handler(sig, _on_signal, channel, sig)


def unbind_stop_signals(loop: asyncio.AbstractEventLoop | None = None) -> None:
    loop = loop or asyncio.get_running_loop()
    for sig in _STOP_SIGNALS:
        loop.remove_signal_handler(sig)


def _on_signal(channel: EventChannel, sig: signal.Signals) -> None:
    logger.info("Received %s, stopping", sig.name)
    channel.invoke(STOP_EVENT, {"signal": sig.name})
