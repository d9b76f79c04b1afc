"""Reconnecting asyncio client for the chat relay.

Usage:
    client = RelayClient("ws://localhost:5000/ws", display_name="bot")
    client.on("chat:message", lambda msg: print(msg["displayName"], msg["text"]))
    task = asyncio.create_task(client.run_forever())

    await client.wait_until_joined()
    ack = await client.call("message:send", {"text": "hello"})
    page = await client.call("history:fetch", {"scope": "global", "limit": 10})

``run_forever`` reconnects with exponential backoff and jitter and sends
``join`` again after every reconnect. The connection id changes on each
reconnect; ``connection_id`` always holds the current one.
"""
import asyncio
import itertools
import json
import logging
import random
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import websockets

logger = logging.getLogger(__name__)

# Backoff defaults: 0.5s doubling up to 5s, +/-50% jitter, unlimited attempts
RECONNECT_DELAY = 0.5
RECONNECT_DELAY_MAX = 5.0
RANDOMIZATION_FACTOR = 0.5


def backoff_delay(
    attempt: int,
    base: float = RECONNECT_DELAY,
    maximum: float = RECONNECT_DELAY_MAX,
    factor: float = RANDOMIZATION_FACTOR,
    rand: Optional[float] = None,
) -> float:
    """Delay in seconds before reconnect attempt number ``attempt`` (0-based).

    The nominal delay ``base * 2**attempt`` (capped at ``maximum``) is spread
    by up to ``factor`` in either direction; ``rand`` in [0, 1) picks the point
    in that range (0.5 gives the nominal delay).
    """
    if rand is None:
        rand = random.random()
    nominal = min(base * (2 ** attempt), maximum)
    delay = nominal * (1 + factor * (2 * rand - 1))
    return max(0.0, min(delay, maximum))


class RelayClient:
    """Event-style client: ``on()`` handlers, ``emit()`` and ack-awaiting ``call()``."""

    def __init__(
        self,
        url: str,
        display_name: str = "",
        *,
        origin: Optional[str] = None,
        max_attempts: Optional[int] = None,
        reconnect_delay: float = RECONNECT_DELAY,
        reconnect_delay_max: float = RECONNECT_DELAY_MAX,
        randomization_factor: float = RANDOMIZATION_FACTOR,
    ) -> None:
        self.url = url
        self.display_name = display_name
        self.origin = origin
        self.max_attempts = max_attempts
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self.randomization_factor = randomization_factor

        self.connection_id: Optional[str] = None
        self._ws = None
        self._closing = False
        # Created on first use so it binds to the loop that runs the client
        self._joined: Optional[asyncio.Event] = None
        self._handlers: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)
        self._pending: Dict[int, asyncio.Future] = {}
        self._ack_ids = itertools.count(1)

    def on(self, event: str, handler: Callable[[Any], Any]) -> None:
        """Register a handler (plain function or coroutine function) for an event."""
        self._handlers[event].append(handler)

    def _joined_event(self) -> asyncio.Event:
        if self._joined is None:
            self._joined = asyncio.Event()
        return self._joined

    async def wait_until_joined(self) -> str:
        await self._joined_event().wait()
        return self.connection_id

    async def emit(self, event: str, data: Any = None) -> None:
        await self._send({"event": event, "data": data})

    async def call(self, event: str, data: Any = None, timeout: float = 5.0) -> Any:
        """Send an event and wait for the server's ack reply.

        Raises:
            asyncio.TimeoutError: No ack within ``timeout``. The relay never
                acks an empty message, so this is also what a dropped send
                looks like.
            ConnectionError: The connection closed while waiting.
        """
        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = future
        try:
            await self._send({"event": event, "data": data, "ack": ack_id})
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(ack_id, None)

    async def run_forever(self) -> None:
        """Connect, join and dispatch events; reconnect until ``close()``."""
        attempt = 0
        while not self._closing:
            try:
                async with websockets.connect(self.url, origin=self.origin) as ws:
                    attempt = 0
                    self._ws = ws
                    await self.emit("join", {"displayName": self.display_name})
                    await self._receive_loop(ws)
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
                logger.warning(f"[Client] Connection to {self.url} lost: {exc}")
            finally:
                self._ws = None
                self._joined_event().clear()
                self._fail_pending(ConnectionError("connection closed"))

            if self._closing:
                break
            if self.max_attempts is not None and attempt >= self.max_attempts:
                logger.error(f"[Client] Giving up after {attempt} reconnect attempts")
                break

            delay = backoff_delay(
                attempt,
                self.reconnect_delay,
                self.reconnect_delay_max,
                self.randomization_factor,
            )
            attempt += 1
            logger.info(f"[Client] Reconnect attempt {attempt} in {delay:.2f}s")
            await asyncio.sleep(delay)

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()

    async def _send(self, frame: dict) -> None:
        if self._ws is None:
            raise ConnectionError("not connected")
        await self._ws.send(json.dumps(frame))

    async def _receive_loop(self, ws) -> None:
        async for raw in ws:
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("[Client] Non-JSON frame ignored")
                continue
            await self._dispatch(frame)

    async def _dispatch(self, frame: dict) -> None:
        event = frame.get("event")
        data = frame.get("data")

        if event == "ack":
            future = self._pending.get(frame.get("ack"))
            if future is not None and not future.done():
                future.set_result(data)
            return

        if event == "server:welcome":
            self.connection_id = data.get("id")
            self._joined_event().set()

        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(f"[Client] Handler for {event} failed")

    def _fail_pending(self, exc: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
