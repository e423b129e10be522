"""
One OKX v5 websocket feed: connect, optional login, subscribe, heartbeat, read loop.

Decoded data batches are handed to an ``on_batch`` coroutine in wire order.
Lifecycle events and faults go to a bounded fault queue as plain strings;
informational entries carry INFO_PREFIX so the display can keep them out of
the error line.
"""

import asyncio
import json
import logging
import os
from contextlib import suppress
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import websockets

from credentials import Credentials, build_login_request
from stream_decoder import ControlFrame, DataBatch, decode

logger = logging.getLogger(__name__)

OKX_PUBLIC_WS_URL = os.getenv("OKX_PUBLIC_WS_URL", "wss://ws.okx.com:8443/ws/v5/public")
OKX_PRIVATE_WS_URL = os.getenv("OKX_PRIVATE_WS_URL", "wss://ws.okx.com:8443/ws/v5/private")

HEARTBEAT_INTERVAL = 25
PING_FRAME = "ping"
PONG_FRAME = "pong"
INFO_PREFIX = "DEBUG:"

# Failures of the socket itself; everything else is handled per frame.
TRANSPORT_ERRORS = (OSError, websockets.WebSocketException)


class FeedState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"
    READING = "reading"
    FAULTED = "faulted"
    CLOSED = "closed"


class ConnectError(Exception):
    """Raised when a feed cannot be opened, logged in or subscribed."""


async def report(fault_queue: Optional[asyncio.Queue], message: str, info: bool = False) -> None:
    """Log a lifecycle event and forward it to the fault queue."""
    if info:
        logger.debug(message)
    else:
        logger.warning(message)
    if fault_queue is not None:
        await fault_queue.put(f"{INFO_PREFIX} {message}" if info else message)


class FeedConnection:
    """A single websocket feed with serialized writes."""

    def __init__(
        self,
        name: str,
        url: str,
        on_batch: Callable[[DataBatch], Awaitable[None]],
        fault_queue: Optional[asyncio.Queue] = None,
        credentials: Optional[Credentials] = None,
        subscriptions: Optional[Callable[[], List[Dict[str, str]]]] = None,
        connector=None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        sleep=None,
    ) -> None:
        """
        Args:
            name: Label used in log and fault messages
            url: Websocket endpoint
            on_batch: Coroutine receiving every decoded data batch
            fault_queue: Bounded queue for lifecycle and fault strings
            credentials: Login credentials; None or incomplete means no login
            subscriptions: Returns the subscription args to send when subscribing
            connector: Coroutine opening the socket (websockets.connect by default)
            heartbeat_interval: Seconds between "ping" frames
            sleep: Coroutine used to wait between heartbeats
        """
        self.name = name
        self.url = url
        self.on_batch = on_batch
        self.fault_queue = fault_queue
        self.credentials = credentials if credentials and credentials.is_complete else None
        self.subscriptions = subscriptions or (lambda: [])
        self.connector = connector or websockets.connect
        self.heartbeat_interval = heartbeat_interval
        self._sleep = sleep or asyncio.sleep

        self.ws = None
        self.state = FeedState.DISCONNECTED
        self.authenticated = False
        self._write_lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def requires_login(self) -> bool:
        return self.credentials is not None

    async def _report(self, message: str, info: bool = False) -> None:
        await report(self.fault_queue, message, info=info)

    async def _send(self, payload) -> None:
        frame = payload if isinstance(payload, str) else json.dumps(payload)
        async with self._write_lock:
            if self._closed or self.ws is None:
                raise ConnectionError(f"{self.name} feed is not open")
            await self.ws.send(frame)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Open the socket, then log in (deferring subscription) or subscribe."""
        self.state = FeedState.CONNECTING
        self._closed = False
        await self._report(f"Connecting to OKX {self.name} websocket {self.url}", info=True)

        try:
            self.ws = await self.connector(self.url, ping_interval=None)
        except (*TRANSPORT_ERRORS, asyncio.TimeoutError) as exc:
            self.state = FeedState.FAULTED
            raise ConnectError(f"failed to connect to OKX {self.name} websocket: {exc}") from exc

        self.state = FeedState.CONNECTED
        await self._report(f"{self.name} websocket connection established", info=True)

        try:
            if self.requires_login:
                # Subscription follows the login acknowledgement.
                await self.authenticate()
            else:
                await self.subscribe()
        except TRANSPORT_ERRORS as exc:
            stage = "authentication" if self.requires_login else "subscription"
            try:
                await self.close()
            except TRANSPORT_ERRORS as close_exc:
                logger.warning("[%s] close after failed %s also failed: %s", self.name, stage, close_exc)
            self.state = FeedState.FAULTED
            raise ConnectError(f"{stage} failed: {exc}") from exc

    async def authenticate(self) -> None:
        self.state = FeedState.AUTHENTICATING
        await self._send(build_login_request(self.credentials))
        await self._report(f"Login request sent on {self.name} feed", info=True)

    async def subscribe(self, channels: Optional[List[Dict[str, str]]] = None) -> None:
        if channels is None:
            channels = self.subscriptions()
        if not channels:
            return
        await self._send({"op": "subscribe", "args": list(channels)})
        if self.state in (FeedState.CONNECTED, FeedState.AUTHENTICATING):
            self.state = FeedState.SUBSCRIBED
        await self._report(f"Subscription request sent on {self.name} feed ({len(channels)} channels)", info=True)

    async def unsubscribe(self, channels: List[Dict[str, str]]) -> None:
        if not channels:
            return
        await self._send({"op": "unsubscribe", "args": list(channels)})
        await self._report(f"Unsubscribe request sent on {self.name} feed ({len(channels)} channels)", info=True)

    async def close(self) -> None:
        """Release the socket and heartbeat. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self.state != FeedState.FAULTED:
            self.state = FeedState.CLOSED

        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        errors = []
        ws, self.ws = self.ws, None
        if ws is not None:
            try:
                await ws.close()
            except TRANSPORT_ERRORS as exc:
                errors.append(exc)

        if errors:
            for extra in errors[1:]:
                logger.warning("[%s] additional close error: %s", self.name, extra)
            raise errors[0]

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------
    async def heartbeat(self) -> None:
        """Send a literal "ping" every interval until the feed closes."""
        while not self._closed:
            await self._sleep(self.heartbeat_interval)
            if self._closed:
                return
            try:
                await self._send(PING_FRAME)
            except TRANSPORT_ERRORS as exc:
                if self._closed:
                    return
                self.state = FeedState.FAULTED
                await self._report(f"Failed to send ping on {self.name} feed: {exc}")
                try:
                    await self.close()
                except TRANSPORT_ERRORS as close_exc:
                    logger.warning("[%s] close after ping failure failed: %s", self.name, close_exc)
                return

    async def start_listening(self) -> None:
        """Read frames until the transport fails or the feed is closed."""
        if self.ws is None:
            raise ConnectError(f"{self.name} feed is not connected")

        ws = self.ws
        self.state = FeedState.READING
        self._heartbeat_task = asyncio.create_task(self.heartbeat(), name=f"{self.name}-heartbeat")
        try:
            while True:
                try:
                    message = await ws.recv()
                except TRANSPORT_ERRORS as exc:
                    if self._closed:
                        # Closed locally, or a heartbeat failure already reported it.
                        if self.state != FeedState.FAULTED:
                            await self._report(f"{self.name} websocket closed", info=True)
                    else:
                        self.state = FeedState.FAULTED
                        await self._report(f"WebSocket read error on {self.name} feed: {exc}")
                    return
                await self.handle_message(message)
        finally:
            try:
                await self.close()
            except TRANSPORT_ERRORS as exc:
                logger.warning("[%s] close after read loop failed: %s", self.name, exc)

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------
    async def handle_message(self, message) -> None:
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        if message == PONG_FRAME:
            return

        try:
            payload = json.loads(message)
        except json.JSONDecodeError as exc:
            await self._report(f"Failed to parse {self.name} message: {exc}")
            return

        result = decode(payload)
        if isinstance(result, ControlFrame):
            await self.handle_control(result)
        elif isinstance(result, DataBatch):
            await self.on_batch(result)
        else:
            await self._report(f"Ignoring unrecognized {self.name} frame", info=True)

    async def handle_control(self, frame: ControlFrame) -> None:
        if frame.event == "login":
            if frame.ok:
                self.authenticated = True
                await self._report("Successfully authenticated with OKX", info=True)
                try:
                    await self.subscribe()
                except TRANSPORT_ERRORS as exc:
                    await self._report(f"Subscription failed after authentication: {exc}")
            else:
                message = "Authentication failed"
                if frame.detail:
                    message = f"Authentication failed: {frame.detail}"
                logger.error("[%s] %s (code=%s)", self.name, message, frame.code)
                await self._report(message)
        elif frame.event == "subscribe":
            await self._report(f"Successfully subscribed to OKX {self.name} channels", info=True)
        elif frame.event == "unsubscribe":
            await self._report(f"Unsubscribed from OKX {self.name} channels", info=True)
        elif frame.event == "error":
            detail = frame.detail or "unknown error"
            suffix = f" (code {frame.code})" if frame.code else ""
            logger.error("[%s] OKX error received: %s%s", self.name, detail, suffix)
            await self._report(f"OKX error: {detail}{suffix}")
        else:
            await self._report(f"Unhandled {self.name} event: {frame.event}", info=True)
