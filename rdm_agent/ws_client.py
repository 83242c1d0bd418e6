"""WebSocket connection manager for the control server.

Owns the transport and the connection state machine:

  DISCONNECTED → CONNECTING → CONNECTED → DISCONNECTED (close / error)
                      ↑                         │
                      └──── RECONNECTING ←──────┘  (fixed 5s timer)

All state lives on one asyncio loop, so every check-and-transition below
runs without a suspension point in between. Inbound frames are dispatched
(auth echo, command execution); everything else is surfaced to the host as
an event on an ordered queue.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Optional, Union

import websockets

from .executor import CommandExecutor
from .protocol import (
    Auth,
    Command,
    CommandResultMessage,
    DeviceInfo,
    Envelope,
    Heartbeat,
    Log,
    ProtocolError,
    decode,
    encode,
)
from .runner import CommandResult
from .telemetry import DEFAULT_HEARTBEAT_INTERVAL, SnapshotCollector, TelemetryLoop

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 5.0
DEFAULT_TIMEOUT = 30.0

Connector = Callable[..., Awaitable[Any]]


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


# ── Events ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""


@dataclass(frozen=True)
class TransportError:
    error: BaseException


@dataclass(frozen=True)
class MessageReceived:
    envelope: Envelope


ConnectionEvent = Union[Connected, Disconnected, TransportError, MessageReceived]


# ── Manager ───────────────────────────────────────────────────────


class ConnectionManager:
    """Persistent connection from this device to the control server."""

    def __init__(
        self,
        server_url: str,
        device_id: str,
        executor: Optional[CommandExecutor] = None,
        collector: Optional[SnapshotCollector] = None,
        *,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        open_timeout: float = DEFAULT_TIMEOUT,
        ping_interval: float = DEFAULT_TIMEOUT,
        ping_timeout: float = DEFAULT_TIMEOUT,
        close_timeout: float = DEFAULT_TIMEOUT,
        connector: Optional[Connector] = None,
    ) -> None:
        self.server_url = server_url
        self.device_id = device_id
        self.executor = executor or CommandExecutor(log_hook=self.send_log)
        self.reconnect_delay = reconnect_delay
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.close_timeout = close_timeout
        self._connector = connector or websockets.connect

        self.telemetry = TelemetryLoop(
            device_id,
            send=self.send,
            is_connected=lambda: self._state is ConnectionState.CONNECTED,
            collector=collector,
            interval=heartbeat_interval,
        )

        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._stopped = False
        self._half_open = False
        self._closed: Optional[asyncio.Event] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._send_lock = asyncio.Lock()
        self._events: asyncio.Queue[ConnectionEvent] = asyncio.Queue()
        self._tasks: set[asyncio.Task] = set()
        self.attempts = 0

    # ── State ──────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def half_open(self) -> bool:
        """True from transport open until the first inbound frame."""
        return self._half_open

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    async def next_event(self) -> ConnectionEvent:
        """Wait for the next connection event, in the order they happened."""
        return await self._events.get()

    def _emit(self, event: ConnectionEvent) -> None:
        self._events.put_nowait(event)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def connect(self) -> bool:
        """Open the transport. No-op while already connecting or connected."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.debug("connect() ignored, already %s", self._state.value)
            return False

        self._cancel_reconnect()
        self._stopped = False
        self._state = ConnectionState.CONNECTING
        self._generation += 1
        generation = self._generation
        self.attempts += 1
        logger.info("Connecting to %s (attempt %d)", self.server_url, self.attempts)

        try:
            ws = await self._connector(
                self.server_url,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                close_timeout=self.close_timeout,
            )
        except Exception as exc:
            logger.warning("Failed to connect to %s: %s", self.server_url, exc)
            if generation == self._generation:
                self._handle_loss(exc, was_connected=False)
            return False

        if generation != self._generation:
            # disconnect() (or a newer attempt) won the race while we were opening
            await self._close_quietly(ws)
            return False

        self._ws = ws
        self._state = ConnectionState.CONNECTED
        self._half_open = True
        self._closed = asyncio.Event()
        logger.info("Connected to %s", self.server_url)

        self._emit(Connected())
        self._spawn(self._read_loop(ws, generation))
        self._spawn(self.telemetry.run(self._closed))
        return True

    async def disconnect(self) -> None:
        """Close the connection and stop retrying until connect() is called."""
        self._stopped = True
        self._generation += 1
        self._cancel_reconnect()

        ws, self._ws = self._ws, None
        was_connected = self._state is ConnectionState.CONNECTED
        self._state = ConnectionState.DISCONNECTED
        self._half_open = False
        if self._closed is not None:
            self._closed.set()

        if ws is not None:
            await self._close_quietly(ws)
        if was_connected:
            logger.info("Disconnected from %s", self.server_url)
            self._emit(Disconnected("client disconnect"))

    async def shutdown(self) -> None:
        """Disconnect and cancel every background task (agent exit only)."""
        await self.disconnect()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _handle_loss(self, error: BaseException | None, was_connected: bool) -> None:
        self._ws = None
        self._state = ConnectionState.DISCONNECTED
        self._half_open = False
        if self._closed is not None:
            self._closed.set()

        if error is not None:
            self._emit(TransportError(error))
        if was_connected:
            self._emit(Disconnected(str(error) if error else "server closed"))
        if not self._stopped:
            self._schedule_reconnect()

    async def _close_quietly(self, ws: Any) -> None:
        try:
            await ws.close(code=1000, reason="Client disconnecting")
        except Exception as exc:
            logger.debug("Error closing transport: %s", exc)

    # ── Reconnect timer ────────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        logger.info("Reconnecting in %gs...", self.reconnect_delay)
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._on_reconnect_timer)
        self._state = ConnectionState.RECONNECTING

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if self._state is ConnectionState.RECONNECTING:
            self._spawn(self._reconnect())

    async def _reconnect(self) -> None:
        # disconnect() may have run between the timer firing and this task starting
        if self._state is ConnectionState.RECONNECTING:
            await self.connect()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Inbound ────────────────────────────────────────────────────

    async def _read_loop(self, ws: Any, generation: int) -> None:
        error: BaseException | None = None
        try:
            async for raw in ws:
                self._half_open = False
                await self._handle_frame(raw)
        except websockets.ConnectionClosed as exc:
            logger.info("Server connection closed: %s", exc)
            error = exc
        except Exception as exc:
            logger.exception("WebSocket listen error")
            error = exc
        else:
            logger.info("Server closed the connection")

        if generation == self._generation:
            self._handle_loss(error, was_connected=True)

    async def _handle_frame(self, raw: str | bytes) -> None:
        try:
            envelope = decode(raw)
        except ProtocolError as exc:
            logger.warning("Discarding malformed frame: %s", exc)
            return

        logger.debug("Received %s", envelope.type)
        if isinstance(envelope, Auth):
            if envelope.token:
                await self.send(Auth(envelope.token))
        elif isinstance(envelope, Command):
            self._spawn(self._run_command(envelope))
        else:
            self._emit(MessageReceived(envelope))

    async def _run_command(self, command: Command) -> None:
        try:
            result = await self.executor.execute(
                command.command, command.sudo, command_id=command.id
            )
        except Exception as exc:
            logger.exception("Error executing command %s", command.id)
            result = CommandResult(success=False, error=str(exc) or "Unknown error")

        await self.send(CommandResultMessage(
            id=command.id,
            success=result.success,
            output=result.output,
            error=result.error,
        ))

    # ── Outbound ───────────────────────────────────────────────────

    async def send(self, envelope: Envelope) -> bool:
        """The single outbound path. Drops the envelope when not connected."""
        ws = self._ws
        if ws is None:
            logger.debug("Not connected, dropping %s", envelope.type)
            return False
        frame = encode(envelope)
        async with self._send_lock:
            try:
                await ws.send(frame)
            except Exception as exc:
                logger.warning("Error sending %s: %s", envelope.type, exc)
                return False
        return True

    async def send_log(self, level: str, message: str, data: Any = None) -> bool:
        return await self.send(Log(self.device_id, level, message, data))

    async def send_heartbeat(self, timestamp: int) -> bool:
        return await self.send(Heartbeat(self.device_id, timestamp))

    async def send_device_info(self, snapshot: Any) -> bool:
        return await self.send(DeviceInfo(self.device_id, snapshot))
