"""Main agent — wires the connection, executor and telemetry together.

  RemoteAgent.start()
    → ConnectionManager.connect()           (retries every 5s on failure)
    → on Connected: TelemetryLoop           (device_info, then heartbeats)
    → inbound auth/command                  (handled by the connection)
    → other inbound messages                (host's on_message callback)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional

from .config import AgentConfig
from .executor import CommandExecutor
from .protocol import Envelope
from .runner import ProcessRunner
from .telemetry import collect_snapshot
from .ws_client import (
    ConnectionManager,
    Connected,
    ConnectionEvent,
    Disconnected,
    MessageReceived,
    TransportError,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Envelope], Awaitable[None]]


class RemoteAgent:
    """Long-running remote-management agent for one device."""

    def __init__(
        self,
        config: AgentConfig,
        on_message: Optional[MessageHandler] = None,
        collector: Optional[Callable[[], Any]] = None,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        if not config.device_id:
            config.device_id = config.generate_id()
        self.config = config
        self.on_message = on_message
        self._running = False
        self._task: Optional[asyncio.Task] = None

        if collector is None and config.send_device_info:
            collector = functools.partial(collect_snapshot, config.device_id)

        self.runner = ProcessRunner(
            shell=config.shell,
            escalation=config.escalation_command,
            timeout=config.command_timeout,
        )
        self.executor = CommandExecutor(self.runner)
        self.connection = ConnectionManager(
            config.server_url,
            config.device_id,
            executor=self.executor,
            collector=collector,
            reconnect_delay=config.reconnect_delay,
            heartbeat_interval=config.heartbeat_interval,
            open_timeout=config.connect_timeout,
            ping_interval=config.ping_interval,
            ping_timeout=config.ping_timeout,
            close_timeout=config.close_timeout,
            connector=connector,
        )
        self.executor.log_hook = self.connection.send_log

    async def start(self) -> None:
        """Connect and process connection events until stop() is called."""
        logger.info("=== RDM Agent ===")
        logger.info("Device: %s | Server: %s", self.config.device_id, self.config.server_url)
        self._running = True
        self._task = asyncio.current_task()

        connected = await self.connection.connect()
        if not connected:
            logger.error("Initial connection failed, retrying every %gs", self.config.reconnect_delay)

        try:
            while self._running:
                event = await self.connection.next_event()
                await self._handle_event(event)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Shutting down agent...")
        self._running = False
        await self.connection.shutdown()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()

    async def _handle_event(self, event: ConnectionEvent) -> None:
        if isinstance(event, Connected):
            logger.info("Connected to server")
        elif isinstance(event, Disconnected):
            logger.info("Disconnected: %s", event.reason)
        elif isinstance(event, TransportError):
            logger.warning("Transport error: %s", event.error)
        elif isinstance(event, MessageReceived):
            if self.on_message is None:
                logger.debug("Unhandled message type: %s", event.envelope.type)
                return
            try:
                await self.on_message(event.envelope)
            except Exception:
                logger.exception("Handler error for %s", event.envelope.type)
