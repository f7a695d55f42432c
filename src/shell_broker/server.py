"""
Broker server.

Owns the TCP listener and the lifetime of the control connection:
  - Accepts one control connection at a time
  - Builds a fresh relay, supervisor and session registry for it
  - Feeds framed messages to the protocol handler, strictly in order
  - Terminates the connection's shells when it closes
  - Shuts down cleanly on SIGTERM/SIGINT

Lifecycle::

    server = BrokerServer(settings)
    await server.run()    # blocks until a shutdown signal
"""

import asyncio
import signal
from typing import Optional

import structlog

from .config import Settings, get_settings
from .process import Launcher, ProcessSupervisor, launch_subprocess
from .protocol import ControlProtocolHandler, MessageFramer
from .registry import SessionRegistry
from .relay import OutputRelay

logger = structlog.get_logger()

READ_SIZE = 65536

BUSY_OBSERVATION = "observation: another control connection is already active\n"


class ControlConnection:
    """State and read loop for one accepted control connection."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        settings: Settings,
        launcher: Launcher = launch_subprocess,
    ):
        self.reader = reader
        self.writer = writer
        self.settings = settings
        self.peer = writer.get_extra_info("peername")

        self.relay = OutputRelay(writer)
        self.supervisor = ProcessSupervisor(self.relay, settings, launcher)
        self.registry = SessionRegistry(self.supervisor, max_sessions=settings.max_sessions)
        self.handler = ControlProtocolHandler(self.registry, self.supervisor, self.relay, settings)
        self.framer = MessageFramer(settings.max_message_bytes)

    async def run(self) -> None:
        """Serve messages until the peer disconnects, then clean up."""
        logger.info("Control connection opened", peer=self.peer)
        try:
            while True:
                try:
                    data = await self.reader.read(READ_SIZE)
                except ConnectionError as e:
                    logger.info("Control connection lost", peer=self.peer, error=str(e))
                    break
                if not data:
                    for frame in self.framer.flush():
                        await self.handler.handle_frame(frame)
                    break
                for frame in self.framer.feed(data):
                    await self.handler.handle_frame(frame)
        finally:
            await self.registry.close_all(self.settings.terminate_grace_seconds)
            await self.close()
            logger.info("Control connection closed", peer=self.peer)

    async def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


class BrokerServer:
    """Accepts control connections and hands them to ``ControlConnection``."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        launcher: Launcher = launch_subprocess,
    ):
        self.settings = settings or get_settings()
        self._launcher = launcher
        self._server: Optional[asyncio.AbstractServer] = None
        self._connection: Optional[ControlConnection] = None
        self._connection_task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    @property
    def port(self) -> int:
        """Port actually bound (useful when configured with port 0)."""
        if self._server is None or not self._server.sockets:
            return self.settings.port
        return self._server.sockets[0].getsockname()[1]

    @property
    def connection(self) -> Optional[ControlConnection]:
        return self._connection

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection,
            host=self.settings.host,
            port=self.settings.port,
        )
        logger.info("Broker listening", host=self.settings.host, port=self.port)

    async def run(self) -> None:
        """Start listening and block until shutdown is requested."""
        await self.start()
        self._setup_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            self._remove_signal_handlers()
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop accepting and tear down the open connection, if any."""
        server, self._server = self._server, None
        if server is not None:
            server.close()

        connection, task = self._connection, self._connection_task
        if connection is not None:
            await connection.close()
        if task is not None and not task.done():
            await asyncio.wait([task])

        # wait_closed() also waits for open connections, so it goes last.
        if server is not None:
            await server.wait_closed()

        logger.info("Broker stopped")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if self._connection is not None:
            logger.warning("Rejecting extra control connection", peer=writer.get_extra_info("peername"))
            writer.write(BUSY_OBSERVATION.encode("utf-8"))
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            return

        connection = ControlConnection(reader, writer, self.settings, self._launcher)
        self._connection = connection
        self._connection_task = asyncio.current_task()
        try:
            await connection.run()
        finally:
            self._connection = None
            self._connection_task = None

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Shutdown signal received", signal=sig.name)
        self.request_shutdown()
