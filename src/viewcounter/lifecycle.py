"""
Process lifecycle for the view counter gateway.

Start-up connects the database, binds the listener and hands the serve loop
to its own task. The main task then waits for whichever comes first: a
termination signal or the serve loop ending on its own. Shutdown drains the
server for a bounded time and releases the database pool exactly once.
"""

import asyncio
import signal
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import httpx
import uvicorn
from fastapi import FastAPI

from viewcounter.app import create_app
from viewcounter.config import ViewCounterConfig
from viewcounter.director import UpstreamTarget
from viewcounter.errors import ListenerBindError
from viewcounter.logging import EventType, ViewCounterLogger
from viewcounter.persistence import DatabaseManager
from viewcounter.transport import TransportConfig, build_client

# Interrupt, terminate, hang-up and abort all mean "shut down"
SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP, signal.SIGABRT)

# Extra time given to a force-exited server before its task is cancelled
FORCE_EXIT_SECONDS = 1.0


class LifecycleState(Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ShutdownTrigger:
    """What ended the running state: ``signal`` or ``serve_exit``."""

    reason: str
    detail: str


def bind_listener(host: str, port: int) -> socket.socket:
    """Bind the listening socket before any request can arrive."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.setblocking(False)
        sock.set_inheritable(True)
    except OSError as e:
        sock.close()
        raise ListenerBindError(f"failed to bind {host}:{port}: {e}") from e
    return sock


def build_server(app: FastAPI, config: ViewCounterConfig) -> uvicorn.Server:
    # Logging and lifespan are owned by Lifecycle, not uvicorn
    server_config = uvicorn.Config(
        app,
        lifespan="off",
        log_config=None,
        access_log=False,
    )
    return uvicorn.Server(server_config)


class Lifecycle:
    """Owns start-up, the signal/serve race and ordered shutdown."""

    def __init__(
        self,
        config: ViewCounterConfig,
        logger: ViewCounterLogger,
        database: Optional[DatabaseManager] = None,
        server_factory: Optional[Callable[[FastAPI, ViewCounterConfig], uvicorn.Server]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.logger = logger
        self.database = database or DatabaseManager(config.database_url)
        self._server_factory = server_factory or build_server
        self._transport = transport

        self._state = LifecycleState.INITIALIZING
        self._shutdown_event = asyncio.Event()
        self._trigger: Optional[ShutdownTrigger] = None
        self._shutdown_started = False
        self._signals_installed: List[signal.Signals] = []

        self.app: Optional[FastAPI] = None
        self._server = None
        self._socket: Optional[socket.socket] = None
        self._client: Optional[httpx.AsyncClient] = None
        self._serve_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def trigger(self) -> Optional[ShutdownTrigger]:
        return self._trigger

    @property
    def server(self):
        return self._server

    @property
    def sockets(self) -> List[socket.socket]:
        return [self._socket] if self._socket is not None else []

    async def start(self) -> None:
        """Initialize every resource and start serving.

        Raises:
            UpstreamTargetError: renderer URL is malformed
            DatabaseConnectionError: database unreachable
            ListenerBindError: listen address unavailable
        """
        if self._state is not LifecycleState.INITIALIZING:
            raise RuntimeError(f"cannot start from state {self._state.value}")

        target = UpstreamTarget.parse(self.config.renderer_url)

        self.logger.info("connecting to database", event_type=EventType.DATABASE_CONNECT)
        await asyncio.to_thread(self.database.connect)

        try:
            self._socket = bind_listener(self.config.host, self.config.port)
        except ListenerBindError:
            await asyncio.to_thread(self.database.close)
            raise

        self._client = build_client(
            TransportConfig(),
            timeout_seconds=self.config.request_timeout_seconds,
            transport=self._transport,
        )
        self.app = create_app(
            self.config, self.database, self._client, target=target, logger=self.logger
        )
        self._server = self._server_factory(self.app, self.config)
        self._serve_task = asyncio.create_task(self._serve(), name="viewcounter-serve")
        self._state = LifecycleState.RUNNING

        host, port = self._socket.getsockname()[:2]
        self.logger.log_event(
            EventType.GATEWAY_START,
            "starting server",
            metadata={"host": host, "port": port, "renderer": str(target.url)},
        )

    async def _serve(self) -> None:
        await self._server._serve(sockets=self.sockets)

    def request_shutdown(self, signame: str) -> None:
        """Signal callback. Only the first trigger counts."""
        if self._trigger is not None:
            self.logger.debug(
                f"ignoring {signame}, shutdown already requested",
                event_type=EventType.SIGNAL_RECEIVED,
                signal=signame,
            )
            return
        self._trigger = ShutdownTrigger(reason="signal", detail=signame)
        self.logger.log_event(
            EventType.SIGNAL_RECEIVED, "shutdown signal received", signal=signame
        )
        self._shutdown_event.set()

    async def wait(self) -> ShutdownTrigger:
        """Block until a signal arrives or the serve loop ends, whichever is first."""
        if self._state is not LifecycleState.RUNNING:
            raise RuntimeError(f"cannot wait in state {self._state.value}")

        self._install_signal_handlers()
        signal_task = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait(
                {self._serve_task, signal_task}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not signal_task.done():
                signal_task.cancel()

        if self._trigger is None:
            self._trigger = self._serve_exit_trigger()
        return self._trigger

    def _serve_exit_trigger(self) -> ShutdownTrigger:
        task = self._serve_task
        if task.cancelled():
            detail = "serve loop cancelled"
        elif task.exception() is not None:
            detail = str(task.exception()) or type(task.exception()).__name__
        else:
            detail = "serve loop exited"

        self.logger.error(
            f"server encountered an error: {detail}",
            event_type=EventType.SERVE_ERROR,
            metadata={"error": detail},
        )
        return ShutdownTrigger(reason="serve_exit", detail=detail)

    async def shutdown(self, trigger: Optional[ShutdownTrigger] = None) -> None:
        """Stop serving and release resources. Runs at most once."""
        if self._shutdown_started:
            return
        self._shutdown_started = True
        self._state = LifecycleState.SHUTTING_DOWN

        trigger = trigger or self._trigger
        self.logger.log_event(
            EventType.GATEWAY_STOP,
            "shutting down application",
            metadata={
                "reason": trigger.reason if trigger else None,
                "detail": trigger.detail if trigger else None,
            },
        )

        try:
            await self._stop_server()
            if self._client is not None:
                await self._client.aclose()
        finally:
            self.logger.info("closing database connection", event_type=EventType.DATABASE_CLOSE)
            await asyncio.to_thread(self.database.close)
            self._remove_signal_handlers()
            self._state = LifecycleState.STOPPED
            self.logger.log_event(
                EventType.GATEWAY_STOP, "database connection closed, cleanup complete"
            )

    async def _stop_server(self) -> None:
        task = self._serve_task
        if task is None:
            return

        if not task.done():
            self._server.should_exit = True
            grace = self.config.shutdown_grace_seconds
            done, _ = await asyncio.wait({task}, timeout=grace)
            if not done:
                self.logger.warning(
                    f"in-flight requests still running after {grace}s, forcing exit",
                    event_type=EventType.GATEWAY_STOP,
                )
                self._server.force_exit = True
                done, _ = await asyncio.wait({task}, timeout=FORCE_EXIT_SECONDS)
            if not done:
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        elif not task.cancelled():
            # Already reported as the shutdown trigger
            task.exception()

        if self._socket is not None:
            self._socket.close()

    async def run(self) -> int:
        """Start, wait for the first shutdown trigger, shut down. Returns the exit status."""
        await self.start()
        try:
            await self.wait()
        finally:
            await self.shutdown()
        return 0

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows or not running in the main thread
                self.logger.warning(
                    f"cannot install handler for {sig.name}",
                    event_type=EventType.GATEWAY_ERROR,
                    signal=sig.name,
                )
                continue
            self._signals_installed.append(sig)

    def _remove_signal_handlers(self) -> None:
        if not self._signals_installed:
            return
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed = []
