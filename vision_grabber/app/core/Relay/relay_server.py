# relay_server.py
# Description: Embedded HTTP service exposing the local engine to other instances.
#
from __future__ import annotations

import asyncio
import contextlib
import errno
import socket
import sys
from enum import Enum
from typing import Callable, Optional, Set, Union

import uvicorn
from loguru import logger

from vision_grabber.app.core.Backends.backend_manager import BackendManager
from .firewall import FirewallProvisioner, FirewallResult
from .relay_endpoints import create_relay_app


LISTEN_HOST = "0.0.0.0"
RELAY_RESULT_LABEL = "Relay Server"
STOP_WAIT_SECONDS = 5.0
STARTUP_TIMEOUT = 10.0

ResultSink = Callable[[str, str, str], None]
StatusSink = Callable[[str], None]


class RelayState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    LISTENING = "listening"


class RelayBindError(Exception):
    """The listener could not be bound; the relay server stays stopped."""

    def __init__(self, message: str, permission_denied: bool = False):
        super().__init__(message)
        self.permission_denied = permission_denied


class _EmbeddedUvicornServer(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the host application."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class RelayServer:
    """Accepts jobs from peers and runs them on the local backend.

    Lifecycle: STOPPED -> STARTING -> LISTENING -> STOPPED, driven only by
    ``start`` and ``stop``. uvicorn's serve task is the accept loop and serves
    each connection concurrently.
    """

    def __init__(
        self,
        backend_manager: BackendManager,
        on_result: Optional[ResultSink] = None,
        on_status: Optional[StatusSink] = None,
        firewall: Optional[FirewallProvisioner] = None,
        host: str = LISTEN_HOST,
    ):
        self.backend_manager = backend_manager
        self.on_result = on_result
        self.on_status = on_status
        self.firewall = firewall or FirewallProvisioner()
        self.host = host
        self.app = create_relay_app(self)

        self._lock = asyncio.Lock()
        self._state = RelayState.STOPPED
        self._port: Optional[int] = None
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._draining: Set[asyncio.Task] = set()
        self.last_firewall_result: Optional[FirewallResult] = None

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is RelayState.LISTENING

    @property
    def port(self) -> Optional[int]:
        return self._port

    @property
    def listener(self) -> Optional[socket.socket]:
        return self._socket

    def _report(self, status: str) -> None:
        if self.on_status is None:
            return
        try:
            self.on_status(status)
        except Exception as e:
            logger.warning(f"Status callback raised: {e}")

    def _bind(self, port: Union[str, int]) -> socket.socket:
        try:
            port_number = int(str(port).strip())
        except ValueError:
            raise RelayBindError(f"Relay Server failed to start: '{port}' is not a valid port number.")

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if sys.platform != "win32":
                # Windows SO_REUSEADDR would allow two listeners on one port
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, port_number))
            sock.listen(128)
            sock.setblocking(False)
        except (OSError, OverflowError) as e:
            sock.close()
            message = f"Relay Server failed to start: {e}"
            denied = isinstance(e, PermissionError) or getattr(e, "errno", None) in (errno.EACCES, errno.EPERM)
            if denied:
                message += (
                    "\n\nTry running the app with elevated privileges (as Administrator or root). "
                    "This is required to listen on all network interfaces."
                )
            raise RelayBindError(message, permission_denied=denied) from e
        return sock

    async def start(self, port: Union[str, int]) -> None:
        """Bind and serve on ``port``; a no-op while already listening.

        Raises ``RelayBindError`` when the listener cannot be bound.
        """
        async with self._lock:
            if self._state is RelayState.LISTENING:
                return
            self._state = RelayState.STARTING

            self.last_firewall_result = await self.firewall.ensure_rule(port)
            logger.debug(f"Firewall provisioning for port {port}: {self.last_firewall_result.value}")

            try:
                sock = self._bind(port)
            except RelayBindError as e:
                self._state = RelayState.STOPPED
                logger.warning(str(e))
                self._report("Relay Server: Failed to start")
                raise

            config = uvicorn.Config(
                self.app,
                log_level="warning",
                access_log=False,
                lifespan="off",
                log_config=None,
            )
            server = _EmbeddedUvicornServer(config)
            task = asyncio.get_running_loop().create_task(server.serve(sockets=[sock]))

            deadline = asyncio.get_running_loop().time() + STARTUP_TIMEOUT
            while not server.started and not task.done():
                if asyncio.get_running_loop().time() > deadline:
                    break
                await asyncio.sleep(0.01)

            if not server.started:
                server.should_exit = True
                if not task.done():
                    task.cancel()
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task
                sock.close()
                self._state = RelayState.STOPPED
                self._report("Relay Server: Failed to start")
                raise RelayBindError("Relay Server failed to start: the HTTP listener did not come up.")

            self._socket = sock
            self._server = server
            self._serve_task = task
            self._port = sock.getsockname()[1]
            self._state = RelayState.LISTENING
            logger.info(f"Relay server listening on {self.host}:{self._port}")
            self._report(f"Relay Server: Running on Port {self._port}")

    async def stop(self) -> None:
        """Close the listener. In-flight requests are left to finish on their own."""
        async with self._lock:
            self._state = RelayState.STOPPED
            server, task, sock = self._server, self._serve_task, self._socket
            self._server = None
            self._serve_task = None
            self._socket = None
            self._port = None
            try:
                if server is not None:
                    server.should_exit = True
                if task is not None:
                    done, _ = await asyncio.wait({task}, timeout=STOP_WAIT_SECONDS)
                    if task not in done:
                        # Still draining requests; keep a reference until it finishes
                        self._draining.add(task)
                        task.add_done_callback(self._draining.discard)
                if sock is not None:
                    sock.close()
            except Exception as e:
                logger.debug(f"Ignoring relay teardown error: {e}")
            self._report("Relay Server: Stopped")

    async def process_job(self, image: str, prompt: str, peer: str) -> str:
        """Run one relay job on the local backend and forward the result."""
        self._report(f"Relay Server: Processing request from {peer}")
        selection = self.backend_manager.relay_backend()
        logger.info(f"Relay job from {peer} dispatched to {selection.label}")
        result = await selection.backend.process(image, prompt)
        if self.backend_manager.settings_manager.current.DisplayRelayResults and self.on_result is not None:
            self.on_result(result, prompt, RELAY_RESULT_LABEL)
        return result

#
# End of relay_server.py
