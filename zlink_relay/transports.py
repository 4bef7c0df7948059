"""
Pairing transports

Both transports move opaque text frames for one session. DirectTransport
listens for the device on a local websocket; RelayedTransport connects out
to a relay service that forwards frames by session token.
"""

import asyncio
import json
import socket
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

import psutil
from websockets.asyncio.client import connect
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed, WebSocketException

from zlink_node.utils.helpers import Backoff
from zlink_relay.exceptions import TransportError
from zlink_relay.types import TransportKind

logger = logging.getLogger("zlink_relay.transport")

FrameHandler = Callable[[Union[str, bytes]], Awaitable[None]]
LinkHandler = Callable[[bool], None]

# Close code sent to a second device while a session is in use
CLOSE_TRY_AGAIN_LATER = 1013


def local_address() -> str:
    """First non-loopback IPv4 address of this machine"""
    for addresses in psutil.net_if_addrs().values():
        for address in addresses:
            if address.family == socket.AF_INET and not address.address.startswith("127."):
                return address.address
    return "127.0.0.1"


class RelayTransport(ABC):
    kind: TransportKind

    def __init__(self):
        self.on_frame: Optional[FrameHandler] = None
        self.on_link: Optional[LinkHandler] = None

    def set_handlers(self, on_frame: FrameHandler, on_link: Optional[LinkHandler] = None):
        self.on_frame = on_frame
        self.on_link = on_link

    @property
    @abstractmethod
    def linked(self) -> bool:
        """Whether frames can currently be sent"""

    @abstractmethod
    async def start(self) -> str:
        """Start the transport; returns the endpoint the device should use"""

    @abstractmethod
    async def send_frame(self, frame: str):
        pass

    @abstractmethod
    async def close(self):
        pass

    async def _dispatch(self, frame: Union[str, bytes]):
        if self.on_frame is None:
            return
        try:
            await self.on_frame(frame)
        except Exception as e:
            logger.error(f"Error handling frame on {self.kind.value} transport: {e}", exc_info=True)

    def _link_changed(self, up: bool):
        logger.info(f"{self.kind.value} transport link {'up' if up else 'down'}")
        if self.on_link is not None:
            self.on_link(up)


class DirectTransport(RelayTransport):
    """Websocket server the device connects to over the local network"""
    kind = TransportKind.DIRECT

    def __init__(self, host: str = "0.0.0.0", port: int = 8777,
                 advertise_host: str = "", max_size: int = 1024 * 1024):
        super().__init__()
        self.host = host
        self.port = port
        self.advertise_host = advertise_host
        self.max_size = max_size
        self.endpoint: Optional[str] = None
        self._server = None
        self._peer: Optional[ServerConnection] = None

    @property
    def linked(self) -> bool:
        return self._peer is not None

    async def start(self) -> str:
        try:
            self._server = await serve(self._handle_connection, self.host, self.port,
                                       max_size=self.max_size)
        except OSError as e:
            raise TransportError(f"Cannot listen on {self.host}:{self.port}", str(e))

        port = next(iter(self._server.sockets)).getsockname()[1]
        host = self.advertise_host or local_address()
        self.endpoint = f"ws://{host}:{port}"
        logger.info(f"Waiting for device on {self.host}:{port} (advertised as {self.endpoint})")
        return self.endpoint

    async def _handle_connection(self, websocket: ServerConnection):
        if self._peer is not None:
            logger.warning(f"Rejecting second device from {websocket.remote_address}")
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "session already has a device")
            return

        self._peer = websocket
        self._link_changed(True)
        try:
            async for message in websocket:
                await self._dispatch(message)
        except ConnectionClosed:
            logger.debug(f"Device connection closed: {websocket.remote_address}")
        finally:
            if self._peer is websocket:
                self._peer = None
                self._link_changed(False)

    async def send_frame(self, frame: str):
        peer = self._peer
        if peer is None:
            raise TransportError("No device is connected")
        try:
            await peer.send(frame)
        except ConnectionClosed as e:
            raise TransportError("Device connection closed", str(e))

    async def close(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        self._peer = None


class RelayedTransport(RelayTransport):
    """Outbound websocket to a relay service, registered under the session token"""
    kind = TransportKind.RELAYED

    def __init__(self, relay_url: str, token: str, backoff: Optional[Backoff] = None,
                 max_size: int = 1024 * 1024,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        super().__init__()
        self.relay_url = relay_url
        self.token = token
        self.backoff = backoff or Backoff(1.0, 30.0, jitter=True)
        self.max_size = max_size
        self.sleep = sleep
        self.running = False
        self._connection = None
        self._task: Optional[asyncio.Task] = None

    @property
    def linked(self) -> bool:
        return self._connection is not None

    async def start(self) -> str:
        self.running = True
        self._task = asyncio.create_task(self._run())
        return self.relay_url

    async def _run(self):
        attempt = 0
        while self.running:
            try:
                async with connect(self.relay_url, max_size=self.max_size) as websocket:
                    await websocket.send(json.dumps({"register": self.token}))
                    self._connection = websocket
                    attempt = 0
                    self._link_changed(True)
                    async for message in websocket:
                        await self._dispatch(message)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning(f"Relay connection to {self.relay_url} failed: {e}")
            finally:
                if self._connection is not None:
                    self._connection = None
                    self._link_changed(False)

            if not self.running:
                break
            delay = self.backoff.delay(attempt)
            attempt += 1
            logger.info(f"Reconnecting to relay in {delay:.1f}s")
            await self.sleep(delay)

    async def send_frame(self, frame: str):
        connection = self._connection
        if connection is None:
            raise TransportError("Not connected to the relay")
        try:
            await connection.send(frame)
        except ConnectionClosed as e:
            raise TransportError("Relay connection closed", str(e))

    async def close(self):
        self.running = False
        if self._connection is not None:
            await self._connection.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
