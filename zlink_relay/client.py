"""
Pairing relay client

Owns at most one PairingSession. The session starts Connecting when a
descriptor is issued, becomes Connected once the device's hello
authenticates, and ends Disconnected on bye, liveness timeout, pairing
timeout or explicit termination. A disconnected session is never resumed.
"""

import asyncio
import inspect
import json
import secrets
import time
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from zlink_node.config.config_manager import RelayConfig
from zlink_node.core.events import StatePublisher
from zlink_node.utils.helpers import Backoff
from zlink_relay.envelope import DIRECTION_CLIENT, EnvelopeCodec
from zlink_relay.exceptions import (
    EnvelopeError,
    NotPairedError,
    PairingTimeoutError,
    RelayError,
    TransportError,
)
from zlink_relay.sequencing import InboundSequencer, OutboundSequence
from zlink_relay.transports import DirectTransport, RelayedTransport, RelayTransport
from zlink_relay.types import (
    ConnectionDescriptor,
    EnvelopeKind,
    PairingSession,
    RelayEnvelope,
    SessionState,
    TransportKind,
)

logger = logging.getLogger("zlink_relay.client")

ReceiveCallback = Callable[[bytes], Any]
TransportFactory = Callable[[TransportKind, str], RelayTransport]

SESSION_KEY_BYTES = 32


class PairingRelayClient:
    def __init__(self, config: RelayConfig, client_name: str = "zlink",
                 transport_factory: Optional[TransportFactory] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config
        self.client_name = client_name
        self.transport_factory = transport_factory or self._default_transport
        self.clock = clock
        self.sleep = sleep

        self.session: StatePublisher[Optional[PairingSession]] = StatePublisher("pairing_session", None)
        self._receivers: List[ReceiveCallback] = []

        self._transport: Optional[RelayTransport] = None
        self._codec: Optional[EnvelopeCodec] = None
        self._outbound: Optional[OutboundSequence] = None
        self._inbound: Optional[InboundSequencer] = None
        self._started_at = 0.0
        self._last_seen = 0.0
        self._tasks: List[asyncio.Task] = []
        self._closing: Set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()

    def _default_transport(self, kind: TransportKind, token: str) -> RelayTransport:
        if kind is TransportKind.DIRECT:
            return DirectTransport(self.config.listen_host, self.config.listen_port,
                                   self.config.advertise_host, self.config.max_message_size)
        backoff = Backoff(self.config.reconnect_base_delay, self.config.reconnect_max_delay, jitter=True)
        return RelayedTransport(self.config.relay_url, token, backoff,
                                self.config.max_message_size, sleep=self.sleep)

    @property
    def connected(self) -> bool:
        session = self.session.value
        return session is not None and session.connected

    def on_receive(self, callback: ReceiveCallback) -> Callable[[], None]:
        """Register for decrypted data payloads; returns an unsubscribe function"""
        self._receivers.append(callback)

        def unsubscribe():
            if callback in self._receivers:
                self._receivers.remove(callback)

        return unsubscribe

    def on_state_change(self, callback: Callable[[Optional[PairingSession]], None]) -> Callable[[], None]:
        return self.session.subscribe(callback)

    async def initiate_pairing(self, transport: TransportKind = TransportKind.DIRECT) -> ConnectionDescriptor:
        """
        Start a fresh session and return the descriptor to show the device

        Raises:
            RelayError: relayed pairing requested while internet relaying is disabled
            TransportError: the transport could not be started
        """
        if transport is TransportKind.RELAYED and not self.config.allow_internet:
            raise RelayError("Connecting over the internet relay is disabled in the configuration")

        if self.session.value is not None and self.session.value.connection_state is not SessionState.DISCONNECTED:
            await self.terminate_pairing("Replaced by a new pairing")

        token = secrets.token_urlsafe(16)
        key = secrets.token_bytes(SESSION_KEY_BYTES)

        channel = self.transport_factory(transport, token)
        channel.set_handlers(self._handle_frame, self._handle_link)
        endpoint = await channel.start()

        self._transport = channel
        self._codec = EnvelopeCodec(key, token, DIRECTION_CLIENT)
        self._outbound = OutboundSequence()
        self._inbound = InboundSequencer(self.config.max_pending)
        self._started_at = self.clock()
        self._last_seen = self._started_at

        self.session.publish(PairingSession(session_token=token, transport=transport))
        self._tasks = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._watchdog_loop()),
        ]
        logger.info(f"Pairing started over {transport.value} transport at {endpoint}")
        return ConnectionDescriptor(transport, endpoint, token, key)

    async def terminate_pairing(self, reason: str = "Disconnected"):
        """End the current session; the device has to pair again"""
        session = self.session.value
        if session is None or session.connection_state is SessionState.DISCONNECTED:
            return

        if session.connected:
            try:
                await self._send_envelope(EnvelopeKind.BYE, reason.encode("utf-8"))
            except RelayError as e:
                logger.debug(f"Could not send bye: {e}")

        transport = self._end_session(reason)
        if transport is not None:
            await transport.close()

    async def close(self):
        await self.terminate_pairing("Client shutting down")
        results = await asyncio.gather(*self._closing, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Error closing relay transport: {result}")

    def _end_session(self, reason: str) -> Optional[RelayTransport]:
        """Publish Disconnected and detach the transport, which the caller closes"""
        session = self.session.value
        if session is None or session.connection_state is SessionState.DISCONNECTED:
            return None

        self.session.publish(session.with_state(SessionState.DISCONNECTED, close_reason=reason))
        logger.info(f"Pairing session ended: {reason}")

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []

        transport = self._transport
        self._transport = None
        self._codec = None
        return transport

    async def wait_until_paired(self, timeout: Optional[float] = None) -> PairingSession:
        """
        Wait for the device to complete the handshake

        Raises:
            PairingTimeoutError: no device paired in time, or the session ended first
        """
        timeout = self.config.pairing_timeout if timeout is None else timeout
        try:
            session = await self.session.wait_for(
                lambda s: s is None or s.connection_state is not SessionState.CONNECTING, timeout)
        except asyncio.TimeoutError:
            raise PairingTimeoutError(f"No device paired within {timeout:.0f}s")
        if session is None or not session.connected:
            reason = session.close_reason if session else None
            raise PairingTimeoutError("Pairing ended before a device connected", reason)
        return session

    async def send(self, payload: Union[bytes, str, dict]) -> int:
        """
        Send application data to the paired device

        Returns:
            The sequence number assigned to the envelope

        Raises:
            NotPairedError: no device is connected
            TransportError: the transport could not deliver the frame
        """
        if not self.connected:
            raise NotPairedError("No device is paired")
        if isinstance(payload, dict):
            payload = json.dumps(payload, separators=(",", ":"))
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return await self._send_envelope(EnvelopeKind.DATA, payload)

    async def _send_envelope(self, kind: EnvelopeKind, payload: bytes = b"") -> int:
        if self._transport is None or self._codec is None:
            raise NotPairedError("No pairing session")
        async with self._send_lock:
            sequence = self._outbound.next()
            envelope = RelayEnvelope(self._codec.token, sequence, kind, payload)
            await self._transport.send_frame(self._codec.encode(envelope))
        return sequence

    def _handle_link(self, up: bool):
        if not up and self.connected:
            logger.info("Transport link to the device dropped, waiting for it to come back")

    async def _handle_frame(self, frame: Union[str, bytes]):
        codec = self._codec
        session = self.session.value
        if codec is None or session is None or session.connection_state is SessionState.DISCONNECTED:
            return

        try:
            envelope = codec.decode(frame)
        except EnvelopeError as e:
            logger.warning(f"Dropping frame: {e}")
            return

        self._last_seen = self.clock()
        self.session.publish(session.with_state(session.connection_state, peer_last_seen_at=time.time()))

        for ready in self._inbound.accept(envelope.sequence, envelope):
            await self._apply(ready)
            if not self._codec:
                break

    async def _apply(self, envelope: RelayEnvelope):
        session = self.session.value
        if envelope.kind is EnvelopeKind.HELLO:
            if session.connection_state is SessionState.CONNECTING:
                peer_name = self._peer_name(envelope.payload)
                self.session.publish(session.with_state(SessionState.CONNECTED, peer_name=peer_name))
                logger.info(f"Device paired: {peer_name or 'unnamed device'}")
                hello = json.dumps({"name": self.client_name}).encode("utf-8")
                try:
                    await self._send_envelope(EnvelopeKind.HELLO, hello)
                except TransportError as e:
                    logger.warning(f"Could not answer device hello: {e}")
            return

        if envelope.kind is EnvelopeKind.BYE:
            # Runs inside the transport's reader; closing is left to a task
            transport = self._end_session("Device disconnected")
            if transport is not None:
                closing = asyncio.create_task(transport.close())
                self._closing.add(closing)
                closing.add_done_callback(self._closing.discard)
            return

        if envelope.kind is EnvelopeKind.HEARTBEAT:
            return

        if not session.connected:
            logger.warning(f"Dropping data envelope {envelope.sequence} received before hello")
            return

        for callback in list(self._receivers):
            try:
                result = callback(envelope.payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Receive callback failed: {e}", exc_info=True)

    @staticmethod
    def _peer_name(payload: bytes) -> Optional[str]:
        try:
            name = json.loads(payload).get("name")
        except (ValueError, AttributeError):
            return None
        return str(name) if name else None

    def check_liveness(self) -> Optional[str]:
        """Reason the session must end now, or None while it is alive"""
        session = self.session.value
        if session is None:
            return None
        now = self.clock()
        if session.connected and now - self._last_seen > self.config.liveness_timeout:
            return f"No message from the device for {self.config.liveness_timeout:.0f}s"
        if (session.connection_state is SessionState.CONNECTING
                and now - self._started_at > self.config.pairing_timeout):
            return "No device paired before the pairing timeout"
        return None

    async def _watchdog_loop(self):
        tick = max(0.05, min(self.config.heartbeat_interval, self.config.liveness_timeout) / 4)
        while True:
            await self.sleep(tick)
            reason = self.check_liveness()
            if reason:
                logger.warning(f"Ending pairing session: {reason}")
                await self.terminate_pairing(reason)
                return

    async def _heartbeat_loop(self):
        while True:
            await self.sleep(self.config.heartbeat_interval)
            if not self.connected:
                continue
            try:
                await self._send_envelope(EnvelopeKind.HEARTBEAT)
            except RelayError as e:
                logger.debug(f"Heartbeat not sent: {e}")
