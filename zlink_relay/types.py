# zlink_relay/types.py - Pairing session and envelope types
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class TransportKind(Enum):
    DIRECT = "direct"
    RELAYED = "relayed"


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class EnvelopeKind(Enum):
    HELLO = "hello"
    DATA = "data"
    HEARTBEAT = "heartbeat"
    BYE = "bye"


@dataclass(frozen=True)
class PairingSession:
    session_token: str
    transport: TransportKind
    connection_state: SessionState = SessionState.CONNECTING
    peer_last_seen_at: Optional[float] = None
    peer_name: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    close_reason: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self.connection_state is SessionState.CONNECTED

    def with_state(self, state: SessionState, **changes) -> 'PairingSession':
        return replace(self, connection_state=state, **changes)


@dataclass(frozen=True)
class RelayEnvelope:
    session_token: str
    sequence: int
    kind: EnvelopeKind
    payload: bytes = b""


@dataclass(frozen=True)
class ConnectionDescriptor:
    """What the companion device needs to join a session"""
    transport: TransportKind
    endpoint: str
    token: str
    key: bytes = field(repr=False)
