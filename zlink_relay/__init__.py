# zlink_relay - pairing channel to a companion device
from zlink_relay.client import PairingRelayClient
from zlink_relay.descriptor import build_descriptor, parse_descriptor
from zlink_relay.envelope import EnvelopeCodec
from zlink_relay.exceptions import (
    DescriptorError,
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

__version__ = "1.0.0"
__all__ = [
    'PairingRelayClient',
    'build_descriptor',
    'parse_descriptor',
    'EnvelopeCodec',
    'InboundSequencer',
    'OutboundSequence',
    'RelayTransport',
    'DirectTransport',
    'RelayedTransport',
    'ConnectionDescriptor',
    'EnvelopeKind',
    'PairingSession',
    'RelayEnvelope',
    'SessionState',
    'TransportKind',
    'RelayError',
    'PairingTimeoutError',
    'NotPairedError',
    'TransportError',
    'EnvelopeError',
    'DescriptorError'
]
