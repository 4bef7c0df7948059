"""
Envelope codec

Frames are JSON text: {"v", "token", "seq", "kind", "payload"} where payload
is the base64 AES-GCM ciphertext of the envelope body. The nonce is built
from the sender's direction byte and the sequence number, and the token,
sequence and kind are bound as associated data, so a relay can route frames
by token but cannot read, alter or replay them across directions.
"""

import base64
import binascii
import json
import logging
import struct
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from zlink_relay.exceptions import EnvelopeError
from zlink_relay.types import EnvelopeKind, RelayEnvelope

logger = logging.getLogger("zlink_relay.envelope")

FRAME_VERSION = 1

# Direction of travel; each side encrypts with its own byte
DIRECTION_CLIENT = 0x01
DIRECTION_DEVICE = 0x02


def make_nonce(direction: int, sequence: int) -> bytes:
    return struct.pack(">B3xQ", direction, sequence)


def associated_data(token: str, sequence: int, kind: EnvelopeKind) -> bytes:
    return f"{token}|{sequence}|{kind.value}".encode("utf-8")


class EnvelopeCodec:
    """Encrypts outbound and decrypts inbound envelopes of one session"""

    def __init__(self, key: bytes, token: str, direction: int = DIRECTION_CLIENT):
        if len(key) != 32:
            raise EnvelopeError("Session key must be 32 bytes")
        self._aead = AESGCM(key)
        self.token = token
        self.direction = direction
        self.peer_direction = DIRECTION_DEVICE if direction == DIRECTION_CLIENT else DIRECTION_CLIENT

    def encode(self, envelope: RelayEnvelope) -> str:
        if envelope.sequence < 1:
            raise EnvelopeError(f"Invalid sequence number {envelope.sequence}")
        ciphertext = self._aead.encrypt(
            make_nonce(self.direction, envelope.sequence),
            envelope.payload,
            associated_data(envelope.session_token, envelope.sequence, envelope.kind)
        )
        return json.dumps({
            "v": FRAME_VERSION,
            "token": envelope.session_token,
            "seq": envelope.sequence,
            "kind": envelope.kind.value,
            "payload": base64.b64encode(ciphertext).decode("ascii"),
        }, separators=(",", ":"))

    def decode(self, frame: Union[str, bytes]) -> RelayEnvelope:
        """
        Parse and authenticate a frame sent by the peer

        Raises:
            EnvelopeError: malformed frame, wrong session or failed authentication
        """
        try:
            data = json.loads(frame)
            version = data["v"]
            token = data["token"]
            sequence = int(data["seq"])
            kind = EnvelopeKind(data["kind"])
            ciphertext = base64.b64decode(data["payload"], validate=True)
        except (ValueError, KeyError, TypeError, binascii.Error) as e:
            raise EnvelopeError("Malformed envelope frame", str(e))

        if version != FRAME_VERSION:
            raise EnvelopeError(f"Unsupported envelope version {version}")
        if token != self.token:
            raise EnvelopeError("Envelope belongs to another session")
        if sequence < 1:
            raise EnvelopeError(f"Invalid sequence number {sequence}")

        try:
            payload = self._aead.decrypt(
                make_nonce(self.peer_direction, sequence),
                ciphertext,
                associated_data(token, sequence, kind)
            )
        except InvalidTag:
            raise EnvelopeError("Envelope failed authentication")

        return RelayEnvelope(token, sequence, kind, payload)
