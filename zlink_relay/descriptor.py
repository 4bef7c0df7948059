# zlink_relay/descriptor.py - Shareable connection strings
import base64
import binascii
from urllib.parse import parse_qs, urlencode

from zlink_relay.exceptions import DescriptorError
from zlink_relay.types import ConnectionDescriptor, TransportKind

SCHEME = "zlink-pair"
KEY_SIZE = 32


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def build_descriptor(descriptor: ConnectionDescriptor) -> str:
    """zlink-pair:<direct|relayed>?endpoint=...&token=...&key=..."""
    query = urlencode({
        "endpoint": descriptor.endpoint,
        "token": descriptor.token,
        "key": _b64encode(descriptor.key),
    })
    return f"{SCHEME}:{descriptor.transport.value}?{query}"


def parse_descriptor(text: str) -> ConnectionDescriptor:
    text = text.strip()
    prefix = f"{SCHEME}:"
    if not text.startswith(prefix):
        raise DescriptorError(f"Not a pairing descriptor: {text[:32]!r}")

    kind_text, _, query = text[len(prefix):].partition("?")
    try:
        transport = TransportKind(kind_text)
    except ValueError:
        raise DescriptorError(f"Unknown pairing transport: {kind_text!r}")

    params = parse_qs(query)
    try:
        endpoint = params["endpoint"][0]
        token = params["token"][0]
        key = _b64decode(params["key"][0])
    except (KeyError, IndexError):
        raise DescriptorError("Pairing descriptor is missing endpoint, token or key")
    except (binascii.Error, ValueError) as e:
        raise DescriptorError("Pairing descriptor has a malformed key", str(e))

    if len(key) != KEY_SIZE:
        raise DescriptorError(f"Pairing key must be {KEY_SIZE} bytes, got {len(key)}")
    if not endpoint.startswith(("ws://", "wss://")):
        raise DescriptorError(f"Unsupported pairing endpoint: {endpoint!r}")

    return ConnectionDescriptor(transport, endpoint, token, key)
