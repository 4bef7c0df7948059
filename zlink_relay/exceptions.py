from zlink_node.core.exceptions import ZlinkError


class RelayError(ZlinkError):
    """Session timeout or disconnect; the device must pair again"""
    tag = "relay"


class PairingTimeoutError(RelayError):
    tag = "relay_timeout"


class NotPairedError(RelayError):
    pass


class TransportError(RelayError):
    tag = "relay_transport"


class EnvelopeError(RelayError):
    """Frame could not be decoded or authenticated"""
    tag = "relay_envelope"


class DescriptorError(RelayError):
    tag = "relay_descriptor"
