# core/__init__.py - Shared types, errors and state publishing
from zlink_node.core.events import StatePublisher
from zlink_node.core.exceptions import (
    ConfigurationError,
    ProcessError,
    RPCApplicationError,
    RPCAuthError,
    RPCConnectionError,
    RPCError,
    RPCErrorKind,
    RPCProtocolError,
    RPCTimeoutError,
    ZlinkError,
)
from zlink_node.core.types import (
    ConnectionHealth,
    ConnectionType,
    DaemonVersions,
    NodeEndpoint,
    NodeProcessState,
    PollerStatus,
    ProcessStatus,
    RestartReason,
    SyncPhase,
    SyncSnapshot,
    WalletBalances,
)

__all__ = [
    'StatePublisher',
    'ZlinkError',
    'ConfigurationError',
    'ProcessError',
    'RPCError',
    'RPCErrorKind',
    'RPCAuthError',
    'RPCConnectionError',
    'RPCTimeoutError',
    'RPCProtocolError',
    'RPCApplicationError',
    'ConnectionType',
    'ConnectionHealth',
    'DaemonVersions',
    'NodeEndpoint',
    'NodeProcessState',
    'PollerStatus',
    'ProcessStatus',
    'RestartReason',
    'SyncPhase',
    'SyncSnapshot',
    'WalletBalances'
]
