from enum import Enum
from typing import Optional


class ZlinkError(Exception):
    """Base error. `tag` classifies, `message` is shown to the user."""
    tag = "error"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class ProcessError(ZlinkError):
    """Daemon failed to start or exited unexpectedly"""
    tag = "process"

    def __init__(self, message: str, detail: Optional[str] = None,
                 returncode: Optional[int] = None):
        super().__init__(message, detail)
        self.returncode = returncode


class ConfigurationError(ZlinkError):
    """Invalid or unusable configuration"""
    tag = "configuration"


class RPCErrorKind(Enum):
    AUTH_FAILURE = "auth_failure"
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    APPLICATION_ERROR = "application_error"


class RPCError(ZlinkError):
    """Base RPC error"""
    tag = "rpc"
    kind: RPCErrorKind = RPCErrorKind.PROTOCOL_ERROR

    def __init__(self, message: str, method: Optional[str] = None,
                 detail: Optional[str] = None):
        super().__init__(message, detail)
        self.method = method


class RPCAuthError(RPCError):
    """Credentials rejected by the daemon"""
    tag = "auth"
    kind = RPCErrorKind.AUTH_FAILURE


class RPCConnectionError(RPCError):
    """Endpoint unreachable"""
    tag = "connection"
    kind = RPCErrorKind.CONNECTION_REFUSED


class RPCTimeoutError(RPCConnectionError):
    """Call did not complete within its timeout"""
    kind = RPCErrorKind.TIMEOUT


class RPCProtocolError(RPCError):
    """Malformed or unexpected response"""
    kind = RPCErrorKind.PROTOCOL_ERROR


class RPCApplicationError(RPCError):
    """Failure reported by the daemon, passed through verbatim"""
    kind = RPCErrorKind.APPLICATION_ERROR

    # Daemon is still loading the block index / wallet
    WARMING_UP = -28

    def __init__(self, code: int, message: str, method: Optional[str] = None):
        super().__init__(message, method)
        self.code = code

    @property
    def warming_up(self) -> bool:
        return self.code == self.WARMING_UP

    def __str__(self) -> str:
        return f"{self.message} (code {self.code})"
