from .client import DaemonRPCClient
from .methods import DaemonAPI

__all__ = [
    'DaemonRPCClient',
    'DaemonAPI'
]
