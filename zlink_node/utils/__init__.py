from zlink_node.utils.helpers import Backoff, PIDManager, RetryManager, configure_logging

__all__ = ['Backoff', 'PIDManager', 'RetryManager', 'configure_logging']
