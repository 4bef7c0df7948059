# supervisor/__init__.py - Daemon process supervision
from zlink_node.supervisor.daemon_conf import DaemonConfFile, locate_conf_file
from zlink_node.supervisor.params import ParamsFetcher
from zlink_node.supervisor.supervisor import NodeSupervisor

__all__ = [
    'DaemonConfFile',
    'locate_conf_file',
    'ParamsFetcher',
    'NodeSupervisor'
]
