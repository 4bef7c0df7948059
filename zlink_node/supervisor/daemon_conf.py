"""
Daemon configuration file handling

Locates, parses and writes the daemon's `key=value` conf file and derives
the RPC endpoint from it.
"""

import os
import sys
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from zlink_node.config.config_manager import DaemonConfig, RPCConfig
from zlink_node.core.exceptions import ConfigurationError
from zlink_node.core.types import NodeEndpoint
from zlink_node.utils.helpers import generate_token

logger = logging.getLogger("zlink_node.supervisor.conf")

DEFAULT_RPC_PORT = 18031

TOGGLE_KEYS = ("consolidation", "deletetx", "zindex")


def default_data_dir(chain_name: str) -> Path:
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", Path.home())) / "Komodo" / chain_name
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Komodo" / chain_name
    return Path.home() / ".komodo" / chain_name


def default_params_dir() -> Path:
    if sys.platform == "win32":
        return Path(os.environ.get("APPDATA", Path.home())) / "ZcashParams"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "ZcashParams"
    return Path.home() / ".zcash-params"


def resolve_data_dir(config: DaemonConfig) -> Path:
    if config.data_dir:
        return Path(config.data_dir).expanduser()
    return default_data_dir(config.chain_name)


def locate_conf_file(config: DaemonConfig) -> Path:
    if config.conf_file:
        return Path(config.conf_file).expanduser()
    return resolve_data_dir(config) / f"{config.chain_name}.conf"


@dataclass
class DaemonConfFile:
    """Parsed daemon conf file, preserving unknown entries"""
    entries: Dict[str, str] = field(default_factory=dict)
    path: Optional[Path] = None

    @classmethod
    def load(cls, path: Path) -> 'DaemonConfFile':
        entries: Dict[str, str] = {}
        with open(path, 'r') as f:
            for line_number, line in enumerate(f, 1):
                line = line.split('#', 1)[0].strip()
                if not line:
                    continue
                if '=' not in line:
                    logger.warning(f"{path}:{line_number}: ignoring malformed line")
                    continue
                key, value = line.split('=', 1)
                entries[key.strip()] = value.strip()
        return cls(entries=entries, path=Path(path))

    @classmethod
    def create_default(cls, config: DaemonConfig, rpc: RPCConfig) -> 'DaemonConfFile':
        """Conf for an embedded daemon with freshly generated credentials"""
        conf = cls()
        conf.entries.update({
            "rpcuser": rpc.user or f"zlink-{generate_token(4)}",
            "rpcpassword": rpc.password or generate_token(16),
            "rpcport": str(rpc.port or DEFAULT_RPC_PORT),
            "rpcbind": "127.0.0.1",
            "rpcallowip": "127.0.0.1",
            "server": "1",
            "txindex": "1",
        })
        conf.apply_settings(config)
        return conf

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.entries.get(key, default)

    def flag(self, key: str) -> bool:
        return self.entries.get(key, "0").strip() in ("1", "true", "yes")

    def set_flag(self, key: str, enabled: bool):
        if enabled:
            self.entries[key] = "1"
        elif key in self.entries:
            self.entries[key] = "0"

    def apply_settings(self, config: DaemonConfig) -> bool:
        """
        Write the toggles and proxy that settings set explicitly.

        Settings left as None keep whatever the file already says, so a
        proxy or index the user configured by hand survives. Returns True
        if anything changed.
        """
        before = dict(self.entries)
        for key in TOGGLE_KEYS:
            value = getattr(config, key)
            if value is not None:
                self.set_flag(key, bool(value))
        if config.proxy:
            self.entries["proxy"] = config.proxy
        return before != self.entries

    @property
    def rpc_port(self) -> int:
        try:
            return int(self.entries.get("rpcport", DEFAULT_RPC_PORT))
        except ValueError:
            raise ConfigurationError(f"Invalid rpcport in {self.path}: {self.entries['rpcport']}")

    def save(self, path: Optional[Path] = None) -> Path:
        path = Path(path or self.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [f"{key}={value}" for key, value in self.entries.items()]
        with open(path, 'w') as f:
            f.write("\n".join(lines) + "\n")
        path.chmod(0o600)
        self.path = path
        logger.info(f"Wrote daemon configuration to {path}")
        return path


def endpoint_from_conf(conf: DaemonConfFile, rpc: RPCConfig) -> NodeEndpoint:
    """Endpoint for a daemon configured by conf; explicit settings win"""
    return NodeEndpoint(
        host=rpc.host,
        port=rpc.port or conf.rpc_port,
        rpc_user=rpc.user or conf.get("rpcuser", ""),
        rpc_password=rpc.password or conf.get("rpcpassword", ""),
        use_tls=rpc.use_tls
    )


def endpoint_from_settings(rpc: RPCConfig) -> NodeEndpoint:
    return NodeEndpoint(
        host=rpc.host,
        port=rpc.port or DEFAULT_RPC_PORT,
        rpc_user=rpc.user,
        rpc_password=rpc.password,
        use_tls=rpc.use_tls
    )
