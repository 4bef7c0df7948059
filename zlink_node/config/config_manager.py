# zlink_node/config/config_manager.py - Configuration management

import os
import json
import logging
from dataclasses import dataclass, asdict, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml
import yaml

from zlink_node.core.exceptions import ConfigurationError

logger = logging.getLogger("zlink_node.config")

ENV_PREFIX = "ZLINK_"


class ConfigFormat(Enum):
    YAML = "yaml"
    JSON = "json"
    TOML = "toml"


class ConfigSource(Enum):
    FILE = "file"
    ENV = "environment"
    DEFAULT = "default"


@dataclass
class DaemonConfig:
    binary: str = "hushd"
    chain_name: str = "HUSH3"
    data_dir: str = ""          # empty: platform default for chain_name
    conf_file: str = ""         # empty: <data_dir>/<chain_name>.conf
    allow_embedded: bool = True
    extra_args: List[str] = field(default_factory=list)
    # None leaves the daemon conf file's own value in place
    proxy: Optional[str] = None     # e.g. 127.0.0.1:9050 to route through Tor
    consolidation: Optional[bool] = None
    deletetx: Optional[bool] = None
    zindex: Optional[bool] = None
    readiness_retries: int = 30
    readiness_base_delay: float = 1.0
    readiness_max_delay: float = 10.0
    probe_timeout: float = 5.0
    stop_timeout: float = 60.0
    fetch_params: bool = True
    params_dir: str = ""        # empty: platform default zcash-params dir
    params_base_url: str = "https://z.cash/downloads/"
    params_files: List[str] = field(default_factory=lambda: [
        "sapling-output.params",
        "sapling-spend.params",
        "sprout-groth16.params",
    ])


@dataclass
class RPCConfig:
    host: str = "127.0.0.1"
    port: int = 0               # 0: taken from the daemon conf file or 18031
    user: str = ""
    password: str = ""
    use_tls: bool = False
    timeout: float = 30.0


@dataclass
class PollerConfig:
    interval: float = 5.0
    failure_threshold: int = 3


@dataclass
class TransactionConfig:
    default_fee: str = "0.0001"
    allow_custom_fees: bool = False
    minconf: int = 1
    progress_interval: float = 1.0
    status_timeout: float = 10.0
    max_status_failures: int = 5
    expected_build_seconds: float = 60.0
    history_limit: int = 200
    transparent_versions: List[int] = field(default_factory=lambda: [60, 85])
    shielded_prefix: str = "zs"
    uri_scheme: str = "hush"
    scheduler_interval: float = 60.0


@dataclass
class RelayConfig:
    listen_host: str = "0.0.0.0"
    listen_port: int = 8777
    advertise_host: str = ""    # empty: first non-loopback interface address
    relay_url: str = "wss://wormhole.myhush.org:443"
    allow_internet: bool = False
    heartbeat_interval: float = 10.0
    liveness_timeout: float = 30.0
    pairing_timeout: float = 300.0
    max_pending: int = 256
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    max_message_size: int = 1024 * 1024


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""
    max_size: int = 10485760  # 10MB
    backup_count: int = 5


@dataclass
class Config:
    daemon: DaemonConfig = field(default_factory=DaemonConfig)
    rpc: RPCConfig = field(default_factory=RPCConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    transactions: TransactionConfig = field(default_factory=TransactionConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


SECTIONS = tuple(f.name for f in fields(Config))


class ConfigManager:
    def __init__(self, config_path: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None,
                 create_missing: bool = True):
        self.config_path = config_path
        self.config = Config()
        self.config_format = ConfigFormat.YAML
        self.config_source = ConfigSource.DEFAULT
        self._load_config(create_missing)
        self._apply_env_overrides(os.environ if environ is None else environ)

    def _load_config(self, create_missing: bool):
        """Load configuration from file or use defaults"""
        if not self.config_path:
            return

        config_file = Path(self.config_path).expanduser()
        self.config_format = self._detect_format(config_file)

        if not config_file.exists():
            if create_missing:
                self.save()
            return

        try:
            with open(config_file, 'r') as f:
                if self.config_format == ConfigFormat.YAML:
                    config_data = yaml.safe_load(f)
                elif self.config_format == ConfigFormat.JSON:
                    config_data = json.load(f)
                else:
                    config_data = toml.load(f)
        except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Error loading config file {config_file}", str(e))

        self.update_from_dict(config_data or {})
        self.config_source = ConfigSource.FILE
        logger.info(f"Loaded configuration from {config_file}")

    @staticmethod
    def _detect_format(config_file: Path) -> ConfigFormat:
        suffix = config_file.suffix.lower()
        if suffix == '.json':
            return ConfigFormat.JSON
        if suffix == '.toml':
            return ConfigFormat.TOML
        return ConfigFormat.YAML

    def update_from_dict(self, config_data: Dict[str, Any]):
        """Update config sections from a nested dictionary"""
        for section_name, section_data in config_data.items():
            if section_name not in SECTIONS:
                logger.warning(f"Ignoring unknown config section: {section_name}")
                continue
            if not isinstance(section_data, dict):
                raise ConfigurationError(f"Config section '{section_name}' must be a mapping")

            section = getattr(self.config, section_name)
            for key, value in section_data.items():
                if hasattr(section, key):
                    setattr(section, key, value)
                else:
                    logger.warning(f"Ignoring unknown config key: {section_name}.{key}")

    def _apply_env_overrides(self, environ):
        """ZLINK_<SECTION>_<KEY>=value overrides file and defaults"""
        for name, raw in environ.items():
            if not name.startswith(ENV_PREFIX):
                continue
            parts = name[len(ENV_PREFIX):].lower().split('_', 1)
            if len(parts) != 2 or parts[0] not in SECTIONS:
                continue

            section = getattr(self.config, parts[0])
            key = parts[1]
            if not hasattr(section, key):
                continue

            current = getattr(section, key)
            if current is None and self._declared_type(section, key) == Optional[bool]:
                # Unset toggle; parse like any other flag
                current = False
            setattr(section, key, self._coerce(current, raw, name))
            self.config_source = ConfigSource.ENV

    @staticmethod
    def _declared_type(section: Any, key: str) -> Any:
        for f in fields(section):
            if f.name == key:
                return f.type
        return None

    @staticmethod
    def _coerce(current: Any, raw: str, name: str) -> Any:
        try:
            if isinstance(current, bool):
                return raw.strip().lower() in ('1', 'true', 'yes', 'on')
            if isinstance(current, int):
                return int(raw)
            if isinstance(current, float):
                return float(raw)
            if isinstance(current, list):
                return [item.strip() for item in raw.split(',') if item.strip()]
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {name}", str(e))
        return raw

    def save(self):
        """Save current configuration to file"""
        if not self.config_path:
            return

        config_file = Path(self.config_path).expanduser()
        config_file.parent.mkdir(parents=True, exist_ok=True)
        config_dict = self.to_dict()

        with open(config_file, 'w') as f:
            if self.config_format == ConfigFormat.YAML:
                yaml.safe_dump(config_dict, f, default_flow_style=False)
            elif self.config_format == ConfigFormat.JSON:
                json.dump(config_dict, f, indent=2)
            else:
                toml.dump(config_dict, f)

        logger.info(f"Wrote configuration to {config_file}")

    def to_dict(self) -> Dict[str, Any]:
        return {name: asdict(getattr(self.config, name)) for name in SECTIONS}

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        obj = self.config
        for part in key.split('.'):
            if not hasattr(obj, part):
                return default
            obj = getattr(obj, part)
        return obj

    def set(self, key: str, value: Any) -> bool:
        """Set configuration value using dot notation"""
        parts = key.split('.')
        obj = self.config

        for part in parts[:-1]:
            if not hasattr(obj, part):
                return False
            obj = getattr(obj, part)

        if not hasattr(obj, parts[-1]):
            return False
        setattr(obj, parts[-1], value)
        return True


def init_config(config_path: Optional[str] = None, **kwargs) -> ConfigManager:
    """Initialize configuration manager"""
    return ConfigManager(config_path, **kwargs)
