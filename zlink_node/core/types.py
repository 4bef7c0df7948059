# zlink_node/core/types.py - Node, process and sync state types
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Optional


class ConnectionType(Enum):
    """How the client reached the daemon"""
    DETECTED_CONF_EXTERNAL = "detected_conf_external"
    SETTINGS_EXTERNAL = "settings_external"
    EMBEDDED = "embedded"

    @property
    def is_external(self) -> bool:
        return self is not ConnectionType.EMBEDDED


class ProcessStatus(Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    RUNNING = "running"
    NEEDS_RESTART = "needs_restart"
    STOPPED = "stopped"
    FAILED = "failed"


class RestartReason(Enum):
    """Conditions that can only be applied by restarting the daemon"""
    RESCAN = "rescan"
    REINDEX = "reindex"
    CONSOLIDATION = "consolidation"
    DELETE_OLD_TX = "deletetx"
    SHIELDED_INDEX = "zindex"

    @property
    def command_line_flag(self) -> Optional[str]:
        """One-shot flag passed to the next launch only"""
        if self is RestartReason.RESCAN:
            return "-rescan"
        if self in (RestartReason.REINDEX, RestartReason.SHIELDED_INDEX):
            # The shielded index is built during a reindex
            return "-reindex"
        return None

    @property
    def conf_key(self) -> Optional[str]:
        """Key persisted in the daemon conf file"""
        if self in (RestartReason.CONSOLIDATION, RestartReason.DELETE_OLD_TX,
                    RestartReason.SHIELDED_INDEX):
            return self.value
        return None


@dataclass(frozen=True)
class NodeEndpoint:
    """Where and how to reach the daemon's RPC interface"""
    host: str = "127.0.0.1"
    port: int = 18031
    rpc_user: str = ""
    rpc_password: str = field(default="", repr=False)
    use_tls: bool = False

    @property
    def url(self) -> str:
        scheme = "https" if self.use_tls else "http"
        return f"{scheme}://{self.host}:{self.port}/"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class NodeProcessState:
    status: ProcessStatus = ProcessStatus.NOT_STARTED
    reason: Optional[RestartReason] = None
    error: Optional[str] = None
    mode: Optional[ConnectionType] = None
    pid: Optional[int] = None
    changed_at: float = field(default_factory=time.time)

    @property
    def is_running(self) -> bool:
        return self.status is ProcessStatus.RUNNING

    def transition(self, status: ProcessStatus, **changes) -> 'NodeProcessState':
        changes.setdefault('reason', None)
        changes.setdefault('error', None)
        return replace(self, status=status, changed_at=time.time(), **changes)


class SyncPhase(Enum):
    CONNECTING = "connecting"
    SYNCING = "syncing"
    SYNCED = "synced"


class ConnectionHealth(Enum):
    CONNECTING = "connecting"
    ONLINE = "online"
    DEGRADED = "degraded"
    NO_CONNECTION = "no_connection"
    AUTH_FAILED = "auth_failed"


@dataclass(frozen=True)
class DaemonVersions:
    daemon: str = ""
    protocol: int = 0
    chain: str = ""


@dataclass(frozen=True)
class WalletBalances:
    transparent: Decimal = Decimal("0")
    shielded: Decimal = Decimal("0")
    total: Decimal = Decimal("0")


@dataclass(frozen=True)
class SyncSnapshot:
    """Chain and wallet state collected in a single poll"""
    block_height: int
    longest_chain: int
    peer_count: int
    sync_phase: SyncPhase
    notarized_height: int
    notarized_lag: int
    versions: DaemonVersions
    balances: WalletBalances
    last_updated: float

    @property
    def sync_progress(self) -> float:
        if self.longest_chain <= 0:
            return 0.0
        return min(100.0, round(self.block_height / self.longest_chain * 100, 2))


@dataclass(frozen=True)
class PollerStatus:
    health: ConnectionHealth = ConnectionHealth.CONNECTING
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    skipped_ticks: int = 0

    @property
    def degraded(self) -> bool:
        return self.health in (ConnectionHealth.DEGRADED, ConnectionHealth.NO_CONNECTION)
