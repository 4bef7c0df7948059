# zlink_node/core/context.py - Process-wide client context

import logging
from typing import Any, Callable, Dict, Optional

from zlink_node.config.config_manager import ConfigManager
from zlink_node.core.events import StatePublisher
from zlink_node.core.types import (
    ConnectionType,
    NodeEndpoint,
    PollerStatus,
    SyncSnapshot,
)
from zlink_node.rpc.client import DaemonRPCClient
from zlink_node.rpc.methods import DaemonAPI
from zlink_node.supervisor.supervisor import NodeSupervisor, RestartReasons
from zlink_node.tasks.sync_poller import SyncPoller
from zlink_relay.bridge import AppDataBridge
from zlink_relay.client import PairingRelayClient
from zlink_relay.descriptor import build_descriptor
from zlink_relay.types import TransportKind
from zlink_wallet.core.types import TransactionRequest
from zlink_wallet.services.scheduler import RecurringPaymentScheduler
from zlink_wallet.services.transaction import JobHandle, TransactionOrchestrator

logger = logging.getLogger("zlink_node.context")


class ClientContext:
    """
    Everything one running client owns, created at startup and torn down
    at shutdown. Components receive what they need from here instead of
    reaching for globals.
    """

    def __init__(self, config_manager: ConfigManager,
                 supervisor: Optional[NodeSupervisor] = None,
                 relay: Optional[PairingRelayClient] = None,
                 api_factory: Optional[Callable[[NodeEndpoint], DaemonAPI]] = None):
        self.config_manager = config_manager
        self.config = config_manager.config
        self.api_factory = api_factory or self._default_api

        self.supervisor = supervisor or NodeSupervisor(self.config)
        self.relay = relay or PairingRelayClient(self.config.relay)

        self.snapshots: StatePublisher[Optional[SyncSnapshot]] = StatePublisher("sync_snapshot", None)
        self.poller_status: StatePublisher[PollerStatus] = StatePublisher("poller_status", PollerStatus())

        self.api: Optional[DaemonAPI] = None
        self.poller: Optional[SyncPoller] = None
        self.orchestrator = TransactionOrchestrator(None, self.config.transactions, sync_state=self.snapshots)
        self.scheduler = RecurringPaymentScheduler(self.orchestrator, self.config.transactions.scheduler_interval)
        self.bridge = AppDataBridge(self.relay, self.snapshots, self.orchestrator)
        self.running = False

    def _default_api(self, endpoint: NodeEndpoint) -> DaemonAPI:
        return DaemonAPI(DaemonRPCClient(endpoint, timeout=self.config.rpc.timeout))

    async def start(self) -> NodeEndpoint:
        """Bring the daemon up and start polling, sending and scheduling"""
        logger.info("Starting zlink client...")
        endpoint = await self.supervisor.start()
        await self._connect(endpoint)
        await self.orchestrator.start()
        await self.scheduler.start()
        self.bridge.attach()
        self.running = True
        logger.info(f"zlink client running against {endpoint}")
        return endpoint

    async def _connect(self, endpoint: NodeEndpoint):
        self.api = self.api_factory(endpoint)
        self.orchestrator.set_api(self.api)
        self.poller = SyncPoller(self.api, self.config.poller, self.config.transactions.minconf,
                                 snapshot=self.snapshots, status=self.poller_status)
        await self.poller.start()

    async def _disconnect(self):
        if self.poller is not None:
            await self.poller.stop()
            self.poller = None
        if self.api is not None:
            await self.api.close()
            self.api = None

    async def reconnect(self, endpoint: Optional[NodeEndpoint] = None) -> NodeEndpoint:
        """Replace the endpoint; RPC client and poller are rebuilt, never mutated"""
        await self._disconnect()
        if endpoint is None:
            endpoint = await self.supervisor.start()
        await self._connect(endpoint)
        return endpoint

    async def restart_with_flags(self, reasons: RestartReasons):
        embedded = self.supervisor.state.value.mode is ConnectionType.EMBEDDED
        if embedded:
            await self._disconnect()
        state = await self.supervisor.restart_with_flags(reasons)
        if embedded and state.is_running:
            await self._connect(self.supervisor.endpoint)
        return state

    def submit(self, request: TransactionRequest) -> JobHandle:
        return self.orchestrator.submit(request)

    async def initiate_pairing(self, transport: TransportKind = TransportKind.DIRECT) -> str:
        descriptor = await self.relay.initiate_pairing(transport)
        return build_descriptor(descriptor)

    async def terminate_pairing(self):
        await self.relay.terminate_pairing("Disconnected by user")

    async def stop(self):
        """Stop the daemon we own, or detach from an external one"""
        await self._disconnect()
        await self.supervisor.stop()

    async def shutdown(self, stop_daemon: bool = True):
        logger.info("Shutting down zlink client...")
        self.running = False
        self.bridge.detach()
        await self.scheduler.stop()
        await self.relay.close()
        await self.orchestrator.stop()
        await self._disconnect()
        if stop_daemon:
            await self.supervisor.stop()
        logger.info("zlink client stopped")

    def status(self) -> Dict[str, Any]:
        process = self.supervisor.state.value
        snapshot = self.snapshots.value
        poller = self.poller_status.value
        session = self.relay.session.value
        return {
            'daemon': {
                'status': process.status.value,
                'mode': process.mode.value if process.mode else None,
                'reason': process.reason.value if process.reason else None,
                'error': process.error,
                'endpoint': str(self.supervisor.endpoint) if self.supervisor.endpoint else None,
            },
            'connection': {
                'health': poller.health.value,
                'consecutive_failures': poller.consecutive_failures,
                'last_error': poller.last_error,
                'skipped_ticks': poller.skipped_ticks,
            },
            'chain': None if snapshot is None else {
                'blocks': snapshot.block_height,
                'longest_chain': snapshot.longest_chain,
                'peers': snapshot.peer_count,
                'phase': snapshot.sync_phase.value,
                'progress': snapshot.sync_progress,
                'notarized': snapshot.notarized_height,
                'notarized_lag': snapshot.notarized_lag,
                'version': snapshot.versions.daemon,
                'balance': {
                    'transparent': str(snapshot.balances.transparent),
                    'shielded': str(snapshot.balances.shielded),
                    'total': str(snapshot.balances.total),
                },
            },
            'transactions': self.orchestrator.summary(),
            'pairing': None if session is None else {
                'state': session.connection_state.value,
                'transport': session.transport.value,
                'peer': session.peer_name,
                'last_seen': session.peer_last_seen_at,
            },
        }
