import pytest

from conftest import FakeDaemonAPI, FakeTransport, balance_reply, info_reply, no_sleep, park, z_address
from zlink_node.config.config_manager import ConfigManager
from zlink_node.core.context import ClientContext
from zlink_node.core.types import ConnectionHealth, ProcessStatus, RestartReason
from zlink_node.supervisor.daemon_conf import DaemonConfFile
from zlink_node.supervisor.supervisor import NodeSupervisor
from zlink_relay.client import PairingRelayClient
from zlink_relay.types import SessionState
from zlink_wallet.core.types import JobStatus, Recipient, TransactionRequest


def succeed(operation_ids):
    return [{"id": operation_ids[0], "status": "success", "result": {"txid": "feed"}}]


@pytest.fixture
def context(tmp_path):
    manager = ConfigManager(None, environ={})
    config = manager.config
    config.daemon.data_dir = str(tmp_path)
    config.poller.interval = 0.05
    config.transactions.progress_interval = 0.0

    api = FakeDaemonAPI(getinfo=info_reply(), z_gettotalbalance=balance_reply(),
                        z_sendmany="opid-1", z_getoperationstatus=succeed, z_getoperationresult=[[]])
    supervisor = NodeSupervisor(config, api_factory=lambda endpoint: api, sleep=no_sleep)
    DaemonConfFile({"rpcuser": "alice", "rpcpassword": "pw"}).save(supervisor.conf_path)

    relay = PairingRelayClient(config.relay, transport_factory=lambda kind, token: FakeTransport(), sleep=park)
    return ClientContext(manager, supervisor=supervisor, relay=relay, api_factory=lambda endpoint: api)


@pytest.mark.asyncio
async def test_start_poll_send_and_shutdown(context):
    endpoint = await context.start()
    try:
        assert endpoint.rpc_user == "alice"
        snapshot = await context.snapshots.wait_for(lambda s: s is not None, timeout=2.0)
        assert snapshot.block_height == 100

        request = TransactionRequest(z_address("me"), [Recipient(z_address("you"), "0.5")])
        job = await context.submit(request).wait(timeout=2.0)
        assert job.status is JobStatus.COMPLETED
        assert job.txid == "feed"

        status = context.status()
        assert status["daemon"]["status"] == "running"
        assert status["daemon"]["mode"] == "detected_conf_external"
        assert status["connection"]["health"] == ConnectionHealth.ONLINE.value
        assert status["chain"]["balance"]["total"] == "3.75"
        assert status["transactions"]["completed"] == 1
        assert status["pairing"] is None
    finally:
        await context.shutdown()

    assert context.supervisor.state.value.status is ProcessStatus.STOPPED
    assert context.poller is None
    assert context.api is None


@pytest.mark.asyncio
async def test_pairing_through_context(context):
    await context.start()
    try:
        descriptor = await context.initiate_pairing()
        assert descriptor.startswith("zlink-pair:direct?endpoint=")
        assert context.status()["pairing"]["state"] == "connecting"

        await context.terminate_pairing()
        assert context.relay.session.value.connection_state is SessionState.DISCONNECTED
    finally:
        await context.shutdown()


@pytest.mark.asyncio
async def test_restart_request_against_external_daemon_keeps_polling(context):
    await context.start()
    try:
        poller = context.poller
        state = await context.restart_with_flags([RestartReason.RESCAN])
        assert state.status is ProcessStatus.NEEDS_RESTART
        assert "-rescan" in state.error
        assert context.poller is poller
    finally:
        await context.shutdown()
