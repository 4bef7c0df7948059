import asyncio
from decimal import Decimal

import pytest

from conftest import FakeDaemonAPI, balance_reply, info_reply
from zlink_node.core.exceptions import RPCAuthError, RPCConnectionError
from zlink_node.core.types import ConnectionHealth, SyncPhase
from zlink_node.tasks.sync_poller import MalformedStateError, SyncPoller, build_snapshot


def test_snapshot_phases():
    assert build_snapshot(info_reply(connections=0), balance_reply()).sync_phase is SyncPhase.CONNECTING
    assert build_snapshot(info_reply(blocks=50, longest=100), balance_reply()).sync_phase is SyncPhase.SYNCING
    assert build_snapshot(info_reply(blocks=100, longest=100), balance_reply()).sync_phase is SyncPhase.SYNCED


def test_snapshot_fields():
    snapshot = build_snapshot(info_reply(blocks=120, longest=150, notarized=110),
                              balance_reply("0.1", "0.2", "0.3"), now=1000.0)
    assert snapshot.block_height == 120
    assert snapshot.longest_chain == 150
    assert snapshot.peer_count == 8
    assert snapshot.notarized_lag == 10
    assert snapshot.sync_progress == 80.0
    assert snapshot.versions.daemon == "0.8.0"
    assert snapshot.versions.chain == "HUSH3"
    assert snapshot.balances.total == Decimal("0.3")
    assert snapshot.balances.transparent + snapshot.balances.shielded == snapshot.balances.total
    assert snapshot.last_updated == 1000.0


def test_longest_chain_never_below_height():
    snapshot = build_snapshot(info_reply(blocks=200, longest=0), balance_reply())
    assert snapshot.longest_chain == 200
    assert snapshot.sync_phase is SyncPhase.SYNCED


def test_incomplete_reply_is_malformed():
    with pytest.raises(MalformedStateError):
        build_snapshot({"connections": 3}, balance_reply())
    with pytest.raises(MalformedStateError):
        build_snapshot(info_reply(), {"transparent": "abc"})


@pytest.mark.asyncio
async def test_successful_poll_publishes_snapshot_and_online(config, fake_api):
    poller = SyncPoller(fake_api, config.poller, minconf=2)
    snapshot = await poller.poll_once()

    assert poller.snapshot.value is snapshot
    assert poller.status.value.health is ConnectionHealth.ONLINE
    assert fake_api.called("z_gettotalbalance") == [(2,)]


@pytest.mark.asyncio
async def test_failures_degrade_then_lose_connection_then_recover(config):
    api = FakeDaemonAPI(
        getinfo=[info_reply(blocks=10), RPCConnectionError("refused"), RPCConnectionError("refused"),
                 RPCConnectionError("refused"), info_reply(blocks=11)],
        z_gettotalbalance=balance_reply()
    )
    poller = SyncPoller(api, config.poller)

    first = await poller.poll_once()
    assert poller.status.value.health is ConnectionHealth.ONLINE

    healths = []
    for _ in range(3):
        assert await poller.poll_once() is None
        healths.append(poller.status.value.health)
        # The last good snapshot stays published
        assert poller.snapshot.value is first

    assert healths == [ConnectionHealth.DEGRADED, ConnectionHealth.DEGRADED, ConnectionHealth.NO_CONNECTION]
    assert poller.status.value.consecutive_failures == 3
    assert "refused" in poller.status.value.last_error

    recovered = await poller.poll_once()
    assert recovered.block_height == 11
    assert poller.status.value.health is ConnectionHealth.ONLINE
    assert poller.status.value.consecutive_failures == 0


@pytest.mark.asyncio
async def test_rejected_credentials_stop_polling(config):
    api = FakeDaemonAPI(getinfo=RPCAuthError("Authentication failed"), z_gettotalbalance=balance_reply())
    poller = SyncPoller(api, config.poller)
    poller.running = True

    assert await poller.poll_once() is None
    assert poller.status.value.health is ConnectionHealth.AUTH_FAILED
    assert poller.running is False


@pytest.mark.asyncio
async def test_slow_poll_counts_as_failure(config):
    config.poller.interval = 0.05

    async def slow():
        await asyncio.sleep(1.0)
        return info_reply()

    api = FakeDaemonAPI(getinfo=slow, z_gettotalbalance=balance_reply())
    poller = SyncPoller(api, config.poller)

    assert await poller.poll_once() is None
    assert poller.status.value.health is ConnectionHealth.DEGRADED
    assert "0.05" in poller.status.value.last_error


@pytest.mark.asyncio
async def test_tick_is_skipped_while_previous_one_runs(config):
    release = asyncio.Event()

    async def blocked():
        await release.wait()
        return info_reply()

    api = FakeDaemonAPI(getinfo=blocked, z_gettotalbalance=balance_reply())
    poller = SyncPoller(api, config.poller)

    assert poller.schedule_tick()
    await asyncio.sleep(0)
    assert not poller.schedule_tick()
    assert poller.status.value.skipped_ticks == 1

    release.set()
    await poller._tick_task
    assert poller.status.value.health is ConnectionHealth.ONLINE
    assert poller.status.value.skipped_ticks == 1
    assert poller.schedule_tick()
    await poller.stop()


@pytest.mark.asyncio
async def test_started_poller_publishes_until_stopped(config, fake_api):
    config.poller.interval = 0.05
    poller = SyncPoller(fake_api, config.poller)
    await poller.start()
    try:
        snapshot = await poller.snapshot.wait_for(lambda s: s is not None, timeout=1.0)
    finally:
        await poller.stop()

    assert snapshot.sync_phase is SyncPhase.SYNCED
    assert poller._loop_task is None


def test_non_object_replies_are_malformed():
    with pytest.raises(MalformedStateError):
        build_snapshot(info_reply(), None)
    with pytest.raises(MalformedStateError):
        build_snapshot(["blocks"], balance_reply())


@pytest.mark.asyncio
async def test_null_balance_reply_counts_as_failure(config):
    api = FakeDaemonAPI(getinfo=info_reply(), z_gettotalbalance=[None])
    poller = SyncPoller(api, config.poller)

    assert await poller.poll_once() is None
    assert poller.status.value.health is ConnectionHealth.DEGRADED
    assert poller.status.value.consecutive_failures == 1
    assert "z_gettotalbalance" in poller.status.value.last_error


@pytest.mark.asyncio
async def test_failed_call_cancels_the_other(config):
    cancelled = asyncio.Event()

    async def hang(minconf):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    api = FakeDaemonAPI(getinfo=RPCConnectionError("refused"), z_gettotalbalance=hang)
    poller = SyncPoller(api, config.poller)

    assert await poller.poll_once() is None
    assert cancelled.is_set()
    assert poller.status.value.health is ConnectionHealth.DEGRADED


def record_statuses(poller):
    seen = []
    poller.status.subscribe(lambda status: seen.append((status.health, status.consecutive_failures)))
    return seen


@pytest.mark.asyncio
async def test_hung_daemon_times_out_every_tick_without_skipping(config):
    config.poller.interval = 0.1

    async def hang(*params):
        await asyncio.Event().wait()

    api = FakeDaemonAPI(getinfo=hang, z_gettotalbalance=hang)
    poller = SyncPoller(api, config.poller)
    seen = record_statuses(poller)

    await poller.start()
    try:
        await poller.status.wait_for(lambda s: s.consecutive_failures >= 4, timeout=2.0)
    finally:
        await poller.stop()

    assert poller.status.value.skipped_ticks == 0
    assert (ConnectionHealth.NO_CONNECTION, 3) in seen
    assert all(health is ConnectionHealth.DEGRADED for health, failures in seen if failures < 3)


@pytest.mark.asyncio
async def test_unreachable_for_four_polls_loses_connection_at_the_third(config):
    config.poller.interval = 0.05
    refused = RPCConnectionError("Connection refused")
    api = FakeDaemonAPI(
        getinfo=[info_reply(blocks=10), refused, refused, refused, refused, info_reply(blocks=11)],
        z_gettotalbalance=balance_reply()
    )
    poller = SyncPoller(api, config.poller)
    seen = record_statuses(poller)

    await poller.start()
    try:
        recovered = await poller.snapshot.wait_for(lambda s: s is not None and s.block_height == 11, timeout=2.0)
    finally:
        await poller.stop()

    transitions = [entry for i, entry in enumerate(seen) if i == 0 or entry != seen[i - 1]]
    assert transitions == [
        (ConnectionHealth.ONLINE, 0),
        (ConnectionHealth.DEGRADED, 1),
        (ConnectionHealth.DEGRADED, 2),
        (ConnectionHealth.NO_CONNECTION, 3),
        (ConnectionHealth.NO_CONNECTION, 4),
        (ConnectionHealth.ONLINE, 0),
    ]
    assert recovered.block_height == 11
    assert poller.status.value.skipped_ticks == 0
