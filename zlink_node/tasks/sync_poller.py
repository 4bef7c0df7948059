# zlink_node/tasks/sync_poller.py - Chain and wallet state polling

import asyncio
import time
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional

from zlink_node.config.config_manager import PollerConfig
from zlink_node.core.events import StatePublisher
from zlink_node.core.exceptions import RPCAuthError, RPCError
from zlink_node.core.types import (
    ConnectionHealth,
    DaemonVersions,
    PollerStatus,
    SyncPhase,
    SyncSnapshot,
    WalletBalances,
)
from zlink_node.rpc.methods import DaemonAPI

logger = logging.getLogger("zlink_node.sync_poller")


class MalformedStateError(RPCError):
    """Daemon answered with fields the snapshot cannot be built from"""


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise MalformedStateError(f"Invalid amount in balance reply: {value!r}", detail=str(e))


def build_snapshot(info: Dict[str, Any], balance: Dict[str, Any],
                   now: Optional[float] = None) -> SyncSnapshot:
    """Merge one tick's getinfo and z_gettotalbalance replies"""
    if not isinstance(info, dict):
        raise MalformedStateError(f"getinfo returned {type(info).__name__}, expected an object", "getinfo")
    if not isinstance(balance, dict):
        raise MalformedStateError(f"z_gettotalbalance returned {type(balance).__name__}, expected an object",
                                  "z_gettotalbalance")
    try:
        blocks = int(info["blocks"])
        longest = int(info.get("longestchain") or blocks)
        peers = int(info.get("connections", 0))
        notarized = int(info.get("notarized", 0))
        protocol = int(info.get("protocolversion", 0))
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedStateError("Incomplete getinfo reply", "getinfo", detail=str(e))

    if peers == 0:
        phase = SyncPhase.CONNECTING
    elif blocks < longest:
        phase = SyncPhase.SYNCING
    else:
        phase = SyncPhase.SYNCED

    versions = DaemonVersions(
        daemon=str(info.get("KMDversion") or info.get("version", "")),
        protocol=protocol,
        chain=str(info.get("name", ""))
    )
    balances = WalletBalances(
        transparent=_decimal(balance.get("transparent", 0)),
        shielded=_decimal(balance.get("private", 0)),
        total=_decimal(balance.get("total", 0))
    )

    return SyncSnapshot(
        block_height=blocks,
        longest_chain=max(longest, blocks),
        peer_count=peers,
        sync_phase=phase,
        notarized_height=notarized,
        notarized_lag=max(0, blocks - notarized) if notarized else 0,
        versions=versions,
        balances=balances,
        last_updated=now if now is not None else time.time()
    )


class SyncPoller:
    """
    Polls the daemon on a fixed schedule and publishes SyncSnapshot values.

    Each tick must finish by the time the next one is due, so the loop's
    ticks never overlap; schedule_tick() called while a tick is still
    running skips instead of queueing. Failures keep the previous snapshot
    and degrade the connection status; an authentication failure stops the
    loop.
    """

    def __init__(self, api: DaemonAPI, config: PollerConfig, minconf: int = 1,
                 snapshot: Optional[StatePublisher[Optional[SyncSnapshot]]] = None,
                 status: Optional[StatePublisher[PollerStatus]] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.api = api
        self.config = config
        self.minconf = minconf
        self.sleep = sleep

        # Publishers may outlive the poller when the endpoint is replaced
        self.snapshot = snapshot or StatePublisher("sync_snapshot", None)
        self.status = status or StatePublisher("poller_status", PollerStatus())

        self.running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None

    @property
    def interval(self) -> float:
        return self.config.interval

    async def start(self):
        if self.running:
            return
        self.running = True
        self._loop_task = asyncio.create_task(self._run())
        logger.info(f"Sync poller started (interval {self.interval}s)")

    async def stop(self):
        self.running = False
        for task in (self._loop_task, self._tick_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._tick_task = None
        logger.info("Sync poller stopped")

    async def _run(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while self.running:
            next_tick += self.interval
            if next_tick <= loop.time():
                # Fell behind the schedule; realign instead of bursting
                next_tick = loop.time() + self.interval
            # A tick must be over by the time the next one is due
            self.schedule_tick(deadline=next_tick)
            await self.sleep(next_tick - loop.time())
            await self._finish_tick()

    async def _finish_tick(self):
        # The tick is bounded by its deadline; at most its timeout is still unwinding
        task = self._tick_task
        if task is not None and not task.done():
            await asyncio.wait({task})

    def schedule_tick(self, deadline: Optional[float] = None) -> bool:
        """Start a tick unless the previous one is still running"""
        if self._tick_task is not None and not self._tick_task.done():
            status = self.status.value
            self.status.publish(PollerStatus(
                health=status.health,
                consecutive_failures=status.consecutive_failures,
                last_error=status.last_error,
                skipped_ticks=status.skipped_ticks + 1
            ))
            logger.debug("Previous poll still running, skipping tick")
            return False
        self._tick_task = asyncio.create_task(self.poll_once(deadline))
        return True

    async def poll_once(self, deadline: Optional[float] = None) -> Optional[SyncSnapshot]:
        """
        Run one tick; returns the published snapshot or None on failure.

        The tick is bounded by one interval, or by `deadline` (event loop
        time) when the loop passes the time the next tick is due.
        """
        timeout = self.interval
        if deadline is not None:
            timeout = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            snapshot = await asyncio.wait_for(self._collect(), timeout)
        except RPCAuthError as e:
            logger.error(f"Daemon rejected credentials, polling stopped: {e}")
            self.running = False
            self._publish_status(ConnectionHealth.AUTH_FAILED, self.status.value.consecutive_failures + 1, str(e))
            return None
        except asyncio.TimeoutError:
            self._record_failure(f"Poll did not complete within {self.interval}s")
            return None
        except RPCError as e:
            self._record_failure(str(e))
            return None

        self.snapshot.publish(snapshot)
        self._publish_status(ConnectionHealth.ONLINE, 0, None)
        return snapshot

    async def _collect(self) -> SyncSnapshot:
        calls = [
            asyncio.create_task(self.api.get_info(timeout=self.interval)),
            asyncio.create_task(self.api.get_total_balance(self.minconf, timeout=self.interval)),
        ]
        try:
            info, balance = await asyncio.gather(*calls)
        except BaseException:
            # One call failed or the tick timed out; the other must not outlive the tick
            for call in calls:
                call.cancel()
            await asyncio.gather(*calls, return_exceptions=True)
            raise
        return build_snapshot(info, balance)

    def _record_failure(self, error: str):
        failures = self.status.value.consecutive_failures + 1
        if failures >= self.config.failure_threshold:
            health = ConnectionHealth.NO_CONNECTION
        else:
            health = ConnectionHealth.DEGRADED
        logger.warning(f"Poll failed ({failures} in a row): {error}")
        self._publish_status(health, failures, error)

    def _publish_status(self, health: ConnectionHealth, failures: int, error: Optional[str]):
        current = self.status.value
        if current.health is not health:
            logger.info(f"Connection health: {current.health.value} -> {health.value}")
        self.status.publish(PollerStatus(
            health=health,
            consecutive_failures=failures,
            last_error=error,
            skipped_ticks=current.skipped_ticks
        ))
