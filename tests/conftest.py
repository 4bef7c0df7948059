import asyncio
import json
import hashlib
from typing import Any, Dict, List, Optional

import base58
import pytest

from zlink_node.config.config_manager import Config
from zlink_node.core.types import NodeEndpoint
from zlink_relay.envelope import DIRECTION_DEVICE, EnvelopeCodec
from zlink_relay.types import EnvelopeKind, RelayEnvelope, TransportKind

SHIELDED_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def t_address(seed: str = "a", version: int = 60) -> str:
    payload = bytes([version]) + hashlib.sha256(seed.encode()).digest()[:20]
    return base58.b58encode_check(payload).decode()


def z_address(seed: str = "a") -> str:
    digest = hashlib.sha256(seed.encode()).digest() * 3
    return "zs1" + "".join(SHIELDED_CHARSET[b % 32] for b in digest[:75])


class FakeDaemonAPI:
    """
    Stand-in for DaemonAPI. Each method answers from a per-method script:
    a list is consumed front to back (the last entry repeats), entries that
    are exceptions are raised and callables are called with the params.
    """

    def __init__(self, endpoint: Optional[NodeEndpoint] = None, **scripts):
        self.endpoint = endpoint or NodeEndpoint()
        self.scripts: Dict[str, List[Any]] = {}
        self.calls: List[tuple] = []
        self.closed = False
        for method, script in scripts.items():
            self.script(method, script)

    def script(self, method: str, script: Any):
        self.scripts[method] = list(script) if isinstance(script, list) else [script]

    def called(self, method: str) -> List[tuple]:
        return [params for name, params in self.calls if name == method]

    async def _answer(self, method: str, *params):
        self.calls.append((method, params))
        await asyncio.sleep(0)
        script = self.scripts.get(method)
        if not script:
            raise AssertionError(f"No scripted answer for {method}")
        entry = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            entry = entry(*params)
            if asyncio.iscoroutine(entry):
                entry = await entry
        return entry

    async def close(self):
        self.closed = True

    async def get_info(self, timeout=None):
        return await self._answer("getinfo")

    async def get_total_balance(self, minconf=1, timeout=None):
        return await self._answer("z_gettotalbalance", minconf)

    async def send_many(self, from_address, amounts, minconf=1, fee=None):
        return await self._answer("z_sendmany", from_address, amounts, minconf, fee)

    async def get_operation_status(self, operation_ids, timeout=None):
        return await self._answer("z_getoperationstatus", operation_ids)

    async def get_operation_result(self, operation_ids):
        return await self._answer("z_getoperationresult", operation_ids)

    async def stop(self):
        return await self._answer("stop")


def info_reply(blocks=100, longest=100, connections=8, notarized=90) -> Dict[str, Any]:
    return {
        "blocks": blocks,
        "longestchain": longest,
        "connections": connections,
        "notarized": notarized,
        "protocolversion": 170010,
        "KMDversion": "0.8.0",
        "name": "HUSH3",
    }


def balance_reply(transparent="1.5", private="2.25", total="3.75") -> Dict[str, Any]:
    return {"transparent": transparent, "private": private, "total": total}


@pytest.fixture
def config(tmp_path) -> Config:
    cfg = Config()
    cfg.daemon.data_dir = str(tmp_path / "chain")
    cfg.daemon.params_dir = str(tmp_path / "params")
    cfg.daemon.fetch_params = False
    cfg.daemon.readiness_base_delay = 0.0
    cfg.daemon.readiness_max_delay = 0.0
    cfg.poller.interval = 0.5
    cfg.transactions.progress_interval = 0.0
    return cfg


@pytest.fixture
def fake_api() -> FakeDaemonAPI:
    return FakeDaemonAPI(getinfo=info_reply(), z_gettotalbalance=balance_reply())


async def no_sleep(delay):
    await asyncio.sleep(0)


class FakeTransport:
    """In-memory pairing transport; frames the client sends are kept in `sent`"""

    def __init__(self, endpoint: str = "ws://192.168.1.5:8777"):
        self.kind = TransportKind.DIRECT
        self.endpoint = endpoint
        self.sent: List[str] = []
        self.started = False
        self.closed = False
        self.on_frame = None
        self.on_link = None

    def set_handlers(self, on_frame, on_link=None):
        self.on_frame = on_frame
        self.on_link = on_link

    @property
    def linked(self) -> bool:
        return self.started and not self.closed

    async def start(self) -> str:
        self.started = True
        return self.endpoint

    async def send_frame(self, frame: str):
        self.sent.append(frame)

    async def close(self):
        self.closed = True

    async def deliver(self, frame: str):
        await self.on_frame(frame)


class Device:
    """The companion device's side of a session"""

    def __init__(self, descriptor, transport: Optional[FakeTransport] = None):
        self.codec = EnvelopeCodec(descriptor.key, descriptor.token, DIRECTION_DEVICE)
        self.token = descriptor.token
        self.transport = transport
        self.sequence = 0

    def frame(self, kind, payload: bytes = b"", sequence: Optional[int] = None) -> str:
        if sequence is None:
            self.sequence += 1
            sequence = self.sequence
        return self.codec.encode(RelayEnvelope(self.token, sequence, kind, payload))

    async def send(self, kind, payload: bytes = b"", sequence: Optional[int] = None):
        await self.transport.deliver(self.frame(kind, payload, sequence))

    async def hello(self, name: str = "phone"):
        await self.send(EnvelopeKind.HELLO, ('{"name": "%s"}' % name).encode())

    def received(self):
        return [self.codec.decode(frame) for frame in self.transport.sent]

    def received_data(self):
        return [json.loads(env.payload) for env in self.received() if env.kind is EnvelopeKind.DATA]


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


async def park(delay):
    await asyncio.Event().wait()
