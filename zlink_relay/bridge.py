# zlink_relay/bridge.py - Wallet data exchanged with the paired device
import asyncio
import json
import logging
from dataclasses import asdict
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple

from zlink_node.core.events import StatePublisher
from zlink_node.core.types import SyncSnapshot
from zlink_wallet.core.exceptions import ValidationError
from zlink_wallet.core.types import FeePolicy, Recipient, TransactionJob, TransactionRequest
from zlink_wallet.services.transaction import TransactionOrchestrator
from zlink_relay.client import PairingRelayClient
from zlink_relay.exceptions import RelayError

logger = logging.getLogger("zlink_relay.bridge")


def _plain(value: Any) -> Any:
    """JSON-friendly copy of dataclass values"""
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def snapshot_message(snapshot: Optional[SyncSnapshot]) -> Optional[Dict[str, Any]]:
    if snapshot is None:
        return None
    message = _plain(asdict(snapshot))
    message["sync_progress"] = snapshot.sync_progress
    return message


def job_message(job: TransactionJob) -> Dict[str, Any]:
    return {
        "id": job.job_id,
        "status": job.status.value,
        "progress": job.progress,
        "txid": job.txid,
        "error": job.error,
        "warnings": list(job.warnings),
        "from": job.request.from_address,
        "recipients": [
            {"address": r.address, "amount": _plain(r.amount), "memo": r.memo}
            for r in job.request.recipients
        ],
        "submitted_at": job.submitted_at,
        "finished_at": job.finished_at,
    }


class AppDataBridge:
    """
    Answers device commands (getInfo, getTransactions, sendTx) and pushes
    snapshot and job updates while a device is paired. Sends go through
    the orchestrator's normal submit path.
    """

    def __init__(self, relay: PairingRelayClient,
                 snapshots: StatePublisher[Optional[SyncSnapshot]],
                 orchestrator: TransactionOrchestrator):
        self.relay = relay
        self.snapshots = snapshots
        self.orchestrator = orchestrator
        self._unsubscribe = []
        self._pending: Set[asyncio.Task] = set()

    def attach(self):
        self._unsubscribe = [
            self.relay.on_receive(self.handle_message),
            self.snapshots.subscribe(self._on_snapshot),
            self.orchestrator.jobs.subscribe(self._on_jobs),
        ]

    def detach(self):
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    async def handle_message(self, payload: bytes):
        try:
            message = json.loads(payload)
            command = message["command"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed message from device")
            return

        request_id = message.get("id")
        handler = {
            "getInfo": self._get_info,
            "getTransactions": self._get_transactions,
            "sendTx": self._send_tx,
        }.get(command)

        if handler is None:
            reply = {"error": {"tag": "command", "message": f"Unknown command {command}"}}
        else:
            reply = handler(message.get("params") or {})

        reply.update({"id": request_id, "command": command})
        await self._send(reply)

    def _get_info(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"result": snapshot_message(self.snapshots.value)}

    def _get_transactions(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"result": [job_message(job) for job in self.orchestrator.jobs.value]}

    def _send_tx(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            request = TransactionRequest(
                from_address=str(params["from"]),
                recipients=[
                    Recipient(str(r["address"]), str(r["amount"]), r.get("memo") or None)
                    for r in params["recipients"]
                ],
                fee=FeePolicy.custom(params["fee"]) if params.get("fee") is not None else FeePolicy.default()
            )
        except (KeyError, TypeError, ArithmeticError) as e:
            return {"error": {"tag": "validation", "message": f"Malformed sendTx request: {e}"}}

        try:
            handle = self.orchestrator.submit(request)
        except ValidationError as e:
            return {"error": {"tag": e.tag, "reason": e.reason.value,
                              "recipient": e.recipient_index, "message": e.message}}
        return {"result": {"job_id": handle.job_id}}

    def _on_snapshot(self, snapshot: Optional[SyncSnapshot]):
        if snapshot is not None:
            self._push({"event": "snapshot", "result": snapshot_message(snapshot)})

    def _on_jobs(self, jobs: Tuple[TransactionJob, ...]):
        self._push({"event": "transactions", "result": [job_message(job) for job in jobs]})

    def _push(self, message: Dict[str, Any]):
        if not self.relay.connected:
            return
        task = asyncio.create_task(self._send(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, message: Dict[str, Any]):
        try:
            await self.relay.send(message)
        except RelayError as e:
            logger.debug(f"Could not send {message.get('command') or message.get('event')} to device: {e}")
