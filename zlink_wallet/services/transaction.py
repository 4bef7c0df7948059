"""
Transaction orchestration

Validated send requests are queued and built one at a time by the daemon
(z_sendmany); a single worker watches each operation until it completes
or fails and publishes the job list by replacement.
"""

import asyncio
import time
import uuid
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from zlink_node.config.config_manager import TransactionConfig
from zlink_node.core.events import StatePublisher
from zlink_node.core.exceptions import (
    RPCApplicationError,
    RPCConnectionError,
    RPCError,
)
from zlink_node.core.types import SyncPhase, SyncSnapshot
from zlink_node.rpc.methods import DaemonAPI
from zlink_wallet.core.exceptions import (
    JobNotCancellableError,
    JobNotFoundError,
)
from zlink_wallet.core.types import (
    JobStatus,
    TransactionJob,
    TransactionRequest,
)
from zlink_wallet.utils.validation import AddressValidator, encode_memo, validate_request

logger = logging.getLogger("zlink_wallet.transaction")

SYNCING_WARNING = (
    "You are sending a transaction while your node is still syncing. "
    "This may not work."
)

PROGRESS_QUEUED = 5
PROGRESS_EXECUTING = 10
PROGRESS_BUILD_CEILING = 90
PROGRESS_BROADCASTING = 95


def _error_code(error: RPCError):
    if isinstance(error, RPCApplicationError):
        return error.code
    return error.tag


class JobHandle:
    """Caller's view of one submitted job"""

    def __init__(self, orchestrator: 'TransactionOrchestrator', job_id: str):
        self._orchestrator = orchestrator
        self.job_id = job_id

    @property
    def job(self) -> TransactionJob:
        return self._orchestrator.get_job(self.job_id)

    @property
    def status(self) -> JobStatus:
        return self.job.status

    async def wait(self, timeout: Optional[float] = None) -> TransactionJob:
        """Wait for Completed or Failed; not waiting does not cancel the job"""
        def finished(jobs: Tuple[TransactionJob, ...]) -> bool:
            job = self._orchestrator.get_job(self.job_id)
            return job is None or job.status.is_terminal

        await self._orchestrator.jobs.wait_for(finished, timeout)
        return self.job

    def __repr__(self) -> str:
        return f"JobHandle({self.job_id})"


class TransactionOrchestrator:
    """FIFO queue of send jobs drained by exactly one worker"""

    def __init__(self, api: Optional[DaemonAPI], config: TransactionConfig,
                 sync_state: Optional[StatePublisher[Optional[SyncSnapshot]]] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.api = api
        self.config = config
        self.sync_state = sync_state
        self.sleep = sleep
        self.validator = AddressValidator(config.transparent_versions, config.shielded_prefix)

        self.jobs: StatePublisher[Tuple[TransactionJob, ...]] = StatePublisher("transaction_jobs", ())
        self._jobs: Dict[str, TransactionJob] = {}
        self._amounts: Dict[str, List[Decimal]] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        if self.running:
            return
        self.running = True
        self._worker_task = asyncio.create_task(self._worker())
        logger.info("Transaction worker started")

    async def stop(self):
        self.running = False
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        for job in list(self._jobs.values()):
            if job.status is JobStatus.QUEUED:
                self._finish_failed(job.job_id, "The client shut down before the transaction was started",
                                    "shutdown")
        logger.info("Transaction worker stopped")

    def set_api(self, api: DaemonAPI):
        """Point the worker at a new daemon connection"""
        self.api = api

    def get_job(self, job_id: str) -> Optional[TransactionJob]:
        return self._jobs.get(job_id)

    def submit(self, request: TransactionRequest) -> JobHandle:
        """
        Validate and queue a request

        Raises:
            ValidationError: the request was rejected and no job was created
        """
        amounts = validate_request(request, self.validator, self.config.allow_custom_fees)

        warnings = []
        snapshot = self.sync_state.value if self.sync_state is not None else None
        if snapshot is not None and snapshot.sync_phase is not SyncPhase.SYNCED:
            warnings.append(SYNCING_WARNING)

        job = TransactionJob(job_id=uuid.uuid4().hex, request=request, warnings=tuple(warnings))
        self._amounts[job.job_id] = amounts
        self._store(job)
        self._queue.put_nowait(job.job_id)
        logger.info(f"Queued transaction job {job.job_id} with {len(request.recipients)} recipient(s)")
        return JobHandle(self, job.job_id)

    def cancel(self, job_id: str) -> TransactionJob:
        """Drop a job that has not been started yet"""
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Unknown transaction job {job_id}")
        if job.status is not JobStatus.QUEUED:
            raise JobNotCancellableError(
                f"Transaction job {job_id} is already {job.status.value} and cannot be cancelled")
        return self._finish_failed(job_id, "Cancelled before the transaction was started", "cancelled")

    def _store(self, job: TransactionJob):
        self._jobs[job.job_id] = job
        self._prune_history()
        self.jobs.publish(tuple(self._jobs.values()))

    def _update(self, job_id: str, **changes) -> TransactionJob:
        job = self._jobs[job_id].advance(**changes)
        self._store(job)
        return job

    def _finish_failed(self, job_id: str, error: str, code=None) -> TransactionJob:
        logger.warning(f"Transaction job {job_id} failed: {error}")
        self._amounts.pop(job_id, None)
        return self._update(job_id, status=JobStatus.FAILED, error=error, error_code=code,
                            finished_at=time.time())

    def _prune_history(self):
        finished = [job_id for job_id, job in self._jobs.items() if job.status.is_terminal]
        excess = len(finished) - self.config.history_limit
        for job_id in finished[:max(0, excess)]:
            del self._jobs[job_id]

    async def _worker(self):
        while self.running:
            job_id = await self._queue.get()
            try:
                job = self._jobs.get(job_id)
                if job is None or job.status is not JobStatus.QUEUED:
                    continue
                await self._execute(job)
            except Exception as e:
                logger.error(f"Unexpected error processing transaction job {job_id}: {e}", exc_info=True)
                if job_id in self._jobs and not self._jobs[job_id].status.is_terminal:
                    self._finish_failed(job_id, str(e), "internal")
            finally:
                self._queue.task_done()

    def _send_params(self, job: TransactionJob) -> Tuple[List[Dict[str, Any]], Decimal]:
        outputs = []
        for recipient, amount in zip(job.request.recipients, self._amounts[job.job_id]):
            output: Dict[str, Any] = {"address": recipient.address, "amount": float(amount)}
            if recipient.memo:
                output["memo"] = encode_memo(recipient.memo)
            outputs.append(output)

        if job.request.fee.is_custom:
            fee = job.request.fee.amount
        else:
            fee = Decimal(self.config.default_fee)
        return outputs, fee

    async def _execute(self, job: TransactionJob):
        job_id = job.job_id
        outputs, fee = self._send_params(job)
        self._update(job_id, status=JobStatus.BUILDING, started_at=time.time())
        logger.info(f"Building transaction job {job_id}")

        try:
            operation_id = await self.api.send_many(job.request.from_address, outputs,
                                                    self.config.minconf, fee)
        except RPCError as e:
            self._finish_failed(job_id, e.message, _error_code(e))
            return

        self._update(job_id, operation_id=operation_id, progress=PROGRESS_QUEUED)
        await self._watch(job_id, operation_id)

    async def _watch(self, job_id: str, operation_id: str):
        """Follow z_getoperationstatus until the operation finishes"""
        started = time.monotonic()
        failures = 0

        while True:
            try:
                statuses = await self.api.get_operation_status([operation_id],
                                                               timeout=self.config.status_timeout)
                entry = next((s for s in statuses or [] if s.get("id") == operation_id), None)
                if entry is None:
                    raise RPCConnectionError(f"Operation {operation_id} not reported by the daemon",
                                             "z_getoperationstatus")
            except RPCConnectionError as e:
                failures += 1
                if failures > self.config.max_status_failures:
                    self._finish_failed(job_id, f"Lost track of operation {operation_id}: {e}", e.tag)
                    return
                logger.debug(f"Status poll for {operation_id} failed ({failures}): {e}")
                await self.sleep(self.config.progress_interval)
                continue
            except RPCError as e:
                self._finish_failed(job_id, e.message, _error_code(e))
                return

            failures = 0
            status = entry.get("status")

            if status == "success":
                result = entry.get("result") or {}
                self._update(job_id, status=JobStatus.BROADCASTING, progress=PROGRESS_BROADCASTING)
                self._amounts.pop(job_id, None)
                self._update(job_id, status=JobStatus.COMPLETED, progress=100,
                             txid=result.get("txid"), finished_at=time.time())
                logger.info(f"Transaction job {job_id} completed: {result.get('txid')}")
                await self._clear_operation(operation_id)
                return

            if status in ("failed", "cancelled"):
                error = entry.get("error") or {}
                message = error.get("message") or f"Operation {status}"
                self._finish_failed(job_id, message, error.get("code", status))
                await self._clear_operation(operation_id)
                return

            self._update(job_id, progress=self._estimate_progress(status, time.monotonic() - started))
            await self.sleep(self.config.progress_interval)

    def _estimate_progress(self, status: Optional[str], elapsed: float) -> int:
        if status != "executing":
            return PROGRESS_QUEUED
        expected = max(self.config.expected_build_seconds, 1.0)
        span = PROGRESS_BUILD_CEILING - PROGRESS_EXECUTING
        return PROGRESS_EXECUTING + int(min(1.0, elapsed / expected) * span)

    async def _clear_operation(self, operation_id: str):
        try:
            await self.api.get_operation_result([operation_id])
        except RPCError as e:
            logger.debug(f"Could not clear operation {operation_id}: {e}")

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts
