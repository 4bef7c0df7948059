# zlink_wallet/services/scheduler.py - Recurring payments fed through the orchestrator's submit path

import asyncio
import calendar
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from zlink_node.core.events import StatePublisher
from zlink_wallet.core.exceptions import ValidationError, WalletError
from zlink_wallet.core.types import TransactionRequest
from zlink_wallet.services.transaction import JobHandle, TransactionOrchestrator
from zlink_wallet.utils.validation import validate_request

logger = logging.getLogger("zlink_wallet.scheduler")


class Frequency(Enum):
    DAILY = "day"
    WEEKLY = "week"
    MONTHLY = "month"
    YEARLY = "year"


def add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def occurrence(start: datetime, frequency: Frequency, index: int) -> datetime:
    """Date of the index-th payment (0-based); month ends clamp to shorter months"""
    if frequency is Frequency.DAILY:
        return start + timedelta(days=index)
    if frequency is Frequency.WEEKLY:
        return start + timedelta(weeks=index)
    if frequency is Frequency.MONTHLY:
        return add_months(start, index)
    return add_months(start, 12 * index)


@dataclass(frozen=True)
class RecurringPayment:
    payment_id: str
    request: TransactionRequest
    frequency: Frequency
    start: datetime
    count: int
    next_index: int = 0
    skipped: int = 0
    job_ids: Tuple[str, ...] = field(default_factory=tuple)
    rejected: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.rejected is not None or self.next_index >= self.count

    @property
    def next_due(self) -> Optional[datetime]:
        if self.finished:
            return None
        return occurrence(self.start, self.frequency, self.next_index)

    def due_dates(self) -> List[datetime]:
        return [occurrence(self.start, self.frequency, i) for i in range(self.count)]

    def describe(self) -> str:
        payments = "payment" if self.count == 1 else "payments"
        return (f"Every {self.frequency.value}, starting {self.start:%Y-%m-%d}, "
                f"for {self.count} {payments}")


class RecurringPaymentScheduler:
    """
    Holds recurring payment plans and submits each due payment as an
    ordinary one-shot request. Overdue dates missed while the client was
    not running are skipped; only the latest due one is paid.

    A plan leaves `payments` once it made its last payment or once a due
    payment was rejected; the most recent such plans are kept in `history`.
    """

    def __init__(self, orchestrator: TransactionOrchestrator, interval: float = 60.0,
                 clock: Callable[[], datetime] = datetime.now,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.orchestrator = orchestrator
        self.interval = interval
        self.clock = clock
        self.sleep = sleep
        self.payments: StatePublisher[Tuple[RecurringPayment, ...]] = StatePublisher("recurring_payments", ())
        self._plans: Dict[str, RecurringPayment] = {}
        self.history: Deque[RecurringPayment] = deque(maxlen=orchestrator.config.history_limit)
        self._task: Optional[asyncio.Task] = None
        self.running = False

    def schedule(self, request: TransactionRequest, frequency: Frequency,
                 start: datetime, count: int) -> RecurringPayment:
        if count < 1:
            raise WalletError(f"A recurring payment needs at least one payment, got {count}")
        validate_request(request, self.orchestrator.validator,
                         self.orchestrator.config.allow_custom_fees)

        plan = RecurringPayment(uuid.uuid4().hex, request, frequency, start, count)
        self._store(plan)
        logger.info(f"Scheduled recurring payment {plan.payment_id}: {plan.describe()}")
        return plan

    def cancel(self, payment_id: str) -> bool:
        if self._plans.pop(payment_id, None) is None:
            return False
        self.payments.publish(tuple(self._plans.values()))
        logger.info(f"Cancelled recurring payment {payment_id}")
        return True

    def _store(self, plan: RecurringPayment):
        self._plans[plan.payment_id] = plan
        self.payments.publish(tuple(self._plans.values()))

    def _retire(self, plan: RecurringPayment):
        self._plans.pop(plan.payment_id, None)
        self.history.append(plan)
        self.payments.publish(tuple(self._plans.values()))

    def run_due(self, now: Optional[datetime] = None) -> List[JobHandle]:
        """Submit every plan's latest due payment"""
        now = now or self.clock()
        handles = []

        for plan in list(self._plans.values()):
            due_index = None
            index = plan.next_index
            while index < plan.count and occurrence(plan.start, plan.frequency, index) <= now:
                due_index = index
                index += 1
            if due_index is None:
                continue

            skipped = due_index - plan.next_index
            if skipped:
                logger.warning(f"Recurring payment {plan.payment_id} missed {skipped} date(s), skipping them")

            try:
                handle = self.orchestrator.submit(plan.request)
            except ValidationError as e:
                logger.error(f"Recurring payment {plan.payment_id} rejected, plan stopped: {e}")
                self._retire(replace(plan, skipped=plan.skipped + skipped, rejected=str(e)))
                continue

            handles.append(handle)
            plan = replace(plan, next_index=due_index + 1, skipped=plan.skipped + skipped,
                           job_ids=plan.job_ids + (handle.job_id,))
            if plan.finished:
                logger.info(f"Recurring payment {plan.payment_id} made its last payment")
                self._retire(plan)
            else:
                self._store(plan)

        return handles

    async def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        while self.running:
            try:
                self.run_due()
            except Exception as e:
                logger.error(f"Error running recurring payments: {e}", exc_info=True)
            await self.sleep(self.interval)
