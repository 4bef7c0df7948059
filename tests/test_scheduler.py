from datetime import datetime

import pytest

from conftest import FakeDaemonAPI, t_address, z_address
from zlink_wallet.core.exceptions import ValidationError, WalletError
from zlink_wallet.core.types import FeePolicy, JobStatus, Recipient, TransactionRequest
from zlink_wallet.services.scheduler import (
    Frequency,
    RecurringPaymentScheduler,
    add_months,
    occurrence,
)
from zlink_wallet.services.transaction import TransactionOrchestrator


def rent() -> TransactionRequest:
    return TransactionRequest(z_address("me"), [Recipient(z_address("landlord"), "10", "rent")])


@pytest.fixture
def orchestrator(config):
    return TransactionOrchestrator(FakeDaemonAPI(), config.transactions)


def test_month_end_is_clamped():
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)
    assert add_months(datetime(2024, 11, 15), 3) == datetime(2025, 2, 15)


def test_occurrences_do_not_drift():
    start = datetime(2024, 1, 31, 9, 0)
    monthly = [occurrence(start, Frequency.MONTHLY, i) for i in range(4)]
    assert [d.day for d in monthly] == [31, 29, 31, 30]
    assert occurrence(start, Frequency.WEEKLY, 2) == datetime(2024, 2, 14, 9, 0)
    assert occurrence(start, Frequency.DAILY, 1) == datetime(2024, 2, 1, 9, 0)
    assert occurrence(datetime(2024, 2, 29), Frequency.YEARLY, 1) == datetime(2025, 2, 28)


@pytest.mark.asyncio
async def test_schedule_rejects_bad_plans(orchestrator):
    scheduler = RecurringPaymentScheduler(orchestrator)
    with pytest.raises(WalletError):
        scheduler.schedule(rent(), Frequency.MONTHLY, datetime(2024, 1, 1), 0)

    bad = TransactionRequest(t_address("me"), [Recipient(z_address("x"), "1", "memo")])
    with pytest.raises(ValidationError):
        scheduler.schedule(bad, Frequency.MONTHLY, datetime(2024, 1, 1), 3)
    assert scheduler.payments.value == ()


@pytest.mark.asyncio
async def test_due_payment_is_submitted_once(orchestrator):
    scheduler = RecurringPaymentScheduler(orchestrator)
    plan = scheduler.schedule(rent(), Frequency.MONTHLY, datetime(2024, 1, 1), 3)
    assert plan.describe() == "Every month, starting 2024-01-01, for 3 payments"

    assert scheduler.run_due(datetime(2023, 12, 31)) == []
    handles = scheduler.run_due(datetime(2024, 1, 1, 12))
    assert len(handles) == 1
    assert handles[0].status is JobStatus.QUEUED
    assert scheduler.run_due(datetime(2024, 1, 15)) == []

    plan = scheduler.payments.value[0]
    assert plan.next_index == 1
    assert plan.next_due == datetime(2024, 2, 1)
    assert plan.job_ids == (handles[0].job_id,)


@pytest.mark.asyncio
async def test_missed_dates_are_skipped(orchestrator):
    scheduler = RecurringPaymentScheduler(orchestrator)
    scheduler.schedule(rent(), Frequency.WEEKLY, datetime(2024, 1, 1), 10)

    handles = scheduler.run_due(datetime(2024, 1, 23))

    assert len(handles) == 1
    plan = scheduler.payments.value[0]
    assert plan.skipped == 3
    assert plan.next_index == 4
    assert plan.next_due == datetime(2024, 1, 29)


@pytest.mark.asyncio
async def test_plan_finishes_after_last_payment(orchestrator):
    scheduler = RecurringPaymentScheduler(orchestrator)
    scheduler.schedule(rent(), Frequency.DAILY, datetime(2024, 1, 1), 2)

    scheduler.run_due(datetime(2024, 1, 1))
    scheduler.run_due(datetime(2024, 1, 2))
    assert scheduler.run_due(datetime(2024, 3, 1)) == []

    assert scheduler.payments.value == ()
    plan = scheduler.history[-1]
    assert plan.finished
    assert plan.next_due is None
    assert len(plan.job_ids) == 2


@pytest.mark.asyncio
async def test_rejected_payment_stops_the_plan(config, orchestrator):
    config.transactions.allow_custom_fees = True
    scheduler = RecurringPaymentScheduler(orchestrator)
    request = TransactionRequest(z_address("me"), [Recipient(z_address("gym"), "5")], FeePolicy.custom("0.001"))
    plan = scheduler.schedule(request, Frequency.MONTHLY, datetime(2024, 1, 1), 12)

    config.transactions.allow_custom_fees = False
    assert scheduler.run_due(datetime(2024, 1, 2)) == []

    assert scheduler.payments.value == ()
    retired = scheduler.history[-1]
    assert retired.payment_id == plan.payment_id
    assert retired.finished
    assert "fee" in retired.rejected.lower()
    assert orchestrator.jobs.value == ()

    # Not retried on later ticks
    assert scheduler.run_due(datetime(2024, 2, 2)) == []
    assert len(scheduler.history) == 1


@pytest.mark.asyncio
async def test_cancelled_plan_is_not_paid(orchestrator):
    scheduler = RecurringPaymentScheduler(orchestrator)
    plan = scheduler.schedule(rent(), Frequency.DAILY, datetime(2024, 1, 1), 5)

    assert scheduler.cancel(plan.payment_id)
    assert not scheduler.cancel(plan.payment_id)
    assert scheduler.run_due(datetime(2024, 1, 3)) == []
