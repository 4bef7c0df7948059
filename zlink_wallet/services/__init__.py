from .transaction import JobHandle, TransactionOrchestrator
from .scheduler import Frequency, RecurringPayment, RecurringPaymentScheduler

__all__ = [
    'JobHandle',
    'TransactionOrchestrator',
    'Frequency',
    'RecurringPayment',
    'RecurringPaymentScheduler'
]
