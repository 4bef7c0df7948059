from zlink_wallet.core.types import FeePolicy, JobStatus, Recipient, TransactionJob, TransactionRequest
from zlink_wallet.core.exceptions import TransactionError, ValidationError, ValidationReason, WalletError
from zlink_wallet.services.transaction import JobHandle, TransactionOrchestrator
from zlink_wallet.services.scheduler import Frequency, RecurringPaymentScheduler

__version__ = "1.0.0"
__all__ = [
    'FeePolicy',
    'JobStatus',
    'Recipient',
    'TransactionJob',
    'TransactionRequest',
    'TransactionError',
    'ValidationError',
    'ValidationReason',
    'WalletError',
    'JobHandle',
    'TransactionOrchestrator',
    'Frequency',
    'RecurringPaymentScheduler'
]
