from .types import AddressKind, FeeKind, FeePolicy, JobStatus, Recipient, TransactionJob, TransactionRequest
from .exceptions import (
    InvalidAddressError,
    InvalidAmountError,
    InvalidFeeError,
    JobNotCancellableError,
    JobNotFoundError,
    MemoError,
    PaymentURIError,
    TransactionError,
    ValidationError,
    ValidationReason,
    WalletError,
)

__all__ = [
    'AddressKind',
    'FeeKind',
    'FeePolicy',
    'JobStatus',
    'Recipient',
    'TransactionJob',
    'TransactionRequest',
    'WalletError',
    'ValidationError',
    'ValidationReason',
    'InvalidAddressError',
    'InvalidAmountError',
    'InvalidFeeError',
    'MemoError',
    'TransactionError',
    'JobNotFoundError',
    'JobNotCancellableError',
    'PaymentURIError'
]
