from enum import Enum
from typing import Optional

from zlink_node.core.exceptions import ZlinkError


class WalletError(ZlinkError):
    """Base exception for wallet errors"""
    tag = "wallet"


class ValidationReason(Enum):
    INVALID_ADDRESS = "invalid_address"
    MEMO_ON_NON_SHIELDED = "memo_on_non_shielded"
    INVALID_AMOUNT = "invalid_amount"
    INVALID_FROM_ADDRESS = "invalid_from_address"
    NO_RECIPIENTS = "no_recipients"
    MEMO_TOO_LONG = "memo_too_long"
    INVALID_FEE = "invalid_fee"


class ValidationError(WalletError):
    """Request rejected before admission; never reaches the daemon"""
    tag = "validation"

    def __init__(self, reason: ValidationReason, message: str,
                 recipient_index: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.recipient_index = recipient_index

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason.value}, recipient_index={self.recipient_index})"


class InvalidAddressError(ValidationError):
    pass


class InvalidAmountError(ValidationError):
    pass


class MemoError(ValidationError):
    pass


class InvalidFeeError(ValidationError):
    pass


class TransactionError(WalletError):
    """Daemon-reported failure of one job; the message is kept verbatim"""
    tag = "transaction"

    def __init__(self, message: str, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message, detail)
        self.code = code


class JobNotFoundError(TransactionError):
    pass


class JobNotCancellableError(TransactionError):
    """Job already left the queue"""


class PaymentURIError(WalletError):
    tag = "payment_uri"
