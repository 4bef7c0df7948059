import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Iterable, List, Optional, Union

import base58

from zlink_wallet.core.exceptions import (
    InvalidAddressError,
    InvalidAmountError,
    InvalidFeeError,
    MemoError,
    ValidationError,
    ValidationReason,
)
from zlink_wallet.core.types import AddressKind, TransactionRequest

# bech32 data characters
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
SHIELDED_DATA_LENGTH = 75

MAX_MEMO_BYTES = 512
AMOUNT_PLACES = 8
MAX_MONEY = Decimal("21000000")

COIN_QUANTUM = Decimal(1).scaleb(-AMOUNT_PLACES)


class AddressValidator:
    """Classifies transparent (base58check) and shielded (sapling) addresses"""

    def __init__(self, transparent_versions: Iterable[int] = (60, 85), shielded_prefix: str = "zs"):
        self.transparent_versions = frozenset(transparent_versions)
        self.shielded_prefix = shielded_prefix
        self._shielded_re = re.compile(
            rf'^{re.escape(shielded_prefix)}1[{BECH32_CHARSET}]{{{SHIELDED_DATA_LENGTH}}}$')

    def kind(self, address: str) -> Optional[AddressKind]:
        if not isinstance(address, str) or not address:
            return None
        if self._shielded_re.match(address):
            return AddressKind.SHIELDED
        if self._is_transparent(address):
            return AddressKind.TRANSPARENT
        return None

    def _is_transparent(self, address: str) -> bool:
        if not re.match(r'^[1-9A-HJ-NP-Za-km-z]{26,36}$', address):
            return False
        try:
            payload = base58.b58decode_check(address)
        except ValueError:
            return False
        return len(payload) == 21 and payload[0] in self.transparent_versions

    def is_valid(self, address: str) -> bool:
        return self.kind(address) is not None

    def is_shielded(self, address: str) -> bool:
        return self.kind(address) is AddressKind.SHIELDED


def parse_amount(value: Union[str, int, Decimal]) -> Optional[Decimal]:
    """Positive amount with at most the chain's precision, else None"""
    if isinstance(value, float) or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0 or amount > MAX_MONEY:
        return None
    if amount != amount.quantize(COIN_QUANTUM, rounding=ROUND_DOWN):
        return None
    return amount


def encode_memo(memo: str) -> str:
    """Memo as the hex string z_sendmany expects"""
    return memo.encode('utf-8').hex()


def validate_request(request: TransactionRequest, validator: AddressValidator,
                     allow_custom_fees: bool = False) -> List[Decimal]:
    """
    Check a request before it is admitted to the queue

    Returns:
        The parsed recipient amounts, in recipient order

    Raises:
        ValidationError: with the reason and, where it applies, the recipient index
    """
    from_kind = validator.kind(request.from_address)
    if from_kind is None:
        raise InvalidAddressError(ValidationReason.INVALID_FROM_ADDRESS,
                                  f"Invalid from address: {request.from_address!r}")

    if not request.recipients:
        raise ValidationError(ValidationReason.NO_RECIPIENTS, "No recipients specified")

    amounts = []
    for index, recipient in enumerate(request.recipients):
        kind = validator.kind(recipient.address)
        if kind is None:
            raise InvalidAddressError(ValidationReason.INVALID_ADDRESS,
                                      f"Recipient {index + 1} has an invalid address: {recipient.address!r}",
                                      recipient_index=index)

        if recipient.memo:
            if kind is not AddressKind.SHIELDED or from_kind is not AddressKind.SHIELDED:
                raise MemoError(ValidationReason.MEMO_ON_NON_SHIELDED,
                                f"Recipient {index + 1} has a memo, but memos can only be sent "
                                f"between shielded addresses",
                                recipient_index=index)
            if len(recipient.memo.encode('utf-8')) > MAX_MEMO_BYTES:
                raise MemoError(ValidationReason.MEMO_TOO_LONG,
                                f"Memo for recipient {index + 1} exceeds {MAX_MEMO_BYTES} bytes",
                                recipient_index=index)

        amount = parse_amount(recipient.amount)
        if amount is None:
            raise InvalidAmountError(ValidationReason.INVALID_AMOUNT,
                                     f"Recipient {index + 1} has an invalid amount: {recipient.amount!r}",
                                     recipient_index=index)
        amounts.append(amount)

    if request.fee.is_custom:
        if not allow_custom_fees:
            raise InvalidFeeError(ValidationReason.INVALID_FEE,
                                  "Custom fees are not enabled in the configuration")
        fee = request.fee.amount
        if (fee is None or not fee.is_finite() or fee < 0 or fee > MAX_MONEY
                or fee != fee.quantize(COIN_QUANTUM)):
            raise InvalidFeeError(ValidationReason.INVALID_FEE, f"Invalid fee: {fee}")

    return amounts
