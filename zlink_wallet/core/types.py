# zlink_wallet/core/types.py
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Tuple, Union


class AddressKind(Enum):
    TRANSPARENT = "transparent"
    SHIELDED = "shielded"


class FeeKind(Enum):
    DEFAULT = "default"
    CUSTOM = "custom"


@dataclass(frozen=True)
class FeePolicy:
    kind: FeeKind = FeeKind.DEFAULT
    amount: Optional[Decimal] = None

    @classmethod
    def default(cls) -> 'FeePolicy':
        return cls()

    @classmethod
    def custom(cls, amount: Union[str, Decimal]) -> 'FeePolicy':
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            # Rejected as an invalid fee when the request is validated
            value = None
        return cls(FeeKind.CUSTOM, value)

    @property
    def is_custom(self) -> bool:
        return self.kind is FeeKind.CUSTOM


@dataclass(frozen=True)
class Recipient:
    address: str
    amount: Union[str, Decimal]
    memo: Optional[str] = None


@dataclass(frozen=True)
class TransactionRequest:
    """One send: a source address and an ordered list of recipients"""
    from_address: str
    recipients: Tuple[Recipient, ...]
    fee: FeePolicy = field(default_factory=FeePolicy.default)

    def __post_init__(self):
        # Accept any iterable but store an immutable tuple
        object.__setattr__(self, 'recipients', tuple(self.recipients))

    @property
    def has_memo(self) -> bool:
        return any(r.memo for r in self.recipients)


class JobStatus(Enum):
    QUEUED = "queued"
    BUILDING = "building"
    BROADCASTING = "broadcasting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def in_flight(self) -> bool:
        return self in (JobStatus.BUILDING, JobStatus.BROADCASTING)


@dataclass(frozen=True)
class TransactionJob:
    job_id: str
    request: TransactionRequest
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    operation_id: Optional[str] = None
    txid: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[Union[int, str]] = None
    warnings: Tuple[str, ...] = ()
    submitted_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    def advance(self, **changes) -> 'TransactionJob':
        """New job value; progress never goes backwards"""
        if 'progress' in changes:
            changes['progress'] = max(self.progress, min(100, int(changes['progress'])))
        return replace(self, **changes)
