# zlink_relay/sequencing.py - Per-session envelope ordering
import logging
from typing import Dict, Generic, List, TypeVar

logger = logging.getLogger("zlink_relay.sequencing")

T = TypeVar("T")


class OutboundSequence:
    """Monotonic sequence numbers for one direction, starting at 1"""

    def __init__(self):
        self._last = 0

    def next(self) -> int:
        self._last += 1
        return self._last

    @property
    def last(self) -> int:
        return self._last


class InboundSequencer(Generic[T]):
    """
    Releases items in sequence order.

    Items at or below the last released sequence are duplicates and are
    dropped. Items ahead of a gap are held until the gap fills; when more
    than max_pending are held, the gap is given up and delivery resumes
    from the lowest held sequence.
    """

    def __init__(self, max_pending: int = 256, last_applied: int = 0):
        self.max_pending = max_pending
        self.last_applied = last_applied
        self._pending: Dict[int, T] = {}
        self.duplicates = 0
        self.gaps_skipped = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def accept(self, sequence: int, item: T) -> List[T]:
        if sequence <= self.last_applied or sequence in self._pending:
            self.duplicates += 1
            logger.debug(f"Dropping duplicate envelope {sequence} (last applied {self.last_applied})")
            return []

        self._pending[sequence] = item
        if len(self._pending) > self.max_pending:
            lowest = min(self._pending)
            logger.warning(f"Giving up on envelopes {self.last_applied + 1}..{lowest - 1}")
            self.gaps_skipped += lowest - self.last_applied - 1
            self.last_applied = lowest - 1
        return self._drain()

    def _drain(self) -> List[T]:
        ready = []
        while self.last_applied + 1 in self._pending:
            self.last_applied += 1
            ready.append(self._pending.pop(self.last_applied))
        return ready
