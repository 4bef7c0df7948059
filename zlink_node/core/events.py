# zlink_node/core/events.py - Publish-by-replacement state holders
import asyncio
import logging
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger("zlink_node.events")

T = TypeVar("T")


class StatePublisher(Generic[T]):
    """
    Holds the current value of a piece of component state.

    The owning component replaces the value as a whole with publish();
    readers get the current value or subscribe for every replacement.
    Values are expected to be immutable, so readers never need locks.
    """

    def __init__(self, name: str, initial: T):
        self.name = name
        self._value = initial
        self._subscribers: List[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def publish(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception as e:
                logger.error(f"Subscriber of {self.name} failed: {e}", exc_info=True)

    def subscribe(self, callback: Callable[[T], None], replay: bool = False) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it"""
        self._subscribers.append(callback)
        if replay:
            callback(self._value)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def wait_for(self, predicate: Callable[[T], bool],
                       timeout: Optional[float] = None) -> T:
        """Wait until the published value satisfies predicate"""
        if predicate(self._value):
            return self._value

        future = asyncio.get_running_loop().create_future()

        def check(value: T):
            if not future.done() and predicate(value):
                future.set_result(value)

        unsubscribe = self.subscribe(check)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            unsubscribe()

    def __repr__(self) -> str:
        return f"StatePublisher({self.name}={self._value!r})"
