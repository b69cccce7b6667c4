"""Observable value used for every reactive field in the engine."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

Listener = Callable[[T], object]


class Signal(Generic[T]):
    """A value holder that notifies subscribers when the value changes.

    Assigning a value equal to the current one is a no-op, so listeners
    only see real changes.

    Usage:
        status = Signal(QueryStatus.IDLE)
        unsubscribe = status.subscribe(lambda s: print("now", s))
        status.value = QueryStatus.LOADING  # prints "now QueryStatus.LOADING"
        unsubscribe()
    """

    __slots__ = ("_disposed", "_listeners", "_value", "name")

    def __init__(self, value: T, *, name: str | None = None) -> None:
        self._value = value
        self._listeners: list[Listener[T]] = []
        self._disposed = False
        self.name = name

    @property
    def value(self) -> T:
        return self._value

    @value.setter
    def value(self, new_value: T) -> None:
        self.set(new_value)

    def set(self, new_value: T) -> bool:
        """Set the value. Returns True if listeners were notified."""
        if self._disposed:
            return False
        if _same(self._value, new_value):
            return False
        self._value = new_value
        self._notify()
        return True

    def refresh(self) -> None:
        """Notify listeners without changing the value."""
        if not self._disposed:
            self._notify()

    def subscribe(self, listener: Listener[T]) -> Callable[[], None]:
        """Subscribe to changes. Returns a callable that unsubscribes."""
        if self._disposed:
            return lambda: None
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener[T]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        """Drop all listeners; later assignments are ignored."""
        self._disposed = True
        self._listeners.clear()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._value)
            except Exception:
                logger.exception("Error in listener of signal %s", self.name or "")

    def __repr__(self) -> str:
        return f"Signal({self._value!r})"


def _same(old: object, new: object) -> bool:
    if old is new:
        return True
    try:
        return bool(old == new)
    except Exception:
        return False
