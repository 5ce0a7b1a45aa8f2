from __future__ import annotations

from typing import Callable, Generic, List, TypeVar

T = TypeVar("T")

Listener = Callable[[T], None]


class Observable(Generic[T]):
    """Holds a value and notifies listeners when it changes."""

    def __init__(self, value: T) -> None:
        self._value = value
        self._listeners: List[Listener] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return unsubscribe

    def set(self, value: T, *, force: bool = False) -> None:
        if not force and value == self._value:
            return
        self._value = value
        for listener in list(self._listeners):
            listener(value)

    def clear_listeners(self) -> None:
        self._listeners.clear()
