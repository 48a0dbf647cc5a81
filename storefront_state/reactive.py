"""
Minimal reactive primitives.

Observable holds a value and notifies subscribers when it changes.
Computed derives a value from other observables and memoizes it until one
of its sources changes.
"""

from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class Observable(Generic[T]):
    """A value cell with change notification."""

    __slots__ = ("_value", "_callbacks")

    def __init__(self, initial_value: T) -> None:
        self._value = initial_value
        self._callbacks: list[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    @value.setter
    def value(self, new_value: T) -> None:
        if self._value is new_value or self._value == new_value:
            return
        self._value = new_value
        for callback in list(self._callbacks):
            callback(new_value)

    def get(self) -> T:
        return self.value

    def set(self, new_value: T) -> None:
        self.value = new_value

    def subscribe(self, callback: Callable[[T], None], call_immediately: bool = False) -> Unsubscribe:
        """
        Register a change callback.

        Args:
            callback: Called with the new value after every change
            call_immediately: Also call it once with the current value

        Returns:
            Unsubscribe function
        """
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        if call_immediately:
            callback(self.value)
        return unsubscribe

    def __repr__(self) -> str:
        return f"Observable({self._value!r})"


class Computed(Observable[T]):
    """
    Derived value over one or more sources.

    The derivation runs lazily on read and is cached until a source
    notifies. Subscribers of a Computed are notified only when the
    recomputed value actually differs.
    """

    __slots__ = ("_fn", "_sources", "_dirty", "_source_unsubs")

    def __init__(self, fn: Callable[..., T], *sources: Observable[Any]) -> None:
        super().__init__(None)  # type: ignore[arg-type]
        self._fn = fn
        self._sources = sources
        self._dirty = True
        self._source_unsubs = [source.subscribe(self._invalidate) for source in sources]

    def _invalidate(self, _: Any) -> None:
        self._dirty = True
        if self._callbacks:
            previous = self._value
            current = self.value
            if not (previous is current or previous == current):
                for callback in list(self._callbacks):
                    callback(current)

    @property
    def value(self) -> T:
        if self._dirty:
            self._value = self._fn(*(source.value for source in self._sources))
            self._dirty = False
        return self._value

    @value.setter
    def value(self, new_value: T) -> None:
        raise AttributeError("Computed values are read-only")

    def subscribe(self, callback: Callable[[T], None], call_immediately: bool = False) -> Unsubscribe:
        # Change detection compares against the last computed value
        self.get()
        return super().subscribe(callback, call_immediately)

    def dispose(self) -> None:
        """Detach from the sources."""
        for unsubscribe in self._source_unsubs:
            unsubscribe()
        self._source_unsubs = []

    def __repr__(self) -> str:
        return f"Computed({self.value!r})"

