"""Observable streams with cancellable subscriptions.

Two shapes are used across the package:

* :class:`Stream`: a finite sequence of values that ends with completion or
  an error (a page load, an upload). Late subscribers get the full replay.
* :class:`ObservableValue`: a current value that changes over time
  (connectivity, sync state). Subscribers get the current value, then changes.

Both are plain callback-based and loop-agnostic; :meth:`Stream.__aiter__`
adapts a stream to ``async for``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NEXT = "next"
_ERROR = "error"
_DONE = "done"


class Subscription:
    """Handle returned by ``subscribe``; ``cancel()`` stops delivery."""

    def __init__(self, on_cancel: Callable[[Subscription], None]) -> None:
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._on_cancel(self)


class _Observer:
    __slots__ = ("on_next", "on_error", "on_complete", "subscription")

    def __init__(
        self,
        on_next: Callable[[Any], None],
        on_error: Callable[[BaseException], None] | None,
        on_complete: Callable[[], None] | None,
    ) -> None:
        self.on_next = on_next
        self.on_error = on_error
        self.on_complete = on_complete
        self.subscription: Subscription | None = None


class Stream(Generic[T]):
    """A replayable, completable stream of values.

    Usage::

        stream = repository.get_records(RecordFilter(patient_id="p1"))
        sub = stream.subscribe(render_page)
        ...
        sub.cancel()          # leaving the screen

        pages = await stream.collect()
    """

    def __init__(self, *, on_idle: Callable[[], None] | None = None) -> None:
        """
        Args:
            on_idle: Called when the last active subscriber cancels before
                the stream has finished. Producers use it to stop work that
                nobody is waiting for.
        """
        self._events: list[tuple[str, Any]] = []
        self._observers: list[_Observer] = []
        self._on_idle = on_idle
        self._done = False
        self._had_subscriber = False

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def emit(self, value: T) -> None:
        if self._done:
            raise RuntimeError("Cannot emit on a finished stream")
        self._events.append((_NEXT, value))
        for observer in list(self._observers):
            self._deliver(observer, _NEXT, value)

    def complete(self) -> None:
        if self._done:
            return
        self._done = True
        self._events.append((_DONE, None))
        for observer in list(self._observers):
            self._deliver(observer, _DONE, None)
        self._observers.clear()

    def fail(self, error: BaseException) -> None:
        if self._done:
            return
        self._done = True
        self._events.append((_ERROR, error))
        for observer in list(self._observers):
            self._deliver(observer, _ERROR, error)
        self._observers.clear()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    @property
    def done(self) -> bool:
        return self._done

    @property
    def values(self) -> list[T]:
        """Every value emitted so far."""
        return [payload for kind, payload in self._events if kind == _NEXT]

    @property
    def latest(self) -> T | None:
        values = self.values
        return values[-1] if values else None

    @property
    def error(self) -> BaseException | None:
        for kind, payload in self._events:
            if kind == _ERROR:
                return payload
        return None

    @property
    def active_subscribers(self) -> int:
        return len(self._observers)

    def subscribe(
        self,
        on_next: Callable[[T], None],
        on_error: Callable[[BaseException], None] | None = None,
        on_complete: Callable[[], None] | None = None,
    ) -> Subscription:
        """Replay past events to the callbacks, then deliver live ones."""
        observer = _Observer(on_next, on_error, on_complete)
        subscription = Subscription(lambda _sub: self._remove(observer))
        observer.subscription = subscription
        self._had_subscriber = True

        for kind, payload in list(self._events):
            if subscription.cancelled:
                return subscription
            self._deliver(observer, kind, payload)

        if not self._done and not subscription.cancelled:
            self._observers.append(observer)
        return subscription

    def __aiter__(self):
        return _StreamIterator(self)

    async def collect(self) -> list[T]:
        """Wait for completion and return every value. Raises the stream error."""
        return [value async for value in self]

    async def last(self) -> T | None:
        values = await self.collect()
        return values[-1] if values else None

    async def first(self, predicate: Callable[[T], bool] | None = None) -> T:
        """Wait for the first value matching ``predicate`` without waiting for completion.

        Raises:
            LookupError: The stream finished without a matching value.
        """
        iterator = _StreamIterator(self)
        try:
            async for value in iterator:
                if predicate is None or predicate(value):
                    return value
        finally:
            await iterator.aclose()
        raise LookupError("Stream finished without a matching value")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _deliver(self, observer: _Observer, kind: str, payload: Any) -> None:
        try:
            if kind == _NEXT:
                observer.on_next(payload)
            elif kind == _ERROR:
                if observer.on_error is not None:
                    observer.on_error(payload)
                else:
                    logger.warning("Unhandled stream error: %s", payload)
            elif observer.on_complete is not None:
                observer.on_complete()
        except Exception:
            logger.exception("Stream subscriber callback failed")

    def _remove(self, observer: _Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)
        if not self._done and not self._observers and self._on_idle is not None:
            self._on_idle()


class _StreamIterator:
    """Adapts a :class:`Stream` to the async iterator protocol."""

    def __init__(self, stream: Stream) -> None:
        self._queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        self._subscription = stream.subscribe(
            lambda value: self._queue.put_nowait((_NEXT, value)),
            on_error=lambda exc: self._queue.put_nowait((_ERROR, exc)),
            on_complete=lambda: self._queue.put_nowait((_DONE, None)),
        )

    def __aiter__(self) -> _StreamIterator:
        return self

    async def __anext__(self) -> Any:
        try:
            kind, payload = await self._queue.get()
        except asyncio.CancelledError:
            self._subscription.cancel()
            raise
        if kind == _NEXT:
            return payload
        self._subscription.cancel()
        if kind == _ERROR:
            raise payload
        raise StopAsyncIteration

    async def aclose(self) -> None:
        self._subscription.cancel()


class ObservableValue(Generic[T]):
    """A value that can be observed for changes.

    Subscribers receive the current value immediately and every later change.
    Setting an equal value does not notify.
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._callbacks: list[tuple[Subscription, Callable[[T], None]]] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        for subscription, callback in list(self._callbacks):
            if subscription.cancelled:
                continue
            try:
                callback(value)
            except Exception:
                logger.exception("ObservableValue subscriber callback failed")

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        subscription = Subscription(self._remove)
        self._callbacks.append((subscription, callback))
        try:
            callback(self._value)
        except Exception:
            logger.exception("ObservableValue subscriber callback failed")
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._callbacks = [
            (sub, cb) for sub, cb in self._callbacks if sub is not subscription
        ]
