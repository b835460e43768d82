"""Timeout-bounded waits over chain event and storage subscriptions.

Every wait follows the same shape: establish a subscription, race the first
matching value against a deadline, cancel whichever side lost, and always
cancel the subscription exactly once before returning.

Subscription setup failures raise :class:`SubscriptionSetupError` at once.
Deadlines raise a :class:`WaitTimeoutError` subclass the caller may catch and
retry or skip.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable
from typing import Any, Protocol, TypeVar, runtime_checkable

from bridgenet.constants import DEFAULT_WAIT_TIMEOUT_SECONDS
from bridgenet.exceptions import (
    EventTimeoutError,
    StorageTimeoutError,
    SubscriptionSetupError,
    WaitTimeoutError,
)
from bridgenet.logging import get_logger

logger = get_logger("waits")

T = TypeVar("T")
Predicate = Callable[[Any], bool]
TimeoutFactory = Callable[[str, str, float], WaitTimeoutError]

_CLOSED = object()


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException) -> None:
        self.error = error


@runtime_checkable
class Subscription(Protocol):
    """A cancellable stream of values."""

    def __aiter__(self) -> AsyncIterator[Any]: ...

    async def cancel(self) -> None: ...


@runtime_checkable
class EventSource(Protocol):
    """Something that can open a :class:`Subscription`."""

    name: str

    async def subscribe(self) -> Subscription: ...


class QueueSubscription:
    """Queue-backed subscription fed by ``push``/``fail``/``close``.

    ``cancel_count`` records every ``cancel()`` call; only the first one has
    an effect.
    """

    def __init__(self, name: str = "queue") -> None:
        self.name = name
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._cancelled = False
        self.cancel_count = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def push(self, value: Any) -> None:
        if not self._cancelled:
            self._queue.put_nowait(value)

    def fail(self, error: BaseException) -> None:
        if not self._cancelled:
            self._queue.put_nowait(_Failure(error))

    def close(self) -> None:
        if not self._cancelled:
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> QueueSubscription:
        return self

    async def __anext__(self) -> Any:
        if self._cancelled:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            raise item.error
        return item

    async def cancel(self) -> None:
        self.cancel_count += 1
        if self._cancelled:
            return
        self._cancelled = True
        await self._on_cancel()

    async def _on_cancel(self) -> None:
        pass


class CallbackSubscription(QueueSubscription):
    """Adapts a callback watcher (``watch(on_value, on_error) -> unwatch``).

    Callbacks may fire from other threads; values are handed to the owning
    event loop thread-safely.
    """

    def __init__(self, name: str, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(name)
        self._loop = loop
        self._unwatch: Callable[[], Any] | None = None

    @classmethod
    def from_watch(
        cls,
        watch: Callable[[Callable[[Any], None], Callable[[BaseException], None]], Callable[[], Any]],
        name: str = "callback",
    ) -> CallbackSubscription:
        """Start a watcher and wrap it. Must be called from a running loop."""
        sub = cls(name, asyncio.get_running_loop())
        sub._unwatch = watch(sub.push, sub.fail)
        return sub

    def push(self, value: Any) -> None:
        self._loop.call_soon_threadsafe(super().push, value)

    def fail(self, error: BaseException) -> None:
        self._loop.call_soon_threadsafe(super().fail, error)

    async def _on_cancel(self) -> None:
        if self._unwatch is not None:
            unwatch, self._unwatch = self._unwatch, None
            result = unwatch()
            if inspect.isawaitable(result):
                await result


class IteratorSubscription:
    """Wraps an async iterable (e.g. a client's watch stream)."""

    def __init__(
        self,
        stream: AsyncIterable[Any],
        name: str = "stream",
        transform: Callable[[Any], Any] | None = None,
    ) -> None:
        self.name = name
        self._iterator = stream.__aiter__()
        self._transform = transform
        self._cancelled = False
        self.cancel_count = 0

    def __aiter__(self) -> IteratorSubscription:
        return self

    async def __anext__(self) -> Any:
        if self._cancelled:
            raise StopAsyncIteration
        value = await self._iterator.__anext__()
        return self._transform(value) if self._transform else value

    async def cancel(self) -> None:
        self.cancel_count += 1
        if self._cancelled:
            return
        self._cancelled = True
        aclose = getattr(self._iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:  # noqa: BLE001
            logger.debug(f"Closing subscription {self.name} raised: {e}")


def _payload(raw: Any) -> Any:
    """Unwrap ``{"payload": ...}`` shaped emissions, pass anything else through."""
    if isinstance(raw, dict) and "payload" in raw:
        return raw["payload"]
    return getattr(raw, "payload", raw)


class ApiPathSource:
    """Resolves ``api.<namespace>.<group>.<item>.<method>()`` into a subscription.

    ``namespace="event"`` with ``method="watch"`` covers chain events,
    ``namespace="query"`` with ``method="watch_value"`` covers storage items.
    """

    def __init__(self, api: Any, namespace: str, group: str, item: str, method: str) -> None:
        self.api = api
        self.namespace = namespace
        self.group = group
        self.item = item
        self.method = method
        self.name = f"{group}.{item}"

    async def subscribe(self) -> Subscription:
        target = getattr(getattr(getattr(self.api, self.namespace, None), self.group, None), self.item, None)
        watch = getattr(target, self.method, None)
        if watch is None or not callable(watch):
            raise SubscriptionSetupError(
                f"{self.namespace.capitalize()} {self.name} not found in API or does not support {self.method}()",
                self.name,
            )
        stream = watch()
        if inspect.isawaitable(stream):
            stream = await stream
        return IteratorSubscription(stream, name=self.name, transform=_payload)


def event_source(api: Any, pallet: str, event: str) -> ApiPathSource:
    return ApiPathSource(api, "event", pallet, event, "watch")


def storage_source(api: Any, pallet: str, storage: str) -> ApiPathSource:
    return ApiPathSource(api, "query", pallet, storage, "watch_value")


def _source_name(source: Any) -> str:
    return str(getattr(source, "name", type(source).__name__))


async def open_subscription(source: EventSource | Subscription) -> Subscription:
    """Open a subscription, or pass an already-open one through.

    Raises:
        SubscriptionSetupError: If the source cannot be subscribed to.
    """
    subscribe = getattr(source, "subscribe", None)
    if subscribe is None:
        return source  # type: ignore[return-value]

    name = _source_name(source)
    try:
        return await subscribe()
    except SubscriptionSetupError:
        raise
    except Exception as e:
        raise SubscriptionSetupError(f"Failed to subscribe to {name}: {e}", name) from e


async def race(*aws: Awaitable[T]) -> T:
    """Return the result of the first awaitable to finish.

    Losers are cancelled and awaited before this returns. On ties the
    earliest argument wins. An exception from the winner propagates.
    """
    if not aws:
        raise ValueError("race() needs at least one awaitable")

    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    winner = next(t for t in tasks if t in done)
    return winner.result()


def _matches(predicate: Predicate | None, value: Any, name: str) -> bool:
    if predicate is None:
        return True
    try:
        return bool(predicate(value))
    except Exception as e:  # noqa: BLE001
        logger.debug(f"Predicate for {name} raised on {value!r}: {e}")
        return False


async def _first_match(
    subscription: Subscription,
    predicate: Predicate | None,
    name: str,
    timeout: float,
    on_timeout: TimeoutFactory,
) -> Any:
    async for value in subscription:
        logger.debug(f"{name} emitted {value!r}")
        if _matches(predicate, value, name):
            return value
    raise on_timeout(f"{name} ended before a matching value arrived", name, timeout)


async def _expire(timeout: float, name: str, on_timeout: TimeoutFactory) -> Any:
    await asyncio.sleep(timeout)
    raise on_timeout(f"Timeout waiting for {name} after {timeout:g}s", name, timeout)


async def wait_for_match(
    source: EventSource | Subscription,
    predicate: Predicate | None = None,
    timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
    on_timeout: TimeoutFactory = WaitTimeoutError,
) -> Any:
    """Wait for the first value from ``source`` satisfying ``predicate``.

    Args:
        source: Event source to subscribe to, or an open subscription
        predicate: Match test; ``None`` accepts the first value
        timeout: Deadline in seconds
        on_timeout: Factory for the timeout error raised on expiry

    Returns:
        The first matching value

    Raises:
        SubscriptionSetupError: If the subscription cannot be established
        WaitTimeoutError: If no value matched before the deadline
    """
    name = _source_name(source)
    subscription = await open_subscription(source)
    try:
        return await race(
            _first_match(subscription, predicate, name, timeout, on_timeout),
            _expire(timeout, name, on_timeout),
        )
    finally:
        await subscription.cancel()


async def wait_for_event(
    source: EventSource | Subscription,
    predicate: Predicate | None = None,
    timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
) -> Any:
    """Wait for a chain event. Raises :class:`EventTimeoutError` on expiry."""
    return await wait_for_match(source, predicate, timeout, on_timeout=EventTimeoutError)


async def wait_for_storage(
    source: EventSource | Subscription,
    predicate: Predicate | None = None,
    timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
    fail_on_timeout: bool = True,
) -> Any:
    """Wait for a storage value.

    With ``fail_on_timeout=False`` an expired wait returns ``None`` instead
    of raising :class:`StorageTimeoutError`.
    """
    try:
        return await wait_for_match(source, predicate, timeout, on_timeout=StorageTimeoutError)
    except StorageTimeoutError as e:
        if fail_on_timeout:
            raise
        logger.debug(str(e))
        return None


def _normalize(item: Any) -> Any:
    return item.lower() if isinstance(item, str) else item


async def wait_for_storage_contains(
    source: EventSource | Subscription,
    items: Iterable[Any],
    timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
    fail_on_timeout: bool = True,
) -> Any:
    """Wait until a list-valued storage item contains every one of ``items``.

    String comparison is case-insensitive (addresses are often mixed case).
    """
    wanted = [_normalize(i) for i in items]

    def _contains_all(value: Any) -> bool:
        if not isinstance(value, list | tuple):
            return False
        present = [_normalize(v) for v in value]
        return all(w in present for w in wanted)

    return await wait_for_storage(source, _contains_all, timeout, fail_on_timeout)


async def poll_until(
    condition: Callable[[], Awaitable[bool]],
    attempts: int = 100,
    delay: float = 0.1,
    error_message: str = "",
) -> None:
    """Poll an async condition until it returns true.

    Exceptions from the condition count as a failed attempt.

    Raises:
        WaitTimeoutError: When every attempt failed.
    """
    for attempt in range(1, attempts + 1):
        try:
            if await condition():
                return
        except Exception as e:  # noqa: BLE001
            logger.debug(f"Attempt {attempt}/{attempts} failed: {e}")

        if attempt < attempts:
            await asyncio.sleep(delay)

    total = attempts * delay
    raise WaitTimeoutError(
        f"Failed after {total:g}s: {error_message or 'condition never became true'}",
        "poll",
        total,
    )
