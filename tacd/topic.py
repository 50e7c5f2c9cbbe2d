"""Typed publish/subscribe topics with retained values and JSON serialization."""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import itertools
import json
import math
import queue
import threading
import weakref
from collections import deque
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

_MAX_TOPIC_NAME_BYTES = 65535
_token_counter = itertools.count()


class ChannelClosed(Exception):
    """Raised when sending to, or receiving from, a closed and drained channel."""


class ChannelFull(Exception):
    """Raised when sending to a bounded channel that has no free slot."""


class Channel(Generic[T]):
    """A thread-safe queue that can be awaited from asyncio code.

    ``maxsize`` of ``None`` makes the channel unbounded.
    """

    def __init__(self, maxsize: Optional[int] = None) -> None:
        if maxsize is not None and maxsize < 1:
            raise ValueError("maxsize must be at least 1 or None")
        self._maxsize = maxsize
        self._items: deque = deque()
        self._closed = False
        self._lock = threading.Lock()
        self._waiters: list[asyncio.Future] = []

    def _wake_waiters(self) -> None:
        waiters, self._waiters = self._waiters, []
        for fut in waiters:
            try:
                fut.get_loop().call_soon_threadsafe(_resolve, fut)
            except RuntimeError:
                # The waiting event loop is already closed.
                pass

    def try_send(self, item: T) -> None:
        """Enqueue ``item`` without blocking."""
        with self._lock:
            if self._closed:
                raise ChannelClosed("channel is closed")
            if self._maxsize is not None and len(self._items) >= self._maxsize:
                raise ChannelFull("channel is full")
            self._items.append(item)
            self._wake_waiters()

    def try_recv(self) -> T:
        """Take the next item without blocking.

        Raises ``queue.Empty`` if nothing is queued and ``ChannelClosed``
        once the channel is closed and drained.
        """
        with self._lock:
            if self._items:
                return self._items.popleft()
            if self._closed:
                raise ChannelClosed("channel is closed")
            raise queue.Empty

    async def recv(self) -> T:
        """Wait for and take the next item."""
        while True:
            with self._lock:
                if self._items:
                    return self._items.popleft()
                if self._closed:
                    raise ChannelClosed("channel is closed")
                fut = asyncio.get_running_loop().create_future()
                self._waiters.append(fut)
            await fut

    def close(self) -> bool:
        """Close the channel. Returns True if it was open before."""
        with self._lock:
            was_open = not self._closed
            self._closed = True
            self._wake_waiters()
            return was_open

    def drain(self) -> list[T]:
        """Take every item that is currently queued."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
            return items

    def __aiter__(self) -> "Channel[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.recv()
        except ChannelClosed:
            raise StopAsyncIteration from None


def _resolve(fut: asyncio.Future) -> None:
    if not fut.done():
        fut.set_result(None)


def validate_topic_name(name: str) -> str:
    """Check that ``name`` is a valid MQTT topic name and return it."""
    if not isinstance(name, str):
        raise TypeError("topic name must be a str")
    if not name:
        raise ValueError("topic name must not be empty")
    if len(name.encode("utf-8")) > _MAX_TOPIC_NAME_BYTES:
        raise ValueError("topic name is too long")
    if any(ch in "#+\0" for ch in name):
        raise ValueError(f"topic name {name!r} contains a wildcard or NUL character")
    return name


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, enum.Enum):
        return _to_jsonable(value.value)
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    return value


def _serialize(value: Any) -> bytes:
    return json.dumps(_to_jsonable(value), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class RetainedValue(Generic[T]):
    """A value together with its lazily computed JSON form."""

    __slots__ = ("_native", "_serialized")

    def __init__(self, value: T) -> None:
        self._native = value
        self._serialized: Optional[bytes] = None

    def native(self) -> T:
        return self._native

    def serialized(self) -> bytes:
        """The value as JSON bytes, computed once and cached."""
        if self._serialized is None:
            self._serialized = _serialize(self._native)
        return self._serialized


class SubscriptionHandle:
    """Removes a subscriber from a topic again."""

    def __init__(self, topic: "Topic", token: int, serialized: bool) -> None:
        self._topic = weakref.ref(topic)
        self._token = token
        self._serialized = serialized

    def unsubscribe(self) -> None:
        """Remove the subscriber; does nothing if it is already gone."""
        topic = self._topic()
        if topic is not None:
            topic._remove_sender(self._token, self._serialized)


class Topic(Generic[T]):
    """A named value that can be set, read and subscribed to."""

    def __init__(
        self,
        path: str,
        web_readable: bool = True,
        web_writable: bool = True,
        persistent: bool = False,
        initial: Optional[T] = None,
        retained_length: int = 1,
        decode: Optional[Callable[[Any], T]] = None,
    ) -> None:
        if retained_length < 0:
            raise ValueError("retained_length must not be negative")
        self.path = validate_topic_name(path)
        self.web_readable = web_readable
        self.web_writable = web_writable
        self.persistent = persistent
        self.retained_length = retained_length
        self._decode = decode if decode is not None else (lambda v: v)
        self._lock = threading.Lock()
        self._retained: deque[RetainedValue[T]] = deque()
        if initial is not None:
            self._retained.append(RetainedValue(initial))
        self._senders: list[tuple[int, Channel]] = []
        self._senders_serialized: list[tuple[int, Channel]] = []

    @staticmethod
    def anonymous(initial: Optional[T] = None) -> "Topic[T]":
        """A topic that is not exposed to the outside."""
        return Topic("/hidden", False, False, False, initial, 1)

    def _remove_sender(self, token: int, serialized: bool) -> None:
        with self._lock:
            senders = self._senders_serialized if serialized else self._senders
            senders[:] = [(t, s) for t, s in senders if t != token]

    @staticmethod
    def _offer(sender: Channel, item: Any) -> bool:
        """Try to enqueue; close full channels. Returns whether to keep the sender."""
        try:
            sender.try_send(item)
        except ChannelFull:
            sender.close()
            return False
        except ChannelClosed:
            return False
        return True

    def _set_locked(self, msg: T) -> None:
        val = RetainedValue(msg)
        self._senders = [(t, s) for t, s in self._senders if self._offer(s, val.native())]
        self._senders_serialized = [
            (t, s)
            for t, s in self._senders_serialized
            if self._offer(s, (self.path, val.serialized()))
        ]
        self._retained.append(val)
        while len(self._retained) > self.retained_length:
            self._retained.popleft()

    def set(self, msg: T) -> None:
        """Set a new value and notify subscribers."""
        with self._lock:
            self._set_locked(msg)

    def try_get(self) -> Optional[T]:
        """The current value, or None if none was set yet."""
        with self._lock:
            return self._retained[-1].native() if self._retained else None

    async def get(self) -> T:
        """The current value, waiting for one if none was set yet."""
        rx, handle = self.subscribe_unbounded()
        try:
            return await rx.recv()
        finally:
            handle.unsubscribe()

    def modify(self, cb: Callable[[Optional[T]], Optional[T]]) -> None:
        """Atomically read the value and set what ``cb`` returns, unless None."""
        with self._lock:
            current = self._retained[-1].native() if self._retained else None
            new = cb(current)
            if new is not None:
                self._set_locked(new)

    def subscribe(self, sender: Channel) -> SubscriptionHandle:
        """Add ``sender`` as subscriber; the current value is enqueued at once."""
        token = next(_token_counter)
        with self._lock:
            keep = True
            if self._retained:
                keep = self._offer(sender, self._retained[-1].native())
            if keep:
                self._senders.append((token, sender))
        return SubscriptionHandle(self, token, serialized=False)

    def subscribe_unbounded(self) -> tuple[Channel, SubscriptionHandle]:
        """Create an unbounded channel and subscribe it."""
        rx: Channel = Channel()
        return rx, self.subscribe(rx)

    def set_if_changed(self, msg: T) -> None:
        """Set a new value only if it differs from the current one."""
        with self._lock:
            if self._retained and self._retained[-1].native() == msg:
                return
            self._set_locked(msg)

    def toggle(self, default: T) -> None:
        """Invert the value, assuming ``default`` if none was set yet."""
        self.modify(lambda prev: not (default if prev is None else prev))

    def set_from_bytes(self, msg: bytes) -> None:
        """Decode a JSON message and set the topic to it."""
        try:
            value = json.loads(msg)
        except ValueError as e:
            raise ValueError(f"malformed JSON payload: {e}") from e
        self.set_from_json_value(value)

    def set_from_json_value(self, value: Any) -> None:
        """Convert a decoded JSON value to the topic's type and set it."""
        try:
            native = self._decode(value)
        except (TypeError, KeyError, ValueError) as e:
            raise ValueError(f"payload does not fit topic {self.path}: {e}") from e
        self.set(native)

    def subscribe_as_bytes(self, sender: Channel, enqueue_retained: bool = True) -> SubscriptionHandle:
        """Subscribe ``sender`` to ``(path, json_bytes)`` tuples."""
        token = next(_token_counter)
        with self._lock:
            keep = True
            if enqueue_retained:
                for val in self._retained:
                    if not self._offer(sender, (self.path, val.serialized())):
                        keep = False
                        break
            if keep:
                self._senders_serialized.append((token, sender))
        return SubscriptionHandle(self, token, serialized=True)

    def try_get_as_bytes(self) -> Optional[bytes]:
        """The current value as JSON bytes, or None if none was set yet."""
        with self._lock:
            return self._retained[-1].serialized() if self._retained else None

    def try_get_json_value(self) -> Any:
        """The current value as decoded JSON, or None if none was set yet."""
        serialized = self.try_get_as_bytes()
        return None if serialized is None else json.loads(serialized)