"""Registry of topics that are exposed via REST, MQTT and the state file."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from aiohttp import web

from . import mqtt_conn, persistence, rest
from .persistence import PERSISTENCE_PATH, PathLike
from .topic import Topic

T = TypeVar("T")


class BrokerBuilder:
    """Collects topics and, once built, serves them to the outside."""

    def __init__(self) -> None:
        self._topics: list[Topic] = []
        self._built = False

    @property
    def topics(self) -> tuple[Topic, ...]:
        """The topics registered so far, in order of registration."""
        return tuple(self._topics)

    def _check_open(self) -> None:
        if self._built:
            raise RuntimeError("the broker was already built; no new topics can be registered")

    def topic(
        self,
        path: str,
        web_readable: bool,
        web_writable: bool,
        persistent: bool,
        initial: Optional[T] = None,
        retained_length: int = 1,
        decode: Optional[Callable[[Any], T]] = None,
    ) -> Topic[T]:
        """Register a new topic.

        A read only and a write only topic may share a path, so that an
        application can validate values written to the one before
        publishing them on the other.

        ``retained_length`` is the number of past values that are kept and
        pushed out to new serialized subscribers: 1 to make the latest value
        readable via REST, 0 for purely transient events, more to provide
        some history.
        """
        self._check_open()
        topic: Topic[T] = Topic(
            path,
            web_readable,
            web_writable,
            persistent,
            initial,
            retained_length,
            decode,
        )
        self._topics.append(topic)
        return topic

    def topic_ro(self, path: str, initial: Optional[T] = None) -> Topic[T]:
        """Register a topic that is only readable from the outside."""
        return self.topic(path, True, False, False, initial, 1)

    def topic_rw(self, path: str, initial: Optional[T] = None) -> Topic[T]:
        """Register a topic that is readable and writable from the outside."""
        return self.topic(path, True, True, False, initial, 1)

    def topic_wo(self, path: str, initial: Optional[T] = None) -> Topic[T]:
        """Register a topic that is only writable from the outside."""
        return self.topic(path, False, True, False, initial, 1)

    def build(
        self,
        app: web.Application,
        persistence_path: PathLike = PERSISTENCE_PATH,
    ) -> "asyncio.Task[None]":
        """Finish building: restore persisted state and add all routes to ``app``.

        Must be called with a running event loop. No topics can be registered
        afterwards. Returns the task that saves persistent topics on change.
        """
        self._check_open()
        self._built = True

        topics = list(self._topics)
        task = persistence.register(topics, persistence_path)
        rest.register(app, topics)
        mqtt_conn.register(app, topics)
        return task