"""Saving persistent topic values to disk and restoring them on start."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Union

from .topic import Channel, Topic

logger = logging.getLogger(__name__)

PERSISTENCE_PATH = Path("/srv/tacd/state.json")
FORMAT_VERSION = 1

PathLike = Union[str, "os.PathLike[str]"]


class PersistenceError(Exception):
    """The state file could not be used."""


def _persistent(topics: Iterable[Topic]) -> list[Topic]:
    return [topic for topic in topics if topic.persistent]


def load(topics: Iterable[Topic], path: PathLike = PERSISTENCE_PATH) -> None:
    """Set every persistent topic to the value stored in the state file.

    A missing state file is not an error; the topics keep their defaults.
    """
    path = Path(path)

    if not path.is_file():
        logger.info('State file at "%s" does not yet exist. Using defaults', path)
        return

    with path.open("r", encoding="utf-8") as fd:
        try:
            data = json.load(fd)
        except ValueError as e:
            raise PersistenceError(f"Malformed state file: {e}") from e

    if not isinstance(data, dict):
        raise PersistenceError("Malformed state file: not a JSON object")

    try:
        format_version = data["format_version"]
        content = data["persistent_topics"]
    except KeyError as e:
        raise PersistenceError(f"Malformed state file: missing key {e}") from e

    if format_version != FORMAT_VERSION:
        raise PersistenceError(f"Unkown state file version: {format_version}")

    if not isinstance(content, dict):
        raise PersistenceError("Malformed state file: persistent_topics is not an object")

    content = dict(content)

    for topic in _persistent(topics):
        if topic.path in content:
            topic.set_from_json_value(content.pop(topic.path))

    if content:
        logger.error("State file contained extra keys:")
        for topic_name in content:
            logger.error(" - %s", topic_name)
        raise PersistenceError("Left over topics in state file")


def save(topics: Iterable[Topic], path: PathLike = PERSISTENCE_PATH) -> None:
    """Write the values of all persistent topics to the state file atomically."""
    path = Path(path)
    persistent_topics: dict[str, Any] = {}

    for topic in _persistent(topics):
        serialized = topic.try_get_as_bytes()
        if serialized is None:
            continue
        if topic.path in persistent_topics:
            logger.error('Duplicate persistent topic: "%s"', topic.path)
            # continue anyways
        persistent_topics[topic.path] = json.loads(serialized)

    file_contents = {
        "format_version": FORMAT_VERSION,
        "persistent_topics": dict(sorted(persistent_topics.items())),
    }

    path_tmp = path.with_suffix(".tmp")

    if not path.parent.exists():
        path.parent.mkdir()

    with path_tmp.open("w", encoding="utf-8") as fd:
        json.dump(file_contents, fd, indent=2, ensure_ascii=False)
        fd.flush()
        os.fsync(fd.fileno())

    os.replace(path_tmp, path)


async def save_on_change(
    topics: Iterable[Topic],
    channel: Channel,
    path: PathLike = PERSISTENCE_PATH,
) -> None:
    """Save the state file whenever a change event arrives on ``channel``."""
    topics = list(topics)
    async for topic_name, _ in channel:
        logger.info('Persistent topic "%s" has changed. Saving to disk', topic_name)
        save(topics, path)


def register(topics: Iterable[Topic], path: PathLike = PERSISTENCE_PATH) -> "asyncio.Task[None]":
    """Restore persistent topics and start saving them on every change.

    Must be called with a running event loop. Returns the saving task.
    """
    topics = list(topics)
    load(topics, path)

    channel: Channel = Channel()
    for topic in _persistent(topics):
        topic.subscribe_as_bytes(channel, False)

    loop = asyncio.get_running_loop()
    return loop.create_task(save_on_change(topics, channel, path))