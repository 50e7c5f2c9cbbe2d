import asyncio
import queue
from dataclasses import dataclass

import pytest

from tacd.topic import (
    Channel,
    ChannelClosed,
    ChannelFull,
    RetainedValue,
    Topic,
    validate_topic_name,
)


@dataclass
class SerTestType:
    a: bool
    b: int
    c: str


def new_topic(decode=None):
    return Topic("/", True, True, True, None, 1, decode)


def collect_serialized(rx):
    return [payload for _, payload in rx.drain()]


def test_retained_is_cached():
    retained = RetainedValue([1])
    assert retained.native() is retained.native()
    assert retained.serialized() is retained.serialized()
    assert RetainedValue(1).serialized() == b"1"


def test_unsubscribe_works():
    topic = new_topic()

    native_1, native_handle_1 = topic.subscribe_unbounded()
    native_2, native_handle_2 = topic.subscribe_unbounded()
    native_3, native_handle_3 = topic.subscribe_unbounded()

    ser_1, ser_2, ser_3 = Channel(), Channel(), Channel()
    ser_handle_1 = topic.subscribe_as_bytes(ser_1, True)
    ser_handle_2 = topic.subscribe_as_bytes(ser_2, True)
    ser_handle_3 = topic.subscribe_as_bytes(ser_3, True)

    topic.set(2)
    native_handle_2.unsubscribe()
    ser_handle_2.unsubscribe()

    topic.set(1)
    native_handle_1.unsubscribe()
    ser_handle_1.unsubscribe()

    topic.set(3)
    native_handle_3.unsubscribe()
    ser_handle_3.unsubscribe()

    topic.set(4)

    assert native_1.drain() == [2, 1]
    assert native_2.drain() == [2]
    assert native_3.drain() == [2, 1, 3]

    assert collect_serialized(ser_1) == [b"2", b"1"]
    assert collect_serialized(ser_2) == [b"2"]
    assert collect_serialized(ser_3) == [b"2", b"1", b"3"]


def test_unsubscribe_twice_is_harmless():
    topic = new_topic()
    rx, handle = topic.subscribe_unbounded()
    handle.unsubscribe()
    handle.unsubscribe()
    topic.set(7)
    assert rx.drain() == []


def test_serialize_roundtrip():
    topic = new_topic(decode=lambda v: SerTestType(**v))

    assert topic.try_get() is None
    assert topic.try_get_as_bytes() is None

    topic.set_from_bytes(b'{"c": "test", "b": 1, "a": true}')

    assert topic.try_get() == SerTestType(a=True, b=1, c="test")
    assert topic.try_get_as_bytes().decode() == '{"a":true,"b":1,"c":"test"}'
    assert topic.try_get_json_value() == {"a": True, "b": 1, "c": "test"}


def test_set_from_bytes_malformed():
    topic = new_topic()
    with pytest.raises(ValueError):
        topic.set_from_bytes(b"{not json")
    assert topic.try_get() is None


def test_set_from_json_value_wrong_shape():
    topic = new_topic(decode=lambda v: SerTestType(**v))
    with pytest.raises(ValueError):
        topic.set_from_json_value({"x": 1})
    assert topic.try_get() is None


def test_initial_value_retained():
    topic = Topic("/v1/test", initial=5)
    assert topic.try_get() == 5
    rx, _ = topic.subscribe_unbounded()
    assert rx.drain() == [5]


def test_retained_history_sent_to_byte_subscribers():
    topic = Topic("/v1/hist", True, False, False, None, 3)
    for v in (1, 2, 3, 4):
        topic.set(v)
    rx = Channel()
    topic.subscribe_as_bytes(rx, True)
    assert collect_serialized(rx) == [b"2", b"3", b"4"]


def test_byte_subscriber_without_retained():
    topic = Topic("/v1/x", initial=1)
    rx = Channel()
    topic.subscribe_as_bytes(rx, False)
    assert rx.drain() == []
    topic.set(2)
    assert rx.drain() == [("/v1/x", b"2")]


def test_modify_and_skip():
    topic = Topic("/v1/m", initial=1)
    topic.modify(lambda prev: prev + 10)
    assert topic.try_get() == 11
    topic.modify(lambda prev: None)
    assert topic.try_get() == 11


def test_set_if_changed():
    topic = Topic("/v1/c", initial=1)
    rx, _ = topic.subscribe_unbounded()
    topic.set_if_changed(1)
    topic.set_if_changed(2)
    topic.set_if_changed(2)
    assert rx.drain() == [1, 2]


def test_toggle():
    topic = Topic.anonymous()
    topic.toggle(False)
    assert topic.try_get() is True
    topic.toggle(False)
    assert topic.try_get() is False


def test_anonymous():
    topic = Topic.anonymous(3)
    assert topic.path == "/hidden"
    assert (topic.web_readable, topic.web_writable, topic.persistent) == (False, False, False)
    assert topic.try_get() == 3


def test_full_channel_is_closed_and_dropped():
    topic = new_topic()
    rx = Channel(maxsize=1)
    topic.subscribe(rx)
    topic.set(1)
    topic.set(2)
    topic.set(3)
    assert rx.try_recv() == 1
    with pytest.raises(ChannelClosed):
        rx.try_recv()


def test_closed_subscriber_not_added():
    topic = Topic("/v1/y", initial=1)
    rx = Channel()
    rx.close()
    topic.subscribe(rx)
    topic.set(2)
    with pytest.raises(ChannelClosed):
        rx.try_recv()


def test_channel_basics():
    ch = Channel(maxsize=2)
    ch.try_send("a")
    ch.try_send("b")
    with pytest.raises(ChannelFull):
        ch.try_send("c")
    assert ch.try_recv() == "a"
    assert ch.close() is True
    assert ch.close() is False
    with pytest.raises(ChannelClosed):
        ch.try_send("d")
    assert ch.try_recv() == "b"
    with pytest.raises(ChannelClosed):
        ch.try_recv()


def test_channel_empty():
    with pytest.raises(queue.Empty):
        Channel().try_recv()


def test_channel_rejects_bad_maxsize():
    with pytest.raises(ValueError):
        Channel(maxsize=0)


@pytest.mark.parametrize("name", ["", "/a/+/b", "/a/#", "a\0b"])
def test_invalid_topic_names(name):
    with pytest.raises(ValueError):
        validate_topic_name(name)
    with pytest.raises(ValueError):
        Topic(name)


def test_valid_topic_name():
    assert validate_topic_name("/v1/tac/display") == "/v1/tac/display"


@pytest.mark.asyncio
async def test_get_waits_for_value():
    topic = new_topic()
    task = asyncio.create_task(topic.get())
    await asyncio.sleep(0)
    assert not task.done()
    topic.set(42)
    assert await asyncio.wait_for(task, 1) == 42


@pytest.mark.asyncio
async def test_get_returns_retained():
    topic = Topic("/v1/z", initial="on")
    assert await asyncio.wait_for(topic.get(), 1) == "on"


@pytest.mark.asyncio
async def test_channel_recv_and_iteration():
    ch = Channel()

    async def producer():
        await asyncio.sleep(0)
        ch.try_send(1)
        ch.try_send(2)
        ch.close()

    asyncio.create_task(producer())
    received = [item async for item in ch]
    assert received == [1, 2]