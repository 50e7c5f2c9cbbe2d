"""Encoding and decoding of the MQTT 3.1.1 packets used over the websocket."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Callable, Optional

from .topic import validate_topic_name

PROTOCOL_LEVEL_311 = 4
CONNECT_ACCEPTED = 0
SUBACK_MAX_QOS_0 = 0x00
SUBACK_FAILURE = 0x80

_MAX_REMAINING_LENGTH = 268_435_455
_MAX_STRING_BYTES = 65535


class PacketError(ValueError):
    """A packet is malformed or of a kind that is not supported."""


class PacketType(enum.IntEnum):
    CONNECT = 1
    CONNACK = 2
    PUBLISH = 3
    SUBSCRIBE = 8
    SUBACK = 9
    UNSUBSCRIBE = 10
    UNSUBACK = 11
    PINGREQ = 12
    PINGRESP = 13


def _encode_remaining_length(length: int) -> bytes:
    if not 0 <= length <= _MAX_REMAINING_LENGTH:
        raise PacketError(f"packet too large: {length} bytes")
    out = bytearray()
    while True:
        byte, length = length % 128, length // 128
        out.append(byte | 0x80 if length else byte)
        if not length:
            return bytes(out)


def _frame(packet_type: PacketType, flags: int, body: bytes) -> bytes:
    return bytes([(packet_type << 4) | flags]) + _encode_remaining_length(len(body)) + body


def _encode_binary(data: bytes) -> bytes:
    if len(data) > _MAX_STRING_BYTES:
        raise PacketError("string too long")
    return struct.pack("!H", len(data)) + data


def _encode_str(text: str) -> bytes:
    return _encode_binary(text.encode("utf-8"))


class _Reader:
    """Sequential reader over a packet body."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, count: int) -> bytes:
        end = self._pos + count
        if end > len(self._data):
            raise PacketError("packet is truncated")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u16(self) -> int:
        return struct.unpack("!H", self.take(2))[0]

    def binary(self) -> bytes:
        return self.take(self.u16())

    def string(self) -> str:
        raw = self.binary()
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise PacketError("string is not valid UTF-8") from e
        if "\0" in text:
            raise PacketError("string contains a NUL character")
        return text

    def rest(self) -> bytes:
        chunk = self._data[self._pos:]
        self._pos = len(self._data)
        return chunk

    @property
    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def finish(self) -> None:
        if not self.at_end:
            raise PacketError("unexpected trailing bytes in packet")


def _check_flags(packet_type: PacketType, flags: int, expected: int) -> None:
    if flags != expected:
        raise PacketError(f"invalid fixed header flags for {packet_type.name}")


def _check_qos(qos: int) -> int:
    if qos not in (0, 1, 2):
        raise PacketError(f"invalid QoS level {qos}")
    return qos


def _validate_filter(topic_filter: str) -> list[str]:
    if not topic_filter:
        raise PacketError("topic filter must not be empty")
    if "\0" in topic_filter:
        raise PacketError("topic filter contains a NUL character")
    levels = topic_filter.split("/")
    last = len(levels) - 1
    for position, level in enumerate(levels):
        if "#" in level and (level != "#" or position != last):
            raise PacketError(f"invalid use of '#' in topic filter {topic_filter!r}")
        if "+" in level and level != "+":
            raise PacketError(f"invalid use of '+' in topic filter {topic_filter!r}")
    return levels


def topic_filter_matches(topic_filter: str, topic_name: str) -> bool:
    """Whether ``topic_name`` matches the (possibly wildcarded) ``topic_filter``."""
    filter_levels = _validate_filter(topic_filter)
    name_levels = topic_name.split("/")

    if topic_name.startswith("$") and filter_levels[0] in ("#", "+"):
        return False

    for position, pattern in enumerate(filter_levels):
        if pattern == "#":
            return True
        if position >= len(name_levels):
            return False
        if pattern != "+" and pattern != name_levels[position]:
            return False

    return len(filter_levels) == len(name_levels)


@dataclass(frozen=True)
class Connect:
    protocol_name: str
    protocol_level: int
    clean_session: bool
    keep_alive: int
    client_id: str
    will: Optional[tuple[str, bytes]] = None
    will_qos: int = 0
    will_retain: bool = False
    user_name: Optional[str] = None
    password: Optional[bytes] = None


@dataclass(frozen=True)
class Connack:
    session_present: bool = False
    return_code: int = CONNECT_ACCEPTED

    def encode(self) -> bytes:
        if not 0 <= self.return_code <= 0xFF:
            raise PacketError("invalid CONNACK return code")
        body = bytes([1 if self.session_present else 0, self.return_code])
        return _frame(PacketType.CONNACK, 0, body)


@dataclass(frozen=True)
class Publish:
    topic_name: str
    payload: bytes
    qos: int = 0
    packet_id: Optional[int] = None
    dup: bool = False
    retain: bool = False

    def encode(self) -> bytes:
        _check_qos(self.qos)
        try:
            validate_topic_name(self.topic_name)
        except ValueError as e:
            raise PacketError(str(e)) from e
        body = _encode_str(self.topic_name)
        if self.qos > 0:
            if self.packet_id is None:
                raise PacketError("QoS 1 and 2 publishes need a packet identifier")
            body += struct.pack("!H", self.packet_id)
        body += bytes(self.payload)
        flags = (int(self.dup) << 3) | (self.qos << 1) | int(self.retain)
        return _frame(PacketType.PUBLISH, flags, body)


@dataclass(frozen=True)
class Subscribe:
    packet_id: int
    subscribes: tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class Suback:
    packet_id: int
    return_codes: tuple[int, ...]

    def encode(self) -> bytes:
        for code in self.return_codes:
            if code not in (0, 1, 2, SUBACK_FAILURE):
                raise PacketError(f"invalid SUBACK return code {code}")
        body = struct.pack("!H", self.packet_id) + bytes(self.return_codes)
        return _frame(PacketType.SUBACK, 0, body)


@dataclass(frozen=True)
class Unsubscribe:
    packet_id: int
    topic_filters: tuple[str, ...]


@dataclass(frozen=True)
class Unsuback:
    packet_id: int

    def encode(self) -> bytes:
        return _frame(PacketType.UNSUBACK, 0, struct.pack("!H", self.packet_id))


@dataclass(frozen=True)
class Pingreq:
    pass


@dataclass(frozen=True)
class Pingresp:
    def encode(self) -> bytes:
        return _frame(PacketType.PINGRESP, 0, b"")


Packet = "Connect | Connack | Publish | Subscribe | Suback | Unsubscribe | Unsuback | Pingreq | Pingresp"


def _decode_connect(flags: int, r: _Reader) -> Connect:
    _check_flags(PacketType.CONNECT, flags, 0)
    protocol_name = r.string()
    protocol_level = r.u8()
    connect_flags = r.u8()
    keep_alive = r.u16()

    if connect_flags & 0x01:
        raise PacketError("reserved CONNECT flag is set")

    client_id = r.string()

    will_flag = bool(connect_flags & 0x04)
    will_qos = _check_qos((connect_flags >> 3) & 0x03) if will_flag else (connect_flags >> 3) & 0x03
    will_retain = bool(connect_flags & 0x20)
    will = None
    if will_flag:
        will = (r.string(), r.binary())
    elif will_qos or will_retain:
        raise PacketError("will QoS or retain set without a will")

    user_name = r.string() if connect_flags & 0x80 else None
    password = r.binary() if connect_flags & 0x40 else None
    r.finish()

    return Connect(
        protocol_name=protocol_name,
        protocol_level=protocol_level,
        clean_session=bool(connect_flags & 0x02),
        keep_alive=keep_alive,
        client_id=client_id,
        will=will,
        will_qos=will_qos,
        will_retain=will_retain,
        user_name=user_name,
        password=password,
    )


def _decode_connack(flags: int, r: _Reader) -> Connack:
    _check_flags(PacketType.CONNACK, flags, 0)
    ack_flags = r.u8()
    if ack_flags & 0xFE:
        raise PacketError("reserved CONNACK flags are set")
    return_code = r.u8()
    r.finish()
    return Connack(bool(ack_flags & 0x01), return_code)


def _decode_publish(flags: int, r: _Reader) -> Publish:
    qos = _check_qos((flags >> 1) & 0x03)
    topic_name = r.string()
    try:
        validate_topic_name(topic_name)
    except ValueError as e:
        raise PacketError(str(e)) from e
    packet_id = r.u16() if qos > 0 else None
    return Publish(
        topic_name=topic_name,
        payload=r.rest(),
        qos=qos,
        packet_id=packet_id,
        dup=bool(flags & 0x08),
        retain=bool(flags & 0x01),
    )


def _decode_subscribe(flags: int, r: _Reader) -> Subscribe:
    _check_flags(PacketType.SUBSCRIBE, flags, 0b0010)
    packet_id = r.u16()
    subscribes = []
    while not r.at_end:
        topic_filter = r.string()
        _validate_filter(topic_filter)
        options = r.u8()
        if options & 0xFC:
            raise PacketError("reserved subscription option bits are set")
        subscribes.append((topic_filter, _check_qos(options)))
    if not subscribes:
        raise PacketError("SUBSCRIBE without topic filters")
    return Subscribe(packet_id, tuple(subscribes))


def _decode_suback(flags: int, r: _Reader) -> Suback:
    _check_flags(PacketType.SUBACK, flags, 0)
    packet_id = r.u16()
    return Suback(packet_id, tuple(r.rest()))


def _decode_unsubscribe(flags: int, r: _Reader) -> Unsubscribe:
    _check_flags(PacketType.UNSUBSCRIBE, flags, 0b0010)
    packet_id = r.u16()
    topic_filters = []
    while not r.at_end:
        topic_filter = r.string()
        _validate_filter(topic_filter)
        topic_filters.append(topic_filter)
    if not topic_filters:
        raise PacketError("UNSUBSCRIBE without topic filters")
    return Unsubscribe(packet_id, tuple(topic_filters))


def _decode_unsuback(flags: int, r: _Reader) -> Unsuback:
    _check_flags(PacketType.UNSUBACK, flags, 0)
    packet_id = r.u16()
    r.finish()
    return Unsuback(packet_id)


def _decode_pingreq(flags: int, r: _Reader) -> Pingreq:
    _check_flags(PacketType.PINGREQ, flags, 0)
    r.finish()
    return Pingreq()


def _decode_pingresp(flags: int, r: _Reader) -> Pingresp:
    _check_flags(PacketType.PINGRESP, flags, 0)
    r.finish()
    return Pingresp()


_DECODERS: dict[int, Callable[[int, _Reader], object]] = {
    PacketType.CONNECT: _decode_connect,
    PacketType.CONNACK: _decode_connack,
    PacketType.PUBLISH: _decode_publish,
    PacketType.SUBSCRIBE: _decode_subscribe,
    PacketType.SUBACK: _decode_suback,
    PacketType.UNSUBSCRIBE: _decode_unsubscribe,
    PacketType.UNSUBACK: _decode_unsuback,
    PacketType.PINGREQ: _decode_pingreq,
    PacketType.PINGRESP: _decode_pingresp,
}


def _decode_remaining_length(data: bytes, offset: int) -> tuple[int, int]:
    length = 0
    multiplier = 1
    for _ in range(4):
        if offset >= len(data):
            raise PacketError("packet is truncated")
        byte = data[offset]
        offset += 1
        length += (byte & 0x7F) * multiplier
        if not byte & 0x80:
            return length, offset
        multiplier *= 128
    raise PacketError("malformed remaining length")


def decode_packet(data: bytes):
    """Decode one MQTT packet from the start of ``data``."""
    data = bytes(data)
    if len(data) < 2:
        raise PacketError("packet is truncated")

    packet_type, flags = data[0] >> 4, data[0] & 0x0F
    length, offset = _decode_remaining_length(data, 1)
    body = data[offset:offset + length]
    if len(body) < length:
        raise PacketError("packet is truncated")

    decoder = _DECODERS.get(packet_type)
    if decoder is None:
        raise PacketError(f"Unknown packet type {packet_type}")
    return decoder(flags, _Reader(body))