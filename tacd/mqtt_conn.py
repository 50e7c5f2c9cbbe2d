"""MQTT 3.1.1 over websocket access to topics."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
from contextlib import suppress
from typing import Iterable, Mapping, Optional, Sequence

from aiohttp import WSCloseCode, WSMessage, WSMsgType, web

from .mqtt_packets import (
    PROTOCOL_LEVEL_311,
    SUBACK_MAX_QOS_0,
    Connack,
    Connect,
    Pingreq,
    Pingresp,
    Publish,
    Suback,
    Subscribe,
    Unsuback,
    Unsubscribe,
    decode_packet,
    topic_filter_matches,
)
from .topic import Channel, ChannelClosed, SubscriptionHandle, Topic

logger = logging.getLogger(__name__)

MQTT_PATH = "/v1/mqtt"

# Limit the queue towards the websocket. When it overflows the topic closes
# the queue, which ends the connection so that the user notices that the web
# interface is no longer up to date.
MAX_QUEUE_LENGTH = 4096

WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

_SUPPORTED_PROTOCOLS = ("mqttv3.1", "mqtt")
_MAX_CLOSE_REASON_BYTES = 123


class _ProtocolViolation(Exception):
    """The client did something that this server does not allow."""


def websocket_accept(key: str) -> str:
    """The Sec-WebSocket-Accept value answering ``key``."""
    digest = hashlib.sha1((key + WEBSOCKET_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def header_contains_ignore_case(headers: Mapping[str, str], name: str, value: str) -> bool:
    """Whether the comma separated header ``name`` lists ``value``, ignoring case."""
    header = headers.get(name)
    if header is None:
        return False
    wanted = value.strip().lower()
    return any(part.strip().lower() == wanted for part in header.split(","))


def select_protocol(header: Optional[str]) -> Optional[str]:
    """The first MQTT sub-protocol the client offers, or None."""
    if header is None:
        return None
    return next(
        (p for p in (part.strip() for part in header.split(",")) if p in _SUPPORTED_PROTOCOLS),
        None,
    )


def _connect_is_supported(conn: Connect) -> bool:
    return (
        conn.user_name is None
        and conn.password is None
        and conn.will is None
        and not conn.will_retain
        and conn.protocol_level == PROTOCOL_LEVEL_311
    )


def _message_data(msg: WSMessage) -> Optional[bytes]:
    """The payload of a data message, None if the peer is closing."""
    if msg.type == WSMsgType.BINARY:
        return msg.data
    if msg.type == WSMsgType.TEXT:
        return msg.data.encode("utf-8")
    if msg.type == WSMsgType.ERROR:
        raise ConnectionError(f"websocket error: {msg.data}")
    return None


class _Session:
    """State of one established MQTT connection."""

    def __init__(self, topics: Sequence[Topic], ws: web.WebSocketResponse) -> None:
        self._topics = topics
        self._ws = ws
        self._send_lock = asyncio.Lock()
        self._outgoing: Channel = Channel(MAX_QUEUE_LENGTH)
        self._subscriptions: dict[str, list[SubscriptionHandle]] = {}

    async def _send(self, data: bytes) -> None:
        async with self._send_lock:
            await self._ws.send_bytes(data)

    async def _forward(self) -> None:
        """Wrap queued topic values in PUBLISH packets and send them out."""
        while True:
            try:
                topic_name, payload = await self._outgoing.recv()
            except ChannelClosed:
                raise ConnectionError("subscription channel closed") from None
            await self._send(Publish(topic_name, bytes(payload)).encode())

    async def serve(self) -> None:
        forwarder = asyncio.ensure_future(self._forward())
        try:
            while True:
                receiver = asyncio.ensure_future(self._ws.receive())
                done, _ = await asyncio.wait(
                    {receiver, forwarder}, return_when=asyncio.FIRST_COMPLETED
                )
                if receiver not in done:
                    receiver.cancel()
                    with suppress(asyncio.CancelledError):
                        await receiver
                    forwarder.result()
                    return

                msg = receiver.result()
                if msg.type in (WSMsgType.PING, WSMsgType.PONG):
                    continue
                data = _message_data(msg)
                if data is None:
                    return
                await self._dispatch(decode_packet(data))
        finally:
            forwarder.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await forwarder
            self._unsubscribe_all()
            self._outgoing.close()

    async def _dispatch(self, packet: object) -> None:
        if isinstance(packet, Subscribe):
            await self._subscribe(packet)
        elif isinstance(packet, Unsubscribe):
            await self._unsubscribe(packet)
        elif isinstance(packet, Publish):
            self._publish(packet)
        elif isinstance(packet, Pingreq):
            await self._send(Pingresp().encode())
        else:
            raise _ProtocolViolation("Unknown packet type")

    async def _subscribe(self, packet: Subscribe) -> None:
        # The SUBACK has to go out before the retained values do.
        codes = tuple(SUBACK_MAX_QOS_0 for _ in packet.subscribes)
        await self._send(Suback(packet.packet_id, codes).encode())

        for topic_filter, _qos in packet.subscribes:
            handles = [
                topic.subscribe_as_bytes(self._outgoing, True)
                for topic in self._topics
                if topic.web_readable and topic_filter_matches(topic_filter, topic.path)
            ]
            # Only one subscription per filter and connection.
            for old in self._subscriptions.pop(topic_filter, []):
                old.unsubscribe()
            self._subscriptions[topic_filter] = handles

    async def _unsubscribe(self, packet: Unsubscribe) -> None:
        for topic_filter in packet.topic_filters:
            for old in self._subscriptions.pop(topic_filter, []):
                old.unsubscribe()
        await self._send(Unsuback(packet.packet_id).encode())

    def _publish(self, packet: Publish) -> None:
        if packet.qos != 0 or packet.dup or not packet.retain:
            raise _ProtocolViolation("QoS, DUP or Retain has non-allowed value")

        topic = next(
            (t for t in self._topics if t.web_writable and t.path == packet.topic_name),
            None,
        )
        if topic is not None:
            topic.set_from_bytes(packet.payload)

    def _unsubscribe_all(self) -> None:
        for handles in self._subscriptions.values():
            for handle in handles:
                handle.unsubscribe()
        self._subscriptions.clear()


async def handle_connection(topics: Sequence[Topic], ws: web.WebSocketResponse) -> None:
    """Serve one MQTT-over-websocket connection from CONNECT to teardown."""
    # MQTT packets are assumed to be aligned with websocket frames, and the
    # client is assumed to use only the subset of MQTT we support.
    first = await ws.receive()
    try:
        data = _message_data(first)
        conn = decode_packet(data) if data is not None else None
    except Exception:
        conn = None

    if not isinstance(conn, Connect) or not _connect_is_supported(conn):
        await ws.close()
        return

    try:
        await ws.send_bytes(Connack(False).encode())
    except Exception:
        await ws.close()
        return

    error: Optional[Exception] = None
    try:
        await _Session(topics, ws).serve()
    except Exception as e:
        error = e
        logger.debug("MQTT connection ended with error: %s", e)

    # Best effort: tell the peer why the connection is closed.
    if error is None:
        code, reason = WSCloseCode.OK, b""
    else:
        code = WSCloseCode.INTERNAL_ERROR
        reason = str(error).encode("utf-8")[:_MAX_CLOSE_REASON_BYTES]

    with suppress(Exception):
        await ws.close(code=code, message=reason)


async def mqtt_handler(topics: Sequence[Topic], request: web.Request) -> web.StreamResponse:
    """Upgrade the request to a websocket and serve MQTT over it."""
    headers = request.headers
    upgrade_requested = header_contains_ignore_case(
        headers, "Connection", "upgrade"
    ) and header_contains_ignore_case(headers, "Upgrade", "websocket")

    if not upgrade_requested:
        return web.Response(status=426)

    if "Sec-WebSocket-Key" not in headers:
        raise web.HTTPInternalServerError(text="expected sec-websocket-key")

    protocol = select_protocol(headers.get("Sec-WebSocket-Protocol"))
    ws = web.WebSocketResponse(protocols=(protocol,) if protocol else ())
    await ws.prepare(request)
    await handle_connection(topics, ws)
    return ws


def register(app: web.Application, topics: Iterable[Topic]) -> None:
    """Serve MQTT over websockets at ``/v1/mqtt``."""
    topics = list(topics)

    async def handler(request: web.Request) -> web.StreamResponse:
        return await mqtt_handler(topics, request)

    app.router.add_get(MQTT_PATH, handler)