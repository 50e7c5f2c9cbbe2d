# tacd

A small publish/subscribe broker built on `aiohttp`. It keeps named topics,
retains their most recent values, exposes them over HTTP (REST) and over
MQTT 3.1.1 on a WebSocket, and stores selected topics in a JSON state file.
A backlight controller drives a display's brightness from one of these
topics.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Topics (`tacd.topic`)

A `Topic` has a path such as `/v1/tac/display/backlight/brightness` (a valid
MQTT topic name: non-empty, no `#`, `+` or NUL), flags `web_readable`,
`web_writable` and `persistent`, a number of retained values
(`retained_length`) and lists of subscribers. Values are JSON-serializable
Python objects; dataclasses and enums are serialized as their fields and
values. An optional `decode` callable converts decoded JSON into the topic's
type when a value arrives from outside.

- `set(msg)` stores a value and pushes it to all subscribers.
- `try_get()` returns the most recent value, or `None`.
- `await get()` waits until a value is available and returns it.
- `modify(cb)` calls `cb` with the current value (or `None`) under the
  topic's lock and sets what it returns, unless that is `None`.
- `set_if_changed(msg)` sets only if the value differs from the current one.
- `toggle(default)` inverts the value, starting from `default` if none is set.
- `set_from_bytes(msg)` / `set_from_json_value(value)` set the topic from
  JSON; a payload that does not decode or fit raises `ValueError`.
- `try_get_as_bytes()` / `try_get_json_value()` return the current value as
  compact JSON bytes or as decoded JSON, or `None`.
- `subscribe(sender)` and `subscribe_unbounded()` deliver native values;
  the current value is enqueued at once.
- `subscribe_as_bytes(sender, enqueue_retained)` delivers
  `(path, json_bytes)` pairs, optionally starting with all retained values.
- `Topic.anonymous(initial)` creates a topic that is not exposed anywhere.

Subscriptions return a `SubscriptionHandle`; `unsubscribe()` removes the
subscriber and does nothing if it is already gone.

Subscribers are `Channel` objects: thread-safe queues, bounded or unbounded
(`Channel(maxsize=None)`), that can be awaited (`await recv()`, `async for`)
or polled (`try_recv()`, which raises `queue.Empty` when nothing is queued,
and `drain()`). Sending to a full channel raises `ChannelFull`, to a closed
one `ChannelClosed`. When a topic finds a subscriber's channel full it closes
that channel and drops it, so slow consumers are disconnected rather than
left behind.

## Building a broker (`tacd.broker`)

`BrokerBuilder` registers topics with `topic(path, web_readable,
web_writable, persistent, initial, retained_length, decode)` or the
shorthands `topic_ro`, `topic_rw` and `topic_wo` (retaining one value, not
persistent). `build(app, persistence_path)` must be called with a running
event loop; afterwards no more topics can be registered.

```python
import asyncio

from aiohttp import web

from tacd.broker import BrokerBuilder


async def main():
    bb = BrokerBuilder()
    brightness = bb.topic_rw("/v1/tac/display/backlight/brightness", 1.0)
    voltage = bb.topic("/v1/dut/feedback/voltage", True, False, False, None, 200)
    setting = bb.topic("/v1/example/setting", True, True, True, 0, 1)

    app = web.Application()
    bb.build(app, "state.json")

    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "localhost", 8080).start()
    await asyncio.Event().wait()


asyncio.run(main())
```

`build` wires up three things:

- **REST** (`tacd.rest`): every web-readable topic answers `GET` with its
  retained value as `application/json` (404 if it has none yet); every
  web-writable topic accepts `PUT` and `POST` with a JSON body (204 on
  success, 400 on a malformed payload). A read-only and a write-only topic
  may share a path.
- **MQTT over WebSocket** (`tacd.mqtt_conn`, packets in `tacd.mqtt_packets`)
  at `/v1/mqtt`, offering the `mqttv3.1` and `mqtt` sub-protocols. Requests
  without a WebSocket upgrade get 426. Each MQTT packet must arrive in its
  own WebSocket frame. Clients must connect with protocol level 4 and no user
  name, password or will. Subscriptions (wildcards included) to readable
  topics are acknowledged with QoS 0 and receive the retained values first.
  Publishes must be QoS 0, retained and not duplicates, and set the writable
  topic of that name. Anything else ends the connection with an error close
  frame. At most 4096 outgoing messages are queued per connection; overflowing
  that queue also ends the connection.
- **Persistence** (`tacd.persistence`): persistent topics are loaded from the
  state file (default `/srv/tacd/state.json`; a missing file keeps the
  defaults) and the file is rewritten whenever one of them changes. The file
  holds `{"format_version": 1, "persistent_topics": {path: value, ...}}`; it
  is written to a `.tmp` file first and then moved into place. An unknown
  version, malformed content or keys that match no persistent topic raise
  `PersistenceError`.

## Backlight (`tacd.backlight`)

`Backlight(bb, device)` registers the read-write topic
`/v1/tac/display/backlight/brightness` with initial value `1.0`, reads the
device's maximum brightness, and — once `start()` is called in a running
event loop — sets the device brightness for every new value.
`scale_brightness(fraction, max_brightness)` maps a fraction to
`0..max_brightness`; fractions above 0.01 never turn the light fully off.
Failed writes are logged as warnings.

Devices:

- `SysfsBacklight(name, root)` reads and writes `brightness` and
  `max_brightness` under `/sys/class/backlight/<name>` (the default device).
- `DemoBacklight(path)` reports a maximum brightness of 8 and only logs
  what it would write.

## What this package does not do

- It has no command-line program; starting the web server and event loop is
  up to the application, as in the example above.
- It has no authentication or TLS of its own.
- Its MQTT support covers only the subset described above: no QoS 1 or 2
  delivery, no sessions, wills or credentials, and no MQTT over plain TCP.
- Apart from the backlight it does not talk to any hardware.