"""REST access to topics: GET reads the retained value, PUT and POST set it."""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable

from aiohttp import web

from .topic import Topic

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


async def get_handler(topic: Topic, request: web.Request) -> web.Response:
    """Return the topic's current value as JSON, or 404 if it has none."""
    serialized = topic.try_get_as_bytes()
    if serialized is None:
        raise web.HTTPNotFound(text="Don't have a retained message yet")
    return web.Response(status=200, body=serialized, content_type="application/json")


async def put_handler(topic: Topic, request: web.Request) -> web.Response:
    """Set the topic from the JSON request body; 400 if it does not fit."""
    body = await request.read()
    try:
        topic.set_from_bytes(body)
    except ValueError:
        raise web.HTTPBadRequest(text="Malformed payload") from None
    return web.Response(status=204)


def _bind(handler: Callable[[Topic, web.Request], Awaitable[web.Response]], topic: Topic) -> Handler:
    async def bound(request: web.Request) -> web.Response:
        return await handler(topic, request)

    return bound


def register(app: web.Application, topics: Iterable[Topic]) -> None:
    """Add a route for every topic that is readable or writable from the web."""
    resources: dict[str, web.Resource] = {}

    for topic in topics:
        if not (topic.web_readable or topic.web_writable):
            continue

        resource = resources.get(topic.path)
        if resource is None:
            resource = app.router.add_resource(topic.path)
            resources[topic.path] = resource

        if topic.web_readable:
            resource.add_route("GET", _bind(get_handler, topic))

        if topic.web_writable:
            resource.add_route("PUT", _bind(put_handler, topic))
            resource.add_route("POST", _bind(put_handler, topic))