"""REST API over the registry store.

Uses aiohttp's AppRunner/TCPSite for non-blocking start/stop. Request and
response bodies use the same JSON encoding as the log records, so a document
read from the API can be written back unchanged.
"""

from __future__ import annotations

import logging
from typing import Any

from aiohttp import web
from pydantic import BaseModel, ValidationError

from pubsub_registry.config import settings
from pubsub_registry.errors import (
    AlreadyExistsError,
    ConfigValidationError,
    LogUnavailableError,
    NotFoundError,
    RegistryError,
)
from pubsub_registry.model import FunctionConfig, Status, TopicConfig
from pubsub_registry.store import MaterializedStore
from pubsub_registry.validation import validate_topic_config

logger = logging.getLogger(__name__)

STORE_KEY = web.AppKey("store", MaterializedStore)


class _BadRequest(Exception):
    """The request body could not be parsed into a document."""


_ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (_BadRequest, 400),
    (NotFoundError, 404),
    (AlreadyExistsError, 409),
    (ConfigValidationError, 422),
    (LogUnavailableError, 503),
]


@web.middleware
async def _error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Translate registry errors into JSON error responses."""
    try:
        return await handler(request)
    except (_BadRequest, RegistryError) as exc:
        status = next((code for exc_type, code in _ERROR_STATUS if isinstance(exc, exc_type)), 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc)
        else:
            logger.info("%s %s rejected (%d): %s", request.method, request.path, status, exc)
        return web.json_response({"error": str(exc)}, status=status)


def _dump(doc: BaseModel) -> dict[str, Any]:
    return doc.model_dump(mode="json", by_alias=True)


async def _read_body(request: web.Request, model: type[BaseModel]) -> Any:
    try:
        payload = await request.json()
    except ValueError:
        raise _BadRequest("invalid JSON") from None
    if not isinstance(payload, dict):
        raise _BadRequest("expected a JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise _BadRequest(f"invalid document: {exc.error_count()} error(s)") from None


def _path_document(request: web.Request, doc: FunctionConfig) -> FunctionConfig:
    """Bind identity fields to the tenant and name in the URL."""
    return doc.model_copy(
        update={"tenant": request.match_info["tenant"], "name": request.match_info["name"]}
    )


# -- Handlers --------------------------------------------------------------------


async def _health(request: web.Request) -> web.Response:
    """GET /health: ok while replay is keeping up with the log."""
    store = request.app[STORE_KEY]
    body = {
        "status": "ok" if store.healthy else "degraded",
        "replayFailures": store.consecutive_failures,
        "replayRestarts": store.restarts,
    }
    return web.json_response(body, status=200 if store.healthy else 503)


async def _list_functions(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    return web.json_response([_dump(doc) for doc in store.load()])


async def _get_function(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    doc = store.get_by_topic(request.match_info["tenant"], request.match_info["name"])
    return web.json_response(_dump(doc))


async def _create_function(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    doc = _path_document(request, await _read_body(request, FunctionConfig))
    key = await store.create(doc)
    return web.json_response(_dump(store.get_by_key(key)), status=201)


async def _update_function(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    doc = _path_document(request, await _read_body(request, FunctionConfig))
    key = await store.update(doc)
    if doc.function_status == Status.DELETED:
        return web.json_response({"key": key})
    return web.json_response(_dump(store.get_by_key(key)))


async def _delete_function(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    key = await store.delete(request.match_info["tenant"], request.match_info["name"])
    return web.json_response({"key": key})


async def _get_by_key(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    return web.json_response(_dump(store.get_by_key(request.match_info["key"])))


async def _delete_by_key(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    key = await store.delete_by_key(request.match_info["key"])
    return web.json_response({"key": key})


async def _validate_topic(request: web.Request) -> web.Response:
    """POST /v2/topics/validate: check a topic's webhooks and return its key."""
    topic = await _read_body(request, TopicConfig)
    return web.json_response({"key": validate_topic_config(topic)})


def _create_web_app(store: MaterializedStore) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application(middlewares=[_error_middleware])
    app[STORE_KEY] = store
    app.router.add_get("/health", _health)
    app.router.add_get("/v2/functions", _list_functions)
    app.router.add_get("/v2/functions/{tenant}/{name}", _get_function)
    app.router.add_post("/v2/functions/{tenant}/{name}", _create_function)
    app.router.add_put("/v2/functions/{tenant}/{name}", _update_function)
    app.router.add_delete("/v2/functions/{tenant}/{name}", _delete_function)
    app.router.add_get("/v2/keys/{key}", _get_by_key)
    app.router.add_delete("/v2/keys/{key}", _delete_by_key)
    app.router.add_post("/v2/topics/validate", _validate_topic)
    return app


class RegistryServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(self, store: MaterializedStore, host: str | None = None, port: int | None = None) -> None:
        self.store = store
        self.host = settings.http_host if host is None else host
        self.port = settings.http_port if port is None else port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start serving the REST API."""
        self._runner = web.AppRunner(_create_web_app(self.store))
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("Registry API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Registry API stopped")
