"""ASGI request handler — drives one HTTP request through the pipeline."""

import logging
from collections.abc import Mapping
from contextvars import ContextVar

from perch._internal.asgi import Receive, Scope, Send
from perch.errors import HTTPError, NotFound, ServiceUnavailable
from perch.http.request import Request
from perch.http.response import Response
from perch.server.errors import handle_http_error, handle_internal_error
from perch.server.sender import send_response
from perch.stages.dispatch import DispatchStage
from perch.stages.protocol import RequestHandler

logger = logging.getLogger("perch.server")

request_var: ContextVar[Request] = ContextVar("perch_request")


def get_request() -> Request:
    """The request currently being handled.

    Raises ``LookupError`` outside request handling.
    """
    return request_var.get()


def strip_context_path(path: str, context_path: str) -> str | None:
    """*path* relative to *context_path*, or ``None`` if it lies outside it."""
    if not context_path:
        return path
    if path == context_path:
        return "/"
    if path.startswith(context_path + "/"):
        return path[len(context_path) :]
    return None


async def handle_request(
    scope: Scope,
    receive: Receive,
    send: Send,
    *,
    handler: RequestHandler | None,
    context_path: str,
    error_pages: Mapping[int, str],
    dispatch: DispatchStage | None,
    debug: bool,
) -> None:
    """Process a single HTTP request through the installed handler."""
    if scope["type"] != "http":
        return

    request = Request.from_asgi(scope, receive, context_path=context_path)
    token = request_var.set(request)
    try:
        if handler is None:
            raise ServiceUnavailable("The context is not started.")
        if strip_context_path(scope["path"], context_path) is None:
            raise NotFound(f"{scope['path']!r} is outside {context_path!r}")
        response: Response = await handler.handle(request)
    except HTTPError as exc:
        response = await handle_http_error(exc, request, error_pages, dispatch, debug)
    except Exception as exc:
        response = await handle_internal_error(exc, request, error_pages, dispatch, debug)
    finally:
        request_var.reset(token)

    await send_response(response, send)
