"""Error handling for perch requests.

Maps HTTPError exceptions and unexpected failures to responses. When an
error page is registered for the status, the named unit renders it under
``DispatchType.ERROR``; otherwise a plain-text default is returned.
"""

import logging
from collections.abc import Mapping

from perch.errors import HTTPError
from perch.http.request import Request
from perch.http.response import Response
from perch.registry.mapping import DispatchType
from perch.stages.dispatch import DispatchStage

logger = logging.getLogger("perch.server")

# Request attribute holding the exception during an error dispatch
ERROR_ATTRIBUTE = "perch.error"


async def render_error_page(
    status: int,
    exc: Exception,
    request: Request,
    error_pages: Mapping[int, str],
    dispatch: DispatchStage | None,
) -> Response | None:
    """Dispatch the error page unit for *status*, if one is registered.

    Returns ``None`` when there is no page to render or the page itself
    fails, so the caller falls back to the default body.
    """
    unit_name = error_pages.get(status)
    if unit_name is None or dispatch is None or not dispatch.routing_ready:
        return None

    request.attributes[ERROR_ATTRIBUTE] = exc
    try:
        response = await dispatch.dispatch(unit_name, request, DispatchType.ERROR)
    except Exception:
        logger.exception("error page %r for %d failed", unit_name, status)
        return None

    # Keep the error status unless the page chose its own
    if response.status == 200:
        response = response.with_status(status)
    return response


async def handle_http_error(
    exc: HTTPError,
    request: Request,
    error_pages: Mapping[int, str],
    dispatch: DispatchStage | None,
    debug: bool,
) -> Response:
    """Map an HTTPError to a Response."""
    logger.debug("%d %s %s: %s", exc.status, request.method, request.path, exc.detail)

    response = await render_error_page(exc.status, exc, request, error_pages, dispatch)
    if response is None:
        detail = exc.detail or f"Error {exc.status}"
        if debug and exc.detail:
            detail = f"{exc.status}: {exc.detail}"
        response = Response(body=detail, content_type="text/plain; charset=utf-8").with_status(
            exc.status
        )

    for name, value in exc.headers:
        response = response.with_header(name, value)
    return response


async def handle_internal_error(
    exc: Exception,
    request: Request,
    error_pages: Mapping[int, str],
    dispatch: DispatchStage | None,
    debug: bool,
) -> Response:
    """Handle unexpected exceptions as 500 errors."""
    logger.exception("500 %s %s", request.method, request.path)

    response = await render_error_page(500, exc, request, error_pages, dispatch)
    if response is not None:
        return response

    body = f"{type(exc).__name__}: {exc}" if debug else "Internal Server Error"
    return Response(body=body, status=500, content_type="text/plain; charset=utf-8")
