"""Immutable HTTP request.

Frozen metadata with async body access. Forward and include dispatches
derive a new request with ``with_dispatch()`` rather than mutating the
one the transport delivered.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from perch._internal.asgi import Receive, Scope
from perch.http.cookies import parse_cookies
from perch.http.headers import Headers
from perch.registry.mapping import DispatchType


async def _empty_receive() -> dict[str, Any]:
    return {"type": "http.request", "body": b"", "more_body": False}


@dataclass(frozen=True, slots=True)
class Request:
    """An immutable HTTP request.

    ``path`` is relative to the context path; ``context_path`` holds the
    prefix that was stripped. ``attributes`` is the one mutable slot —
    stages and interceptors use it to hand values down the chain.
    """

    method: str
    path: str
    headers: Headers = field(default_factory=Headers)
    query_string: bytes = b""
    path_params: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    context_path: str = ""
    dispatch_type: DispatchType = DispatchType.REQUEST
    unit_name: str | None = None
    server: tuple[str, int] | None = None
    client: tuple[str, int] | None = None
    attributes: dict[str, Any] = field(default_factory=dict, compare=False)

    # Private: ASGI receive callable for body streaming
    _receive: Receive = field(default=_empty_receive, repr=False, compare=False)

    # Private: body cache, shared by every request derived from this one
    _cache: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")

    @property
    def url(self) -> str:
        """Full request path (context path + path + query string)."""
        full = f"{self.context_path}{self.path}" or "/"
        if self.query_string:
            return f"{full}?{self.query_string.decode('latin-1')}"
        return full

    # -- Derivation --

    def with_dispatch(
        self,
        dispatch_type: DispatchType,
        *,
        unit_name: str | None = None,
        path_params: Mapping[str, str] | None = None,
    ) -> Request:
        """Return a copy tagged for another dispatch phase.

        The body cache and attributes are shared with the original, so a
        body read before a forward is not read twice.
        """
        return replace(
            self,
            dispatch_type=dispatch_type,
            unit_name=unit_name if unit_name is not None else self.unit_name,
            path_params=dict(path_params) if path_params is not None else self.path_params,
        )

    # -- Async body access --

    async def body(self) -> bytes:
        """Read the full request body. Cached after the first read."""
        if "_body" in self._cache:
            return self._cache["_body"]
        chunks = [chunk async for chunk in self.stream()]
        result = b"".join(chunks)
        self._cache["_body"] = result
        return result

    async def stream(self) -> AsyncGenerator[bytes]:
        """Stream the request body in chunks."""
        while True:
            message = await self._receive()
            body = message.get("body", b"")
            if body:
                yield body
            if not message.get("more_body", False):
                break

    async def json(self) -> Any:
        return json.loads(await self.body())

    async def text(self) -> str:
        return (await self.body()).decode("utf-8")

    # -- Factory --

    @classmethod
    def from_asgi(cls, scope: Scope, receive: Receive, *, context_path: str = "") -> Request:
        """Create a Request from an ASGI scope, stripping *context_path*."""
        headers = Headers(tuple(scope.get("headers", ())))
        server = scope.get("server")
        client = scope.get("client")
        path: str = scope["path"]
        if context_path and (path == context_path or path.startswith(context_path + "/")):
            path = path[len(context_path) :] or "/"
        return cls(
            method=scope["method"],
            path=path,
            headers=headers,
            query_string=scope.get("query_string", b""),
            cookies=parse_cookies(headers.get("cookie", "")),
            context_path=context_path,
            server=tuple(server) if server else None,
            client=tuple(client) if client else None,
            _receive=receive,
        )
