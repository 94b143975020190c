"""HTTP response with chainable .with_*() transformation API.

Each transformation returns a new Response. Immutable by convention,
built incrementally by design.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, replace
from typing import Any

from perch.http.cookies import SetCookie


@dataclass(frozen=True, slots=True)
class Response:
    """An HTTP response built through immutable transformations.

    Construct with a body, then chain ``.with_*()`` calls to set
    status, headers, and cookies.
    """

    body: str | bytes = ""
    status: int = 200
    content_type: str = "text/html; charset=utf-8"
    headers: tuple[tuple[str, str], ...] = ()
    cookies: tuple[SetCookie, ...] = ()

    def with_status(self, status: int) -> "Response":
        return replace(self, status=status)

    def with_header(self, name: str, value: str) -> "Response":
        return replace(self, headers=(*self.headers, (name, value)))

    def with_headers(self, headers: Mapping[str, str]) -> "Response":
        return replace(self, headers=(*self.headers, *headers.items()))

    def with_content_type(self, content_type: str) -> "Response":
        return replace(self, content_type=content_type)

    def with_cookie(self, cookie: SetCookie) -> "Response":
        return replace(self, cookies=(*self.cookies, cookie))

    def without_cookie(self, name: str, path: str = "/") -> "Response":
        """Return a new Response that tells the client to drop *name*."""
        return self.with_cookie(SetCookie.expired(name, path))

    def header(self, name: str) -> str | None:
        """First value of response header *name* (case-insensitive)."""
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None

    @property
    def body_bytes(self) -> bytes:
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return self.body

    @property
    def text(self) -> str:
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8")
        return self.body

    def json(self) -> Any:
        return json.loads(self.body_bytes)


def redirect(location: str, status: int = 302) -> Response:
    """A bodiless redirect response."""
    return Response(body="", status=status).with_header("Location", location)


def to_response(value: Any) -> Response:
    """Coerce a unit's return value into a Response.

    ``Response`` passes through, ``str`` is HTML, ``bytes`` is an octet
    stream, ``dict``/``list`` are JSON, ``None`` is an empty 204.
    """
    match value:
        case Response():
            return value
        case str():
            return Response(body=value)
        case bytes():
            return Response(body=value, content_type="application/octet-stream")
        case dict() | list():
            return Response(body=json.dumps(value), content_type="application/json")
        case None:
            return Response(body="", status=204)
        case _:
            msg = (
                f"Unit returned {type(value).__name__}, expected Response, str, "
                "bytes, dict, list, or None."
            )
            raise TypeError(msg)
