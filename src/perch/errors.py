"""Perch exception hierarchy.

Shared across the lifecycle, registry, stages, and server so every module
raises and catches the same types.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from perch.lifecycle import LifecycleState


class PerchError(Exception):
    """Base for all perch-specific errors."""


class ConfigurationError(PerchError):
    """Raised when context configuration is invalid.

    Also wraps unexpected failures while the pipeline is being assembled,
    so a failed start always surfaces as a perch error.
    """


class IllegalLifecycleState(PerchError):  # noqa: N818
    """A mutating call was made in a lifecycle state that forbids it.

    Never retried internally. The caller fixes it by reordering calls.
    """

    def __init__(self, operation: str, state: LifecycleState | str, detail: str = "") -> None:
        self.operation = operation
        self.state = state
        label = getattr(state, "value", state)
        msg = f"Cannot call {operation}() while the context is {label}."
        if detail:
            msg = f"{msg} {detail}"
        super().__init__(msg)


class DuplicateName(PerchError):  # noqa: N818
    """A unit or interceptor with this name is already registered."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"A {kind} named {name!r} is already registered.")


class ClassResolutionError(PerchError):
    """A class name could not be turned into an instance.

    The underlying import or constructor error is chained as ``__cause__``.
    """

    def __init__(self, class_name: str, detail: str = "") -> None:
        self.class_name = class_name
        msg = f"Cannot resolve {class_name!r}"
        super().__init__(f"{msg}: {detail}" if detail else f"{msg}.")


@dataclass(frozen=True, slots=True)
class HTTPError(PerchError):
    """An error that maps directly to an HTTP status code.

    Raised by the stages or by units. The ASGI handler catches these and
    renders them, through a registered error page when one exists.
    """

    status: int
    detail: str = ""
    headers: tuple[tuple[str, str], ...] = ()

    def __str__(self) -> str:
        if self.detail:
            return f"{self.status}: {self.detail}"
        return str(self.status)


class NotFound(HTTPError):  # noqa: N818
    """404 — no unit is mapped to the request path."""

    def __init__(self, detail: str = "Not Found") -> None:
        super().__init__(status=404, detail=detail)


class Unauthorized(HTTPError):  # noqa: N818
    """401 — the resource requires an authenticated user."""

    def __init__(self, detail: str = "Unauthorized") -> None:
        super().__init__(status=401, detail=detail, headers=(("WWW-Authenticate", "Bearer"),))


class Forbidden(HTTPError):  # noqa: N818
    """403 — the user is authenticated but lacks a required role."""

    def __init__(self, detail: str = "Forbidden") -> None:
        super().__init__(status=403, detail=detail)


class ServiceUnavailable(HTTPError):  # noqa: N818
    """503 — the context is not started, so no pipeline is installed."""

    def __init__(self, detail: str = "Service Unavailable") -> None:
        super().__init__(status=503, detail=detail)
