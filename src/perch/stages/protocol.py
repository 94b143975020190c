"""Stage protocols and the shared wrapper behaviour.

A stage is one link of the assembled pipeline. Wrapping stages (session,
security) delegate to ``next`` or short-circuit; the dispatch stage is
always innermost and has no ``next``::

    class Timing(WrappingStage):
        async def handle(self, request: Request) -> Response:
            start = time.monotonic()
            response = await self.call_next(request)
            return response.with_header("X-Time", f"{time.monotonic() - start:.3f}")

Custom stages do not have to subclass ``WrappingStage``; the assembler
checks the shape, not the lineage.
"""

from typing import Protocol, runtime_checkable

from perch.errors import ConfigurationError
from perch.http.request import Request
from perch.http.response import Response


@runtime_checkable
class RequestHandler(Protocol):
    """Anything that turns a request into a response."""

    async def handle(self, request: Request) -> Response: ...


@runtime_checkable
class Stage(RequestHandler, Protocol):
    """A pipeline stage with its own start/stop lifecycle."""

    @property
    def is_started(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


@runtime_checkable
class WrapperStage(Stage, Protocol):
    """A stage that wraps the next handler in the chain."""

    @property
    def next(self) -> RequestHandler | None: ...

    def set_next(self, handler: RequestHandler | None) -> None: ...


class WrappingStage:
    """Default ``next``/``start``/``stop`` plumbing for wrapper stages."""

    __slots__ = ("_next", "_started")

    def __init__(self) -> None:
        self._next: RequestHandler | None = None
        self._started = False

    @property
    def next(self) -> RequestHandler | None:
        return self._next

    def set_next(self, handler: RequestHandler | None) -> None:
        if self._started:
            msg = f"Cannot rewire {type(self).__name__} while it is started."
            raise ConfigurationError(msg)
        self._next = handler

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        self._started = True

    async def stop(self) -> None:
        self._started = False

    async def call_next(self, request: Request) -> Response:
        handler = self._next
        if handler is None:
            msg = f"{type(self).__name__} has no next handler; was the pipeline assembled?"
            raise ConfigurationError(msg)
        return await handler.handle(request)

    async def handle(self, request: Request) -> Response:
        return await self.call_next(request)


def walk_chain(handler: RequestHandler | None) -> tuple[RequestHandler, ...]:
    """The chain starting at *handler*, outermost first."""
    chain: list[RequestHandler] = []
    seen: set[int] = set()
    current = handler
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(current)
        current = getattr(current, "next", None)
    return tuple(chain)
