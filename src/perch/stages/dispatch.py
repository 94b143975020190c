"""Dispatch stage — routes a request to a registered unit.

Always the innermost stage. It has nothing to route until the context
finishes starting and hands it the frozen registration snapshot through
``finalize_routing()``; until then every request is answered with 503.

A dispatch runs the unit wrapped in the interceptors mapped for the
request path, the unit name, and the dispatch type::

    interceptor_1(request, next) -> interceptor_2(request, next) -> unit(request)
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeAlias

from perch._internal.invoke import invoke
from perch.errors import NotFound, ServiceUnavailable
from perch.http.request import Request
from perch.http.response import Response, to_response
from perch.registry.holders import InterceptorHolder, UnitHolder
from perch.registry.mapping import DispatchType
from perch.registry.table import RegistrationSnapshot
from perch.routing.route import Route
from perch.routing.router import Router

logger = logging.getLogger("perch.server")

Next: TypeAlias = Callable[[Request], Awaitable[Response]]


class DispatchStage:
    """Innermost stage: path to unit lookup, interceptors, unit call."""

    __slots__ = ("_router", "_snapshot", "_started")

    def __init__(self) -> None:
        self._started = False
        self._router: Router | None = None
        self._snapshot: RegistrationSnapshot | None = None

    @property
    def next(self) -> None:
        """Always ``None``; dispatch ends the chain."""
        return None

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def routing_ready(self) -> bool:
        return self._router is not None

    @property
    def router(self) -> Router | None:
        return self._router

    async def start(self) -> None:
        self._started = True

    async def stop(self) -> None:
        self._started = False
        self._router = None
        self._snapshot = None

    def finalize_routing(self, snapshot: RegistrationSnapshot) -> None:
        """Build the path to unit index from the frozen registrations."""
        router = Router()
        for mapping in snapshot.unit_mappings:
            router.add(Route(mapping.pattern, mapping.unit_name))
        router.compile()
        self._snapshot = snapshot
        self._router = router
        logger.debug(
            "routing finalized: %d units, %d patterns, %d interceptor mappings",
            len(snapshot.units),
            len(snapshot.unit_mappings),
            len(snapshot.interceptor_mappings),
        )

    def lookup_unit_by_name(self, name: str) -> UnitHolder | None:
        """The started unit called *name*, or ``None`` before routing is finalized."""
        if self._snapshot is None:
            return None
        return self._snapshot.unit(name)

    async def handle(self, request: Request) -> Response:
        if self._router is None:
            raise ServiceUnavailable("Routing is not finalized.")
        match = self._router.match(request.path)
        routed = request.with_dispatch(
            request.dispatch_type,
            unit_name=match.unit_name,
            path_params=match.path_params,
        )
        return await self.dispatch(match.unit_name, routed, request.dispatch_type)

    async def dispatch(
        self,
        unit_name: str,
        request: Request,
        dispatch_type: DispatchType = DispatchType.REQUEST,
    ) -> Response:
        """Run unit *unit_name* for *request* under *dispatch_type*.

        Raises ``NotFound`` if no such unit is registered.
        """
        snapshot = self._snapshot
        if snapshot is None:
            raise ServiceUnavailable("Routing is not finalized.")
        holder = snapshot.unit(unit_name)
        if holder is None:
            raise NotFound(f"No unit named {unit_name!r}")

        request = request.with_dispatch(dispatch_type, unit_name=unit_name)
        interceptors = snapshot.interceptors_for(request.path, unit_name, dispatch_type)
        handler = _build_chain(holder, interceptors)
        return await handler(request)


def _build_chain(unit: UnitHolder, interceptors: list[InterceptorHolder]) -> Next:
    """Wrap the unit call in the interceptors, first one outermost."""

    async def call_unit(req: Request) -> Response:
        return to_response(await invoke(unit.instance, req))

    handler: Next = call_unit
    for holder in reversed(interceptors):
        outer = handler
        interceptor = holder.instance

        async def make_next(req: Request, _ic: Any = interceptor, _next: Next = outer) -> Response:
            return to_response(await invoke(_ic, req, _next))

        handler = make_next
    return handler


class Dispatcher:
    """Runs one named unit on behalf of another.

    Obtained from ``ContextBinding.get_named_dispatcher()``. The unit is
    resolved when the dispatcher is used, not when it is created.
    """

    __slots__ = ("_name", "_stage")

    def __init__(self, stage: Callable[[], DispatchStage | None], name: str) -> None:
        self._stage = stage
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def _require_stage(self) -> DispatchStage:
        stage = self._stage()
        if stage is None or not stage.routing_ready:
            msg = f"Cannot dispatch to {self._name!r}: the context is not started."
            raise ServiceUnavailable(msg)
        return stage

    async def forward(self, request: Request) -> Response:
        """Hand the request over to the named unit."""
        return await self._require_stage().dispatch(self._name, request, DispatchType.FORWARD)

    async def include(self, request: Request) -> Response:
        """Run the named unit and return its response for the caller to merge."""
        return await self._require_stage().dispatch(self._name, request, DispatchType.INCLUDE)

    def __repr__(self) -> str:
        return f"<Dispatcher {self._name!r}>"
