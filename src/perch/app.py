"""Perch application context.

Owns the registration table, the lifecycle, and the three stage slots.
Configurable until ``start()``; from then on the assembled pipeline is
fixed and the registration table is frozen until ``stop()``.
"""

import inspect
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from types import MappingProxyType
from typing import Any

from perch._internal.asgi import Receive, Scope, Send
from perch._internal.invoke import invoke
from perch._internal.types import Interceptor, LifecycleHook, Unit
from perch.config import ContextConfig, Options
from perch.context import ContextBinding
from perch.errors import ConfigurationError, IllegalLifecycleState, PerchError
from perch.lifecycle import Lifecycle, LifecycleState
from perch.loading import instantiate, load_class
from perch.registry.binding import Binding
from perch.registry.holders import InterceptorRegistration, UnitRegistration
from perch.registry.mapping import DispatchType
from perch.registry.table import RegistrationTable
from perch.server.handler import handle_request
from perch.stages.dispatch import DispatchStage
from perch.stages.factory import StageKind, StageSlot
from perch.stages.protocol import RequestHandler, WrapperStage, walk_chain
from perch.stages.security import SecurityStage
from perch.stages.session import SessionStage

logger = logging.getLogger("perch.app")

# Stage setters and hook registration are only accepted while idle
_IDLE = frozenset({LifecycleState.UNINITIALIZED, LifecycleState.STOPPED})

# Owner registration is also accepted from hooks while starting
_REGISTERING = _IDLE | {LifecycleState.STARTING}


class App:
    """A perch application context.

    Usage::

        app = App(options=Options.SESSIONS | Options.SECURITY)

        @app.unit("/users/{id:int}")
        async def user_detail(request: Request) -> dict:
            return {"id": request.path_params["id"]}

        @app.interceptor("/*")
        async def timing(request: Request, next: Next) -> Response:
            return await next(request)

    The pipeline is assembled on ``start()`` (ASGI lifespan startup) as
    session -> security -> dispatch, outermost first, with disabled
    stages left out.

    Thread safety:
        Configuration and the lifecycle run on a single control task.
        Once started, ``handler`` is read concurrently by request tasks
        and is not replaced until ``stop()``.
    """

    __slots__ = (
        "_error_pages",
        "_handler",
        "_shutdown_hooks",
        "_slots",
        "_startup_hooks",
        "_table",
        "binding",
        "config",
        "default_security_stage_class",
        "lifecycle",
    )

    def __init__(
        self,
        config: ContextConfig | None = None,
        *,
        options: Options | None = None,
        session_stage: WrapperStage | None = None,
        security_stage: WrapperStage | None = None,
        dispatch_stage: DispatchStage | None = None,
    ) -> None:
        config = config or ContextConfig()
        if options is not None:
            config = replace(config, options=options)
        self.config: ContextConfig = config
        self.lifecycle = Lifecycle(config.display_name)
        self._table = RegistrationTable()
        self._slots: dict[StageKind, StageSlot[Any]] = {
            StageKind.SESSION: StageSlot(StageKind.SESSION, session_stage),
            StageKind.SECURITY: StageSlot(StageKind.SECURITY, security_stage),
            StageKind.DISPATCH: StageSlot(StageKind.DISPATCH, dispatch_stage),
        }
        self._handler: RequestHandler | None = None
        self._startup_hooks: list[LifecycleHook] = []
        self._shutdown_hooks: list[LifecycleHook] = []
        self._error_pages: dict[int, str] = {}

        # A class or "module:Class" name; instantiated by new_security_stage()
        self.default_security_stage_class: type | str = SecurityStage

        self.binding = ContextBinding(
            self._table,
            self.lifecycle,
            self._slots[StageKind.DISPATCH],
            config,
        )

    # -- Introspection --

    @property
    def state(self) -> LifecycleState:
        return self.lifecycle.state

    @property
    def table(self) -> RegistrationTable:
        return self._table

    @property
    def handler(self) -> RequestHandler | None:
        """The installed pipeline entry, or ``None`` when not started."""
        return self._handler

    @property
    def pipeline(self) -> tuple[RequestHandler, ...]:
        """The installed stages, outermost first."""
        return walk_chain(self._handler)

    @property
    def error_pages(self) -> Mapping[int, str]:
        return MappingProxyType(self._error_pages)

    # -- Stage factories --

    def new_session_stage(self) -> WrapperStage:
        """Default session stage. Override to customize."""
        return SessionStage()

    def new_security_stage(self) -> WrapperStage:
        """Default security stage, built from ``default_security_stage_class``."""
        target = self.default_security_stage_class
        try:
            cls = load_class(target) if isinstance(target, str) else target
            return instantiate(cls)
        except PerchError as exc:
            msg = f"Cannot create the default security stage from {target!r}: {exc}"
            raise ConfigurationError(msg) from exc

    def new_dispatch_stage(self) -> DispatchStage:
        """Default dispatch stage. Override to customize."""
        return DispatchStage()

    def _factory(self, kind: StageKind) -> Callable[[], Any]:
        match kind:
            case StageKind.SESSION:
                return self.new_session_stage
            case StageKind.SECURITY:
                return self.new_security_stage
            case _:
                return self.new_dispatch_stage

    def get_or_create_stage(self, kind: StageKind) -> Any:
        """Return the stage for *kind*, creating it if the options allow.

        ``None`` when the kind is disabled, or when the context has started
        without one.
        """
        return self._slots[kind].get_or_create(
            options=self.config.options,
            state=self.lifecycle.state,
            factory=self._factory(kind),
        )

    def get_session_stage(self) -> WrapperStage | None:
        return self.get_or_create_stage(StageKind.SESSION)

    def get_security_stage(self) -> WrapperStage | None:
        return self.get_or_create_stage(StageKind.SECURITY)

    def get_dispatch_stage(self) -> DispatchStage | None:
        return self.get_or_create_stage(StageKind.DISPATCH)

    # -- Stage setters --

    def _set_stage(self, kind: StageKind, stage: Any, operation: str) -> None:
        self._check_state(operation, _IDLE)
        self._slots[kind].value = stage

    def set_session_stage(self, stage: WrapperStage | None) -> None:
        self._set_stage(StageKind.SESSION, stage, "set_session_stage")

    def set_security_stage(self, stage: WrapperStage | None) -> None:
        self._set_stage(StageKind.SECURITY, stage, "set_security_stage")

    def set_dispatch_stage(self, stage: DispatchStage | None) -> None:
        self._set_stage(StageKind.DISPATCH, stage, "set_dispatch_stage")

    # -- Registration --

    def add_unit(
        self,
        target: Unit | type | str,
        *patterns: str,
        name: str | None = None,
    ) -> UnitRegistration:
        """Register a unit and map it to *patterns*.

        *name* defaults to the target's qualified name, suffixed ``-N``
        when that is taken.
        """
        self._check_state("add_unit", _REGISTERING)
        binding = Binding.of(target)
        name = name or _unique_name(binding.label, self._table.unit_names())
        conflicts = self._table.conflicting_patterns(name, patterns)
        if conflicts:
            msg = f"Unit {name!r}: patterns already mapped to another unit: {sorted(conflicts)}"
            raise ConfigurationError(msg)
        registration = self._table.register_unit(name, binding)
        if patterns:
            registration.add_mapping(*patterns)
        return registration

    def add_interceptor(
        self,
        target: Interceptor | type | str,
        *patterns: str,
        dispatch_types: DispatchType = DispatchType.REQUEST,
        unit_names: Iterable[str] = (),
        name: str | None = None,
    ) -> InterceptorRegistration:
        """Register an interceptor for *patterns* and/or *unit_names*."""
        self._check_state("add_interceptor", _REGISTERING)
        binding = Binding.of(target)
        name = name or _unique_name(binding.label, self._table.interceptor_names())
        registration = self._table.register_interceptor(name, binding, dispatch_types)
        if patterns:
            registration.add_mapping_for_paths(*patterns)
        unit_names = tuple(unit_names)
        if unit_names:
            registration.add_mapping_for_unit_names(*unit_names)
        return registration

    def unit(
        self,
        pattern: str,
        *patterns: str,
        name: str | None = None,
    ) -> Callable[[Unit], Unit]:
        """Register a unit via decorator."""

        def decorator(func: Unit) -> Unit:
            self.add_unit(func, pattern, *patterns, name=name)
            return func

        return decorator

    def interceptor(
        self,
        pattern: str,
        *patterns: str,
        dispatch_types: DispatchType = DispatchType.REQUEST,
        name: str | None = None,
    ) -> Callable[[Interceptor], Interceptor]:
        """Register an interceptor via decorator."""

        def decorator(func: Interceptor) -> Interceptor:
            self.add_interceptor(
                func, pattern, *patterns, dispatch_types=dispatch_types, name=name
            )
            return func

        return decorator

    def error_page(self, status: int, unit_name: str) -> None:
        """Render errors with *status* by dispatching *unit_name* (``ERROR``)."""
        self._check_state("error_page", _REGISTERING)
        self._table.check_mutable("error_page")
        self._error_pages[status] = unit_name

    def clear_registrations(self) -> None:
        """Drop every unit, interceptor, mapping, and error page."""
        self._check_state("clear_registrations", _IDLE)
        self._table.clear()
        self._error_pages.clear()

    # -- Lifecycle hooks --

    def on_startup(self, func: LifecycleHook) -> LifecycleHook:
        """Register a startup hook via decorator.

        Hooks run in registration order while the context is starting,
        after the stages start and before units and interceptors do. A
        hook taking one argument receives the ``ContextBinding``, so it
        can still register units::

            @app.on_startup
            async def setup(binding: ContextBinding) -> None:
                binding.add_unit("health", health).add_mapping("/health")
        """
        self._check_idle("on_startup")
        self._startup_hooks.append(func)
        return func

    def on_shutdown(self, func: LifecycleHook) -> LifecycleHook:
        """Register a shutdown hook via decorator. Runs before units are destroyed."""
        self._check_idle("on_shutdown")
        self._shutdown_hooks.append(func)
        return func

    def _check_idle(self, operation: str) -> None:
        self._check_state(operation, _IDLE)

    def _check_state(self, operation: str, allowed: frozenset[LifecycleState]) -> None:
        state = self.lifecycle.state
        if state not in allowed:
            raise IllegalLifecycleState(operation, state)

    async def _call_hook(self, hook: LifecycleHook) -> None:
        try:
            takes_binding = bool(inspect.signature(hook).parameters)
        except (TypeError, ValueError):
            takes_binding = False
        if takes_binding:
            await invoke(hook, self.binding)
        else:
            await invoke(hook)

    # -- Start / stop --

    async def start(self) -> None:
        """Assemble the pipeline and start the context.

        Anything registered while starting is transient: ``stop()`` drops
        it so the hooks can register it again on the next start.

        On failure, whatever already started is stopped again and the
        context is left ``failed`` with no handler installed.
        ``ClassResolutionError`` and other perch errors propagate as they
        are; anything else is wrapped in ``ConfigurationError``.
        """
        name = self.config.display_name
        self.lifecycle.begin_start()
        self._table.record_transient(True)
        logger.debug("starting %s", name)
        try:
            self._assemble()
            await self._start_context()
            self._table.record_transient(False)
            self.lifecycle.finish_start()
            dispatch = self._slots[StageKind.DISPATCH].value
            if dispatch is not None and dispatch.is_started:
                dispatch.finalize_routing(self._table.freeze())
        except PerchError as exc:
            await self._abort_start(exc)
            raise
        except Exception as exc:
            await self._abort_start(exc)
            msg = f"Failed to start {name!r}: {type(exc).__name__}: {exc}"
            raise ConfigurationError(msg) from exc
        logger.info(
            "started %s (%s)",
            name,
            " -> ".join(type(stage).__name__ for stage in self.pipeline),
        )

    def _assemble(self) -> None:
        """Wire session -> security -> dispatch and install the result."""
        dispatch = self.get_dispatch_stage()
        if dispatch is None:
            msg = "No dispatch stage is available."
            raise ConfigurationError(msg)
        security = self.get_security_stage()
        session = self.get_session_stage()

        innermost: RequestHandler = dispatch
        for kind, stage in ((StageKind.SECURITY, security), (StageKind.SESSION, session)):
            if stage is None:
                continue
            if not isinstance(stage, WrapperStage):
                msg = f"The {kind.value} stage {stage!r} cannot wrap another handler."
                raise ConfigurationError(msg)
            stage.set_next(innermost)
            innermost = stage
        self._handler = innermost

    async def _start_context(self) -> None:
        for stage in reversed(self.pipeline):
            await stage.start()
        for hook in self._startup_hooks:
            await self._call_hook(hook)
        started = await self._table.start_holders(self.binding)
        logger.debug("started %d units and interceptors", started)

    async def _abort_start(self, exc: BaseException) -> None:
        """Stop what a failed start already started, then mark the context failed."""
        self._table.record_transient(False)
        try:
            await self._table.stop_holders()
        except Exception:
            logger.warning("units or interceptors did not stop cleanly after the failed start")
        for stage in self.pipeline:
            if not stage.is_started:
                continue
            try:
                await stage.stop()
            except Exception:
                logger.exception("error stopping %s after the failed start", type(stage).__name__)
        self._fail(exc)

    def _fail(self, exc: BaseException) -> None:
        self.lifecycle.fail(exc)
        self._handler = None

    async def stop(self) -> None:
        """Run shutdown hooks, destroy units, stop the stages, reopen the table.

        Registrations made while starting are dropped; the rest are kept
        for the next start.
        """
        self.lifecycle.begin_stop()
        try:
            for hook in self._shutdown_hooks:
                await self._call_hook(hook)
            await self._table.stop_holders()
            for stage in self.pipeline:
                await stage.stop()
        except Exception as exc:
            self._fail(exc)
            raise
        self._handler = None
        self._table.thaw()
        self._table.discard_transient()
        self.lifecycle.finish_stop()
        logger.info("stopped %s", self.config.display_name)

    # -- ASGI interface --

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI 3.0 entry point."""
        if scope["type"] == "lifespan":
            await self._handle_lifespan(scope, receive, send)
            return

        await handle_request(
            scope,
            receive,
            send,
            handler=self._handler,
            context_path=self.config.context_path.rstrip("/"),
            error_pages=self._error_pages,
            dispatch=self._slots[StageKind.DISPATCH].value,
            debug=self.config.debug,
        )

    async def _handle_lifespan(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Run the ASGI lifespan protocol: startup -> start(), shutdown -> stop()."""
        while True:
            message = await receive()
            msg_type = message["type"]

            if msg_type == "lifespan.startup":
                try:
                    await self.start()
                except Exception as exc:
                    await send({"type": "lifespan.startup.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.startup.complete"})

            elif msg_type == "lifespan.shutdown":
                try:
                    await self.stop()
                except Exception as exc:
                    logger.exception("shutdown of %s failed", self.config.display_name)
                    await send({"type": "lifespan.shutdown.failed", "message": str(exc)})
                    return
                await send({"type": "lifespan.shutdown.complete"})
                return

    def __repr__(self) -> str:
        return f"<App {self.config.display_name!r} {self.lifecycle.state.value}>"


def _unique_name(base: str, taken: Iterable[str]) -> str:
    taken = set(taken)
    if base not in taken:
        return base
    n = 1
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"
