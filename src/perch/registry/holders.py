"""Holders (the table's records) and registrations (the caller's handles).

A holder owns the binding and, once started, the live object. A
registration is the handle returned to whoever registered it; it keeps an
explicit reference to its table so later mapping calls go through the
table's frozen check.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from perch._internal.invoke import invoke_hook
from perch.registry.binding import Binding
from perch.registry.mapping import DispatchType, InterceptorMapping

if TYPE_CHECKING:
    from perch.registry.table import RegistrationTable

logger = logging.getLogger("perch.registry")


class Holder:
    """Shared record state for units and interceptors."""

    __slots__ = ("_init_parameters", "_instance", "binding", "name")

    kind = "component"

    def __init__(self, name: str, binding: Binding) -> None:
        self.name = name
        self.binding = binding
        self._init_parameters: dict[str, str] = {}
        self._instance: Any = None

    @property
    def started(self) -> bool:
        return self._instance is not None

    @property
    def instance(self) -> Any:
        """The live object. Only available between start and stop."""
        if self._instance is None:
            msg = f"{self.kind} {self.name!r} has not been started."
            raise RuntimeError(msg)
        return self._instance

    @property
    def init_parameters(self) -> Mapping[str, str]:
        return MappingProxyType(self._init_parameters)

    async def start(self, context: Any) -> None:
        """Resolve the binding and run the object's ``init(context)`` hook."""
        if self._instance is not None:
            return
        instance = self.binding.resolve()
        self._instance = instance
        await invoke_hook(instance, "init", context)
        logger.debug("started %s %r (%s)", self.kind, self.name, self.binding.label)

    async def stop(self) -> None:
        """Run ``destroy()`` and drop objects this holder created."""
        instance = self._instance
        if instance is None:
            return
        try:
            await invoke_hook(instance, "destroy")
        finally:
            self._instance = None
        logger.debug("stopped %s %r", self.kind, self.name)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} {self.binding.label}>"


class UnitHolder(Holder):
    __slots__ = ()

    kind = "unit"


class InterceptorHolder(Holder):
    __slots__ = ("dispatch_types",)

    kind = "interceptor"

    def __init__(
        self,
        name: str,
        binding: Binding,
        dispatch_types: DispatchType = DispatchType.REQUEST,
    ) -> None:
        super().__init__(name, binding)
        self.dispatch_types = dispatch_types


class Registration:
    """Handle to a registered unit or interceptor."""

    __slots__ = ("_holder", "_table")

    def __init__(self, holder: Holder, table: RegistrationTable) -> None:
        self._holder = holder
        self._table = table

    @property
    def name(self) -> str:
        return self._holder.name

    @property
    def binding(self) -> Binding:
        return self._holder.binding

    @property
    def holder(self) -> Holder:
        return self._holder

    @property
    def init_parameters(self) -> Mapping[str, str]:
        return self._holder.init_parameters

    def set_init_parameter(self, name: str, value: str) -> bool:
        """Set an init parameter. Returns False if it is already set."""
        self._table.check_mutable("set_init_parameter")
        params = self._holder._init_parameters
        if name in params:
            return False
        params[name] = value
        return True

    def set_init_parameters(self, parameters: Mapping[str, str]) -> frozenset[str]:
        """Set several init parameters at once.

        Returns the names that were already set. If any were, nothing is set.
        """
        self._table.check_mutable("set_init_parameters")
        params = self._holder._init_parameters
        conflicts = frozenset(k for k in parameters if k in params)
        if not conflicts:
            params.update(parameters)
        return conflicts

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Registration) and other._holder is self._holder

    def __hash__(self) -> int:
        return id(self._holder)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class UnitRegistration(Registration):
    """Handle to a registered unit; maps path patterns to it."""

    __slots__ = ()

    def add_mapping(self, *patterns: str) -> frozenset[str]:
        """Map *patterns* to this unit.

        Returns the patterns already mapped to a different unit. If any
        conflict, no pattern is added.
        """
        return self._table.add_unit_mapping(self.name, patterns)

    @property
    def mappings(self) -> tuple[str, ...]:
        return self._table.patterns_for_unit(self.name)


class InterceptorRegistration(Registration):
    """Handle to a registered interceptor; attaches it to paths or units."""

    __slots__ = ()

    @property
    def dispatch_types(self) -> DispatchType:
        holder = self._holder
        assert isinstance(holder, InterceptorHolder)
        return holder.dispatch_types

    def add_mapping_for_paths(
        self,
        *patterns: str,
        dispatch_types: DispatchType | None = None,
        match_after: bool = True,
    ) -> InterceptorMapping:
        """Run this interceptor for requests whose path matches *patterns*.

        ``match_after=False`` places the mapping ahead of every existing one.
        """
        return self._table.add_interceptor_mapping(
            self.name,
            self.dispatch_types if dispatch_types is None else dispatch_types,
            path_patterns=patterns,
            match_after=match_after,
        )

    def add_mapping_for_unit_names(
        self,
        *unit_names: str,
        dispatch_types: DispatchType | None = None,
        match_after: bool = True,
    ) -> InterceptorMapping:
        """Run this interceptor whenever one of *unit_names* is dispatched to.

        ``"*"`` matches every unit.
        """
        return self._table.add_interceptor_mapping(
            self.name,
            self.dispatch_types if dispatch_types is None else dispatch_types,
            unit_names=unit_names,
            match_after=match_after,
        )

    @property
    def path_mappings(self) -> tuple[str, ...]:
        return tuple(
            p for m in self._table.mappings_for_interceptor(self.name) for p in m.path_patterns
        )

    @property
    def unit_name_mappings(self) -> tuple[str, ...]:
        return tuple(
            n for m in self._table.mappings_for_interceptor(self.name) for n in m.unit_names
        )
