"""Registration table — builder during setup, snapshot once started.

``RegistrationTable`` accepts registrations while the context is being
configured. ``freeze()`` produces a ``RegistrationSnapshot`` exactly once
per start; that snapshot is the only thing request handling ever reads.
After ``freeze()`` every mutating call on the table (and on the handles
it gave out) raises ``IllegalLifecycleState`` until ``thaw()``.

Thread safety:
    Mutation happens on the single control task before the freeze. The
    snapshot is immutable and safe to share between request tasks.
"""

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from perch.errors import ConfigurationError, DuplicateName, IllegalLifecycleState
from perch.registry.binding import Binding
from perch.registry.holders import (
    Holder,
    InterceptorHolder,
    InterceptorRegistration,
    UnitHolder,
    UnitRegistration,
)
from perch.registry.mapping import DispatchType, InterceptorMapping, UnitMapping
from perch.routing.pattern import compile_pattern

logger = logging.getLogger("perch.registry")


@dataclass(frozen=True, slots=True)
class RegistrationSnapshot:
    """Read-only view of the table taken at the freeze point."""

    units: Mapping[str, UnitHolder]
    interceptors: Mapping[str, InterceptorHolder]
    unit_mappings: tuple[UnitMapping, ...]
    interceptor_mappings: tuple[InterceptorMapping, ...]

    def unit(self, name: str) -> UnitHolder | None:
        return self.units.get(name)

    def interceptors_for(
        self,
        path: str,
        unit_name: str | None,
        dispatch_type: DispatchType,
    ) -> list[InterceptorHolder]:
        """Interceptors to run, outermost first.

        Path-pattern matches come first, then unit-name matches; within
        each group mappings keep their table order. An interceptor mapped
        both ways runs once, at its first position.
        """
        applicable = [m for m in self.interceptor_mappings if m.applies_to(dispatch_type)]
        ordered = [m for m in applicable if m.matches_path(path)]
        ordered.extend(m for m in applicable if m.matches_unit(unit_name))

        chain: list[InterceptorHolder] = []
        seen: set[str] = set()
        for mapping in ordered:
            if mapping.interceptor_name in seen:
                continue
            seen.add(mapping.interceptor_name)
            chain.append(self.interceptors[mapping.interceptor_name])
        return chain


class RegistrationTable:
    """Named units and interceptors plus their path/name mappings.

    Usage::

        table = RegistrationTable()
        reg = table.register_unit("users", Binding.of(users_unit))
        reg.add_mapping("/users/*")
        snapshot = table.freeze()

    While ``recording`` is on (the context is starting) every new
    registration and mapping is marked transient. ``discard_transient()``
    drops them when the context stops, so the hooks that made them can
    make them again on the next start.
    """

    __slots__ = (
        "_frozen",
        "_interceptor_mappings",
        "_interceptors",
        "_recording",
        "_sequence",
        "_transient_interceptors",
        "_transient_sequences",
        "_transient_units",
        "_unit_mappings",
        "_units",
    )

    def __init__(self) -> None:
        self._units: dict[str, UnitHolder] = {}
        self._interceptors: dict[str, InterceptorHolder] = {}
        self._unit_mappings: list[UnitMapping] = []
        self._interceptor_mappings: list[InterceptorMapping] = []
        self._sequence = 0
        self._frozen = False
        self._recording = False
        self._transient_units: set[str] = set()
        self._transient_interceptors: set[str] = set()
        self._transient_sequences: set[int] = set()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def check_mutable(self, operation: str) -> None:
        if self._frozen:
            raise IllegalLifecycleState(
                operation,
                "started",
                "The registration table is frozen until the context stops.",
            )

    def _next_sequence(self) -> int:
        self._sequence += 1
        if self._recording:
            self._transient_sequences.add(self._sequence)
        return self._sequence

    @property
    def recording(self) -> bool:
        return self._recording

    def record_transient(self, enabled: bool) -> None:
        """Turn marking of new registrations as transient on or off."""
        self._recording = enabled

    # -- Registration --

    def register_unit(self, name: str, binding: Binding) -> UnitRegistration:
        """Register a unit. Raises ``DuplicateName`` if *name* is taken."""
        self.check_mutable("register_unit")
        _check_name("unit", name)
        if name in self._units:
            raise DuplicateName("unit", name)
        holder = UnitHolder(name, binding)
        self._units[name] = holder
        if self._recording:
            self._transient_units.add(name)
        logger.debug("registered unit %r -> %s", name, binding.label)
        return UnitRegistration(holder, self)

    def register_interceptor(
        self,
        name: str,
        binding: Binding,
        dispatch_types: DispatchType = DispatchType.REQUEST,
    ) -> InterceptorRegistration:
        """Register an interceptor. Raises ``DuplicateName`` if *name* is taken.

        *dispatch_types* is the default for mappings added without one.
        """
        self.check_mutable("register_interceptor")
        _check_name("interceptor", name)
        if name in self._interceptors:
            raise DuplicateName("interceptor", name)
        holder = InterceptorHolder(name, binding, dispatch_types)
        self._interceptors[name] = holder
        if self._recording:
            self._transient_interceptors.add(name)
        logger.debug("registered interceptor %r -> %s", name, binding.label)
        return InterceptorRegistration(holder, self)

    # -- Lookup (valid in any state) --

    def find_unit(self, name: str) -> UnitRegistration | None:
        holder = self._units.get(name)
        return UnitRegistration(holder, self) if holder is not None else None

    def find_interceptor(self, name: str) -> InterceptorRegistration | None:
        holder = self._interceptors.get(name)
        return InterceptorRegistration(holder, self) if holder is not None else None

    def unit_names(self) -> tuple[str, ...]:
        return tuple(self._units)

    def interceptor_names(self) -> tuple[str, ...]:
        return tuple(self._interceptors)

    def patterns_for_unit(self, name: str) -> tuple[str, ...]:
        return tuple(m.pattern for m in self._unit_mappings if m.unit_name == name)

    def mappings_for_interceptor(self, name: str) -> tuple[InterceptorMapping, ...]:
        return tuple(m for m in self._interceptor_mappings if m.interceptor_name == name)

    def holders(self) -> Iterator[Holder]:
        """Interceptors first, then units, each in registration order."""
        yield from self._interceptors.values()
        yield from self._units.values()

    # -- Mappings --

    def add_unit_mapping(self, unit_name: str, patterns: Iterable[str]) -> frozenset[str]:
        """Map *patterns* to the unit *unit_name*.

        Returns patterns already mapped to another unit; if there are any,
        nothing is added. Re-adding a pattern to the same unit is a no-op.
        """
        self.check_mutable("add_mapping")
        if unit_name not in self._units:
            msg = f"No unit named {unit_name!r} is registered."
            raise ConfigurationError(msg)

        patterns = tuple(patterns)
        conflicts = self.conflicting_patterns(unit_name, patterns)
        if conflicts:
            return conflicts

        owners = {m.pattern: m.unit_name for m in self._unit_mappings}
        for pattern in patterns:
            if pattern not in owners:
                self._unit_mappings.append(UnitMapping(pattern, unit_name, self._next_sequence()))
                owners[pattern] = unit_name
        return frozenset()

    def conflicting_patterns(self, unit_name: str, patterns: Iterable[str]) -> frozenset[str]:
        """Patterns in *patterns* already mapped to a unit other than *unit_name*.

        Raises ``ConfigurationError`` for a malformed pattern.
        """
        patterns = tuple(patterns)
        for pattern in patterns:
            compile_pattern(pattern)
        owners = {m.pattern: m.unit_name for m in self._unit_mappings}
        return frozenset(p for p in patterns if owners.get(p, unit_name) != unit_name)

    def add_interceptor_mapping(
        self,
        interceptor_name: str,
        dispatch_types: DispatchType,
        *,
        path_patterns: Iterable[str] = (),
        unit_names: Iterable[str] = (),
        match_after: bool = True,
    ) -> InterceptorMapping:
        """Attach an interceptor to paths and/or unit names.

        ``match_after=True`` appends to the end of the interceptor chain;
        ``False`` puts this mapping before every existing one.
        """
        self.check_mutable("add_interceptor_mapping")
        if interceptor_name not in self._interceptors:
            msg = f"No interceptor named {interceptor_name!r} is registered."
            raise ConfigurationError(msg)

        mapping = InterceptorMapping(
            interceptor_name=interceptor_name,
            dispatch_types=dispatch_types,
            path_patterns=tuple(path_patterns),
            unit_names=tuple(unit_names),
            sequence=self._next_sequence(),
        )
        if match_after:
            self._interceptor_mappings.append(mapping)
        else:
            self._interceptor_mappings.insert(0, mapping)
        return mapping

    # -- Holder lifecycle --

    async def start_holders(self, context: Any) -> int:
        """Start every holder, including ones registered while starting.

        ``init(context)`` hooks may register more units or interceptors;
        the loop keeps going until a pass finds nothing new. Returns how
        many holders were started.
        """
        started = 0
        while True:
            pending = [h for h in self.holders() if not h.started]
            if not pending:
                return started
            for holder in pending:
                await holder.start(context)
                started += 1

    async def stop_holders(self) -> None:
        """Stop holders in reverse start order. Every holder is attempted."""
        errors: list[Exception] = []
        for holder in reversed(list(self.holders())):
            try:
                await holder.stop()
            except Exception as exc:
                logger.exception("error stopping %s %r", holder.kind, holder.name)
                errors.append(exc)
        if errors:
            raise errors[0]

    # -- Freeze --

    def freeze(self) -> RegistrationSnapshot:
        """Close the table and return its immutable snapshot.

        Exactly once per start: a second call raises.
        """
        self.check_mutable("freeze")
        self._frozen = True
        return RegistrationSnapshot(
            units=MappingProxyType(dict(self._units)),
            interceptors=MappingProxyType(dict(self._interceptors)),
            unit_mappings=tuple(self._unit_mappings),
            interceptor_mappings=tuple(self._interceptor_mappings),
        )

    def thaw(self) -> None:
        """Reopen the table after the context stops. Registrations are kept."""
        self._frozen = False

    def discard_transient(self) -> int:
        """Drop registrations and mappings made while recording.

        Mappings that point at a dropped unit or interceptor go with it.
        Holders must already be stopped. Returns how many units and
        interceptors were dropped.
        """
        units = self._transient_units
        interceptors = self._transient_interceptors
        sequences = self._transient_sequences
        self._unit_mappings = [
            m
            for m in self._unit_mappings
            if m.unit_name not in units and m.sequence not in sequences
        ]
        self._interceptor_mappings = [
            m
            for m in self._interceptor_mappings
            if m.interceptor_name not in interceptors and m.sequence not in sequences
        ]
        for name in units:
            self._units.pop(name, None)
        for name in interceptors:
            self._interceptors.pop(name, None)
        dropped = len(units) + len(interceptors)
        if dropped or sequences:
            logger.debug(
                "discarded %d transient registrations and their mappings", dropped
            )
        units.clear()
        interceptors.clear()
        sequences.clear()
        return dropped

    def clear(self) -> None:
        """Drop every registration and mapping."""
        self.check_mutable("clear")
        self._units.clear()
        self._interceptors.clear()
        self._unit_mappings.clear()
        self._interceptor_mappings.clear()
        self._transient_units.clear()
        self._transient_interceptors.clear()
        self._transient_sequences.clear()

    def __len__(self) -> int:
        return len(self._units) + len(self._interceptors)

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return (
            f"<RegistrationTable {state} units={len(self._units)} "
            f"interceptors={len(self._interceptors)}>"
        )


def _check_name(kind: str, name: str) -> None:
    if not isinstance(name, str) or not name:
        msg = f"A {kind} name must be a non-empty string."
        raise ConfigurationError(msg)
