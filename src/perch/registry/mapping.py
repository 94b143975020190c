"""Dispatch types and the mapping records that tie patterns to names."""

from dataclasses import dataclass
from enum import Flag, auto

from perch.errors import ConfigurationError
from perch.routing.pattern import compile_pattern

# Unit-name mapping that matches every unit
ALL_UNITS = "*"


class DispatchType(Flag):
    """The kind of request flow a unit or interceptor takes part in."""

    REQUEST = auto()
    FORWARD = auto()
    INCLUDE = auto()
    ERROR = auto()
    ASYNC = auto()


@dataclass(frozen=True, slots=True)
class UnitMapping:
    """``pattern`` routes to the unit called ``unit_name``."""

    pattern: str
    unit_name: str
    sequence: int = 0


@dataclass(frozen=True, slots=True)
class InterceptorMapping:
    """Attach an interceptor to paths and/or units for some dispatch types.

    Either ``path_patterns`` or ``unit_names`` must be non-empty; both may be.
    """

    interceptor_name: str
    dispatch_types: DispatchType
    path_patterns: tuple[str, ...] = ()
    unit_names: tuple[str, ...] = ()
    sequence: int = 0

    def __post_init__(self) -> None:
        if not self.path_patterns and not self.unit_names:
            msg = (
                f"Mapping for interceptor {self.interceptor_name!r} needs at least "
                "one path pattern or unit name."
            )
            raise ConfigurationError(msg)
        if not self.dispatch_types:
            msg = f"Mapping for interceptor {self.interceptor_name!r} has no dispatch types."
            raise ConfigurationError(msg)
        for pattern in self.path_patterns:
            compile_pattern(pattern)

    def applies_to(self, dispatch_type: DispatchType) -> bool:
        return bool(self.dispatch_types & dispatch_type)

    def matches_path(self, path: str) -> bool:
        return any(compile_pattern(p).matches(path) for p in self.path_patterns)

    def matches_unit(self, unit_name: str | None) -> bool:
        if unit_name is None:
            return False
        return any(n == ALL_UNITS or n == unit_name for n in self.unit_names)
