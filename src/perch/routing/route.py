"""Route and RouteMatch frozen dataclasses."""

from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class PathSegment:
    """A parsed segment of a unit path pattern.

    Static:    ``/users``       (is_param=False)
    Param:     ``/{id}``        (is_param=True, param_name="id")
    Typed:     ``/{id:int}``    (is_param=True, param_name="id", param_type="int")
    Wildcard:  ``/*``           (is_param=True, param_name="*", param_type="path")
    """

    value: str
    is_param: bool = False
    param_name: str | None = None
    param_type: str = "str"


@dataclass(frozen=True, slots=True)
class Route:
    """A compiled mapping of one path pattern to one unit name."""

    pattern: str
    unit_name: str


@dataclass(frozen=True, slots=True)
class RouteMatch:
    """Result of a successful route match."""

    route: Route
    path_params: Mapping[str, str] = field(default_factory=dict)

    @property
    def unit_name(self) -> str:
        return self.route.unit_name
