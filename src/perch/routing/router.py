"""Compiled router with trie-based path matching.

Built once from the frozen registration snapshot when the dispatch stage
finalizes routing, then only read.

Precedence for a request path:

1. static segments over ``{param}`` segments over wildcards, walking the trie
2. extension patterns (``*.json``)
3. the default unit mapped to ``/*`` at the root
"""

import re
from dataclasses import dataclass

from perch.errors import ConfigurationError, NotFound
from perch.routing.pattern import CONVERTERS, WILDCARD, is_extension_pattern, parse_path
from perch.routing.route import Route, RouteMatch


class _TrieNode:
    """A node in the route trie. Mutable during compilation only."""

    __slots__ = ("catch_all", "children", "param_child", "route")

    def __init__(self) -> None:
        # Static segment children: "users" -> node
        self.children: dict[str, _TrieNode] = {}
        # Single parameter child (only one param pattern per level)
        self.param_child: _ParamEdge | None = None
        # Wildcard or path-converter route consuming the rest of the path
        self.catch_all: _CatchAllEdge | None = None
        # Route terminating exactly at this node
        self.route: Route | None = None


@dataclass(slots=True)
class _ParamEdge:
    param_name: str
    param_type: str
    regex: re.Pattern[str]
    node: _TrieNode


@dataclass(slots=True)
class _CatchAllEdge:
    """Consumes the remaining path, including nothing at all."""

    param_name: str
    route: Route


class Router:
    """Compiled router mapping request paths to unit names.

    Usage::

        router = Router()
        router.add(Route("/users/{id:int}", "users"))
        router.add(Route("*.json", "api"))
        router.compile()
        match = router.match("/users/42")
        match.unit_name  # "users"
    """

    __slots__ = ("_compiled", "_extensions", "_root")

    def __init__(self) -> None:
        self._root = _TrieNode()
        self._extensions: dict[str, Route] = {}
        self._compiled = False

    def add(self, route: Route) -> None:
        """Add a route. Must be called before compile()."""
        if self._compiled:
            msg = "Cannot add routes after compilation."
            raise RuntimeError(msg)

        if is_extension_pattern(route.pattern):
            suffix = route.pattern[1:]
            self._claim(self._extensions.get(suffix), route)
            self._extensions[suffix] = route
            return

        node = self._root
        for seg in parse_path(route.pattern):
            if seg.param_type == "path":
                if node.catch_all is not None:
                    self._claim(node.catch_all.route, route)
                node.catch_all = _CatchAllEdge(param_name=seg.param_name or WILDCARD, route=route)
                return

            if seg.is_param:
                if node.param_child is None:
                    regex, _ = CONVERTERS[seg.param_type]
                    node.param_child = _ParamEdge(
                        param_name=seg.param_name or "",
                        param_type=seg.param_type,
                        regex=re.compile(f"^{regex}$"),
                        node=_TrieNode(),
                    )
                elif node.param_child.param_name != seg.param_name:
                    msg = (
                        f"Pattern {route.pattern!r} names parameter {seg.param_name!r}, "
                        f"but {node.param_child.param_name!r} is already used at that position."
                    )
                    raise ConfigurationError(msg)
                node = node.param_child.node
            else:
                node = node.children.setdefault(seg.value, _TrieNode())

        self._claim(node.route, route)
        node.route = route

    @staticmethod
    def _claim(existing: Route | None, route: Route) -> None:
        if existing is not None and existing.unit_name != route.unit_name:
            msg = (
                f"Pattern {route.pattern!r} is mapped to both "
                f"{existing.unit_name!r} and {route.unit_name!r}."
            )
            raise ConfigurationError(msg)

    @property
    def routes(self) -> list[Route]:
        """Every registered route, in trie order then extensions."""
        result: list[Route] = []
        self._collect_routes(self._root, result)
        result.extend(self._extensions.values())
        return result

    def _collect_routes(self, node: _TrieNode, result: list[Route]) -> None:
        if node.route is not None:
            result.append(node.route)
        for child in node.children.values():
            self._collect_routes(child, result)
        if node.param_child is not None:
            self._collect_routes(node.param_child.node, result)
        if node.catch_all is not None:
            result.append(node.catch_all.route)

    def compile(self) -> None:
        """Freeze the router. No more routes can be added."""
        self._compiled = True

    def match(self, path: str) -> RouteMatch:
        """Match a request path against compiled routes.

        Raises ``NotFound`` if no route matches.
        """
        parts = [p for p in path.strip("/").split("/") if p]
        result = self._match_node(self._root, parts, 0, {})
        if result is not None:
            return result

        for suffix, route in self._extensions.items():
            if path.endswith(suffix):
                return RouteMatch(route=route, path_params={})

        default = self._root.catch_all
        if default is not None:
            return RouteMatch(route=default.route, path_params={default.param_name: "/".join(parts)})

        raise NotFound(f"No unit is mapped to {path!r}")

    def _match_node(
        self,
        node: _TrieNode,
        parts: list[str],
        index: int,
        params: dict[str, str],
    ) -> RouteMatch | None:
        """Recursively match path parts against the trie."""
        if index == len(parts):
            if node.route is not None:
                return RouteMatch(route=node.route, path_params=params)
            if node.catch_all is not None and node is not self._root:
                edge = node.catch_all
                return RouteMatch(route=edge.route, path_params={**params, edge.param_name: ""})
            return None

        part = parts[index]

        # 1. Static child first (exact match)
        if part in node.children:
            result = self._match_node(node.children[part], parts, index + 1, params)
            if result is not None:
                return result

        # 2. Parameter child
        if node.param_child is not None:
            edge = node.param_child
            if edge.regex.match(part):
                result = self._match_node(
                    edge.node, parts, index + 1, {**params, edge.param_name: part}
                )
                if result is not None:
                    return result

        # 3. Catch-all below the root; the root one is the default, tried last
        if node.catch_all is not None and node is not self._root:
            edge = node.catch_all
            remaining = "/".join(parts[index:])
            return RouteMatch(route=edge.route, path_params={**params, edge.param_name: remaining})

        return None
