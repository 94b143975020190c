"""Path pattern parsing and matching.

One syntax serves both units and interceptors:

* ``/users``            exact
* ``/users/{id}``       one segment captured as ``id``
* ``/users/{id:int}``   typed capture (``str``, ``int``, ``float``, ``path``)
* ``/files/{rest:path}`` the remainder of the path
* ``/api/*``            ``/api`` and everything below it
* ``*.json``            any path with that extension
* ``/*``                everything
"""

import re
from dataclasses import dataclass
from functools import lru_cache

from perch.errors import ConfigurationError
from perch.routing.route import PathSegment

# (regex_pattern, python_type) for each supported converter
CONVERTERS: dict[str, tuple[str, type]] = {
    "str": (r"[^/]+", str),
    "int": (r"\d+", int),
    "float": (r"\d+(?:\.\d+)?", float),
    "path": (r".*", str),
}

WILDCARD = "*"


def parse_path(pattern: str) -> list[PathSegment]:
    """Parse a path pattern into segments.

    Examples::

        "/users"          -> [PathSegment("users")]
        "/users/{id:int}" -> [PathSegment("users"), PathSegment("{id:int}", is_param=True, ...)]
        "/api/*"          -> [PathSegment("api"), PathSegment("*", is_param=True, param_type="path")]

    Extension patterns (``*.json``) are not segment patterns; see
    ``is_extension_pattern``.
    """
    if "<" in pattern and ">" in pattern:
        msg = (
            f"Path pattern {pattern!r} uses <param> syntax. "
            "Perch expects {param} (e.g. /users/{id})."
        )
        raise ConfigurationError(msg)
    if not pattern.startswith("/"):
        msg = f"Path pattern {pattern!r} must start with '/' or be an extension like '*.json'."
        raise ConfigurationError(msg)

    segments: list[PathSegment] = []
    parts = [p for p in pattern.strip("/").split("/") if p]
    for i, part in enumerate(parts):
        last = i == len(parts) - 1
        if part == WILDCARD:
            if not last:
                msg = f"Wildcard must be the last segment in {pattern!r}."
                raise ConfigurationError(msg)
            segments.append(
                PathSegment(value=part, is_param=True, param_name=WILDCARD, param_type="path")
            )
        elif part.startswith("{") and part.endswith("}"):
            inner = part[1:-1]
            param_name, _, param_type = inner.partition(":")
            param_type = param_type or "str"
            if param_type not in CONVERTERS:
                msg = f"Unknown converter {param_type!r} in {pattern!r}."
                raise ConfigurationError(msg)
            if param_type == "path" and not last:
                msg = f"A path converter must be the last segment in {pattern!r}."
                raise ConfigurationError(msg)
            segments.append(
                PathSegment(
                    value=part,
                    is_param=True,
                    param_name=param_name,
                    param_type=param_type,
                )
            )
        else:
            segments.append(PathSegment(value=part))
    return segments


def is_extension_pattern(pattern: str) -> bool:
    return pattern.startswith("*.") and "/" not in pattern


@dataclass(frozen=True, slots=True)
class PathPattern:
    """A compiled pattern that answers "does this path match?".

    Used for interceptor mappings, where every matching pattern counts and
    there is no precedence between them.
    """

    source: str
    regex: re.Pattern[str]

    def matches(self, path: str) -> bool:
        return self.regex.match(path) is not None

    def params(self, path: str) -> dict[str, str] | None:
        match = self.regex.match(path)
        if match is None:
            return None
        return {k: v for k, v in match.groupdict().items() if v is not None}


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> PathPattern:
    """Compile *pattern* into a ``PathPattern``. Results are cached."""
    if is_extension_pattern(pattern):
        ext = re.escape(pattern[1:])
        return PathPattern(pattern, re.compile(rf"^.*{ext}$"))

    pieces: list[str] = []
    for seg in parse_path(pattern):
        if seg.param_name == WILDCARD:
            # "/api/*" also matches "/api" itself
            pieces.append(r"(?:/.*)?")
            break
        if seg.is_param:
            regex, _ = CONVERTERS[seg.param_type]
            pieces.append(rf"/(?P<{seg.param_name}>{regex})")
        else:
            pieces.append("/" + re.escape(seg.value))

    body = "".join(pieces)
    if not body:
        return PathPattern(pattern, re.compile(r"^/?$"))
    return PathPattern(pattern, re.compile(rf"^{body}/?$"))
