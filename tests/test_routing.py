"""Tests for path patterns and the unit router."""

import pytest

from perch.errors import ConfigurationError, NotFound
from perch.routing.pattern import compile_pattern, is_extension_pattern, parse_path
from perch.routing.route import Route
from perch.routing.router import Router


def _router(*routes: tuple[str, str]) -> Router:
    router = Router()
    for pattern, unit_name in routes:
        router.add(Route(pattern, unit_name))
    router.compile()
    return router


class TestParsePath:
    def test_static_and_params(self) -> None:
        segments = parse_path("/users/{id:int}")
        assert segments[0].value == "users"
        assert segments[1].is_param
        assert segments[1].param_name == "id"
        assert segments[1].param_type == "int"

    def test_requires_leading_slash(self) -> None:
        with pytest.raises(ConfigurationError, match="must start with"):
            parse_path("users")

    def test_wildcard_must_be_last(self) -> None:
        with pytest.raises(ConfigurationError, match="last segment"):
            parse_path("/a/*/b")

    def test_unknown_converter(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown converter"):
            parse_path("/a/{x:uuid}")

    def test_angle_bracket_syntax_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="<param>"):
            parse_path("/users/<id>")


class TestCompilePattern:
    def test_prefix_wildcard(self) -> None:
        pattern = compile_pattern("/api/*")
        assert pattern.matches("/api")
        assert pattern.matches("/api/")
        assert pattern.matches("/api/v1/users")
        assert not pattern.matches("/apix")

    def test_root_wildcard_matches_everything(self) -> None:
        pattern = compile_pattern("/*")
        assert pattern.matches("/")
        assert pattern.matches("/anything/at/all")

    def test_extension(self) -> None:
        assert is_extension_pattern("*.json")
        pattern = compile_pattern("*.json")
        assert pattern.matches("/a/b.json")
        assert not pattern.matches("/a/b.jsonx")

    def test_exact(self) -> None:
        pattern = compile_pattern("/health")
        assert pattern.matches("/health")
        assert not pattern.matches("/health/deep")

    def test_params(self) -> None:
        pattern = compile_pattern("/users/{id:int}")
        assert pattern.params("/users/42") == {"id": "42"}
        assert pattern.params("/users/bob") is None


class TestRouter:
    def test_static_beats_param(self) -> None:
        router = _router(("/users/{name}", "by_name"), ("/users/me", "me"))
        assert router.match("/users/me").unit_name == "me"
        match = router.match("/users/alice")
        assert match.unit_name == "by_name"
        assert match.path_params == {"name": "alice"}

    def test_prefix_catch_all(self) -> None:
        router = _router(("/static/*", "static"))
        match = router.match("/static/css/site.css")
        assert match.unit_name == "static"
        assert match.path_params == {"*": "css/site.css"}
        assert router.match("/static").path_params == {"*": ""}

    def test_extension_before_default(self) -> None:
        router = _router(("/*", "default"), ("*.json", "json"), ("/static/*", "static"))
        assert router.match("/data.json").unit_name == "json"
        assert router.match("/static/data.json").unit_name == "static"
        assert router.match("/other").unit_name == "default"

    def test_root(self) -> None:
        router = _router(("/", "home"))
        assert router.match("/").unit_name == "home"

    def test_no_match(self) -> None:
        router = _router(("/a", "a"))
        with pytest.raises(NotFound):
            router.match("/b")

    def test_pattern_claimed_twice(self) -> None:
        router = Router()
        router.add(Route("/a", "a"))
        with pytest.raises(ConfigurationError, match="mapped to both"):
            router.add(Route("/a", "b"))

    def test_no_routes_after_compile(self) -> None:
        router = _router()
        with pytest.raises(RuntimeError):
            router.add(Route("/a", "a"))

    def test_routes_listing(self) -> None:
        router = _router(("/a", "a"), ("*.txt", "txt"))
        assert {r.unit_name for r in router.routes} == {"a", "txt"}
