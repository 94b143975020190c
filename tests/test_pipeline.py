"""Tests for pipeline assembly and the App lifecycle."""

import pytest

from perch.app import App
from perch.config import ContextConfig, Options
from perch.context import ContextBinding
from perch.errors import (
    ClassResolutionError,
    ConfigurationError,
    IllegalLifecycleState,
)
from perch.http.request import Request
from perch.http.response import Response
from perch.lifecycle import LifecycleState
from perch.stages.dispatch import DispatchStage
from perch.stages.factory import StageKind
from perch.stages.protocol import WrappingStage
from perch.stages.security import SecurityStage
from perch.stages.session import SessionConfig, SessionStage
from perch.testing import TestClient, run_lifespan


def hello(request: Request) -> str:
    return "hello"


class RecordingStage(WrappingStage):
    """Wrapper stage that records start/stop order into a shared list."""

    __slots__ = ("label", "log")

    def __init__(self, label: str, log: list[str]) -> None:
        super().__init__()
        self.label = label
        self.log = log

    async def start(self) -> None:
        await super().start()
        self.log.append(f"start:{self.label}")

    async def stop(self) -> None:
        await super().stop()
        self.log.append(f"stop:{self.label}")

    async def handle(self, request: Request) -> Response:
        response = await self.call_next(request)
        return response.with_header("X-Stage", self.label)


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


class TestAssembly:
    async def test_dispatch_only(self) -> None:
        app = App()
        await app.start()
        assert len(app.pipeline) == 1
        assert isinstance(app.handler, DispatchStage)

    async def test_security_wraps_dispatch(self) -> None:
        app = App(options=Options.SECURITY)
        await app.start()
        security, dispatch = app.pipeline
        assert isinstance(security, SecurityStage)
        assert isinstance(dispatch, DispatchStage)
        assert security.next is dispatch

    async def test_sessions_only(self) -> None:
        app = App(options=Options.SESSIONS)
        await app.start()
        assert [type(s) for s in app.pipeline] == [SessionStage, DispatchStage]

    async def test_full_order(self) -> None:
        app = App(options=Options.SESSIONS | Options.SECURITY)
        await app.start()
        assert [type(s) for s in app.pipeline] == [SessionStage, SecurityStage, DispatchStage]
        assert app.handler is app.pipeline[0]

    async def test_stages_start_innermost_first_and_stop_outermost_first(self) -> None:
        log: list[str] = []
        app = App(
            session_stage=RecordingStage("session", log),
            security_stage=RecordingStage("security", log),
        )
        await app.start()
        await app.stop()
        assert log == [
            "start:security",
            "start:session",
            "stop:session",
            "stop:security",
        ]

    async def test_supplied_stage_wins_over_options(self) -> None:
        log: list[str] = []
        custom = RecordingStage("custom", log)
        app = App(options=Options.NONE, session_stage=custom)
        await app.start()
        assert app.pipeline[0] is custom

    async def test_non_wrapper_stage_rejected(self) -> None:
        app = App(security_stage=DispatchStage())  # type: ignore[arg-type]
        with pytest.raises(ConfigurationError, match="cannot wrap"):
            await app.start()
        assert app.state is LifecycleState.FAILED

    async def test_requests_pass_through_every_stage(self) -> None:
        log: list[str] = []
        app = App(security_stage=RecordingStage("security", log))
        app.add_unit(hello, "/")
        async with TestClient(app) as client:
            response = await client.get("/")
        assert response.text == "hello"
        assert response.header("X-Stage") == "security"


# ---------------------------------------------------------------------------
# Stage factories
# ---------------------------------------------------------------------------


class TestStageFactories:
    def test_get_or_create_is_idempotent(self) -> None:
        app = App(options=Options.SESSIONS | Options.SECURITY)
        for kind in StageKind:
            assert app.get_or_create_stage(kind) is app.get_or_create_stage(kind)

    def test_disabled_stages_are_absent(self) -> None:
        app = App()
        assert app.get_session_stage() is None
        assert app.get_security_stage() is None
        assert isinstance(app.get_dispatch_stage(), DispatchStage)

    async def test_created_before_start_is_installed(self) -> None:
        app = App(options=Options.SESSIONS)
        early = app.get_session_stage()
        await app.start()
        assert app.pipeline[0] is early

    async def test_nothing_created_after_start(self) -> None:
        app = App()
        await app.start()
        assert app.get_session_stage() is None
        assert app.get_dispatch_stage() is app.handler

    async def test_default_security_stage_class(self) -> None:
        class CustomSecurity(SecurityStage):
            pass

        app = App(options=Options.SECURITY)
        app.default_security_stage_class = CustomSecurity
        await app.start()
        assert type(app.pipeline[0]) is CustomSecurity

    async def test_default_security_stage_class_by_name(self) -> None:
        app = App(options=Options.SECURITY)
        app.default_security_stage_class = "perch.stages.security:SecurityStage"
        assert isinstance(app.get_security_stage(), SecurityStage)

    async def test_bad_default_security_stage_class(self) -> None:
        app = App(options=Options.SECURITY)
        app.default_security_stage_class = "perch_no_such_module:Security"
        with pytest.raises(ConfigurationError, match="default security stage") as excinfo:
            await app.start()
        assert isinstance(excinfo.value.__cause__, ClassResolutionError)
        assert app.state is LifecycleState.FAILED
        assert app.handler is None

    def test_new_stage_policies_can_be_overridden(self) -> None:
        class MyApp(App):
            __slots__ = ()

            def new_session_stage(self) -> SessionStage:
                return SessionStage(SessionConfig(secret_key="k", cookie_name="mine"))

        stage = MyApp(options=Options.SESSIONS).get_session_stage()
        assert isinstance(stage, SessionStage)
        assert stage.config.cookie_name == "mine"


class TestStageSetters:
    async def test_setter_rejected_while_started(self) -> None:
        app = App()
        await app.start()
        with pytest.raises(IllegalLifecycleState, match="set_session_stage"):
            app.set_session_stage(SessionStage())
        with pytest.raises(IllegalLifecycleState):
            app.set_security_stage(SecurityStage())
        with pytest.raises(IllegalLifecycleState):
            app.set_dispatch_stage(DispatchStage())

    async def test_setter_allowed_after_stop(self) -> None:
        app = App()
        await app.start()
        await app.stop()
        session = SessionStage()
        app.set_session_stage(session)
        await app.start()
        assert app.pipeline[0] is session

    def test_setter_before_start(self) -> None:
        app = App(options=Options.SECURITY)
        security = SecurityStage()
        app.set_security_stage(security)
        assert app.get_security_stage() is security


# ---------------------------------------------------------------------------
# Starting-phase registration
# ---------------------------------------------------------------------------


class TestStartingPhase:
    async def test_add_unit_only_while_starting(self) -> None:
        app = App()
        with pytest.raises(IllegalLifecycleState, match="add_unit"):
            app.binding.add_unit("late", hello)

        @app.on_startup
        def register(binding: ContextBinding) -> None:
            binding.add_unit("late", hello).add_mapping("/late")

        async with TestClient(app) as client:
            response = await client.get("/late")
        assert response.text == "hello"

    async def test_unit_init_registers_sibling(self) -> None:
        class Parent:
            def __call__(self, request: Request) -> str:
                return "parent"

            def init(self, binding: ContextBinding) -> None:
                binding.add_unit("child", lambda request: "child").add_mapping("/child")

        app = App()
        app.add_unit(Parent, "/parent", name="parent")
        async with TestClient(app) as client:
            assert (await client.get("/child")).text == "child"
            assert (await client.get("/parent")).text == "parent"

    async def test_matrix_closed_after_start(self) -> None:
        app = App()
        app.add_unit(hello, "/", name="hello")
        app.add_interceptor(lambda request, next: next(request), "/*", name="ic")
        await app.start()
        binding = app.binding
        with pytest.raises(IllegalLifecycleState):
            binding.add_unit("x", hello)
        with pytest.raises(IllegalLifecycleState):
            binding.add_interceptor("y", hello)
        with pytest.raises(IllegalLifecycleState):
            binding.add_unit_mapping("hello", "/other")
        with pytest.raises(IllegalLifecycleState):
            binding.add_interceptor_mapping_for_unit_names("ic", None, True, "hello")
        with pytest.raises(IllegalLifecycleState):
            app.add_unit(hello, "/again")
        assert binding.get_named_dispatcher("unknown-name") is None

    async def test_zero_argument_hooks(self) -> None:
        calls: list[str] = []
        app = App()

        @app.on_startup
        async def up() -> None:
            calls.append("up")

        @app.on_shutdown
        def down() -> None:
            calls.append("down")

        await app.start()
        await app.stop()
        assert calls == ["up", "down"]

    async def test_hooks_rejected_while_started(self) -> None:
        app = App()
        await app.start()
        with pytest.raises(IllegalLifecycleState):
            app.on_startup(lambda: None)


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


class TestEndToEnd:
    async def test_both_stages_with_unit(self) -> None:
        app = App(options=Options.SESSIONS | Options.SECURITY)
        app.add_unit(hello, "/a", name="A")
        await app.start()

        registration = app.binding.find_unit_registration("A")
        assert registration is not None
        assert registration.mappings == ("/a",)
        assert isinstance(app.handler, SessionStage)

        async with TestClient(app, manage_lifecycle=False) as client:
            response = await client.get("/a")
        assert response.status == 200
        assert response.text == "hello"
        assert response.header("set-cookie") is not None

    async def test_no_optional_stages(self) -> None:
        app = App()
        await app.start()
        assert app.pipeline == (app.get_dispatch_stage(),)
        assert app.handler.next is None  # type: ignore[union-attr]

    async def test_context_path(self) -> None:
        app = App(ContextConfig(context_path="/shop"))
        app.add_unit(lambda request: request.path, "/*", name="echo")
        async with TestClient(app) as client:
            assert (await client.get("/shop/cart")).text == "/cart"
            assert (await client.get("/elsewhere")).status == 404


# ---------------------------------------------------------------------------
# Failure and restart
# ---------------------------------------------------------------------------


class TestFailure:
    async def test_class_resolution_error_propagates(self) -> None:
        app = App()
        app.add_unit("perch_no_such_module:Unit", "/", name="broken")
        with pytest.raises(ClassResolutionError):
            await app.start()
        assert app.state is LifecycleState.FAILED
        assert app.handler is None

    async def test_other_errors_are_wrapped(self) -> None:
        app = App()

        @app.on_startup
        def explode() -> None:
            raise ValueError("boom")

        with pytest.raises(ConfigurationError, match="boom") as excinfo:
            await app.start()
        assert isinstance(excinfo.value.__cause__, ValueError)
        assert isinstance(app.lifecycle.error, ValueError)

    async def test_failed_app_answers_503(self) -> None:
        app = App()
        app.add_unit("perch_no_such_module:Unit", "/", name="broken")
        with pytest.raises(ClassResolutionError):
            await app.start()
        client = TestClient(app, manage_lifecycle=False)
        assert (await client.get("/")).status == 503

    async def test_not_started_answers_503(self) -> None:
        app = App()
        app.add_unit(hello, "/")
        client = TestClient(app, manage_lifecycle=False)
        assert (await client.get("/")).status == 503

    async def test_failed_start_stops_what_it_started(self) -> None:
        destroyed: list[str] = []

        class Good:
            def __call__(self, request: Request) -> str:
                return "good"

            def destroy(self) -> None:
                destroyed.append("good")

        app = App(options=Options.SESSIONS)
        app.add_unit(Good, "/good", name="good")
        app.add_unit("perch_no_such_module:Unit", "/broken", name="broken")
        with pytest.raises(ClassResolutionError):
            await app.start()
        assert destroyed == ["good"]
        assert not app.get_session_stage().is_started
        assert not app.get_dispatch_stage().is_started
        assert app.handler is None

    async def test_cleanup_errors_do_not_mask_the_failure(self) -> None:
        class StopFails(WrappingStage):
            async def stop(self) -> None:
                raise RuntimeError("stop failed")

        app = App(session_stage=StopFails())
        app.add_unit("perch_no_such_module:Unit", "/", name="broken")
        with pytest.raises(ClassResolutionError):
            await app.start()
        assert app.state is LifecycleState.FAILED

    async def test_registration_rejected_after_failed_start(self) -> None:
        app = App()

        @app.on_startup
        def explode() -> None:
            raise ValueError("boom")

        with pytest.raises(ConfigurationError):
            await app.start()
        assert app.state is LifecycleState.FAILED
        with pytest.raises(IllegalLifecycleState, match="add_unit"):
            app.add_unit(hello, "/after-fail")
        with pytest.raises(IllegalLifecycleState, match="add_unit"):
            app.unit("/decorated")(hello)
        with pytest.raises(IllegalLifecycleState, match="add_interceptor"):
            app.add_interceptor(lambda request, next: next(request), "/*")
        with pytest.raises(IllegalLifecycleState, match="error_page"):
            app.error_page(404, "hello")
        assert app.table.unit_names() == ()

    async def test_registration_rejected_while_started_without_freeze(self) -> None:
        class NeverStarts(DispatchStage):
            __slots__ = ()

            async def start(self) -> None:
                pass

        app = App(dispatch_stage=NeverStarts())
        await app.start()
        assert app.state is LifecycleState.STARTED
        assert not app.table.frozen
        with pytest.raises(IllegalLifecycleState, match="add_unit"):
            app.add_unit(hello, "/late")
        with pytest.raises(IllegalLifecycleState, match="add_interceptor"):
            app.add_interceptor(lambda request, next: next(request), "/*")

    async def test_cannot_start_twice(self) -> None:
        app = App()
        await app.start()
        with pytest.raises(IllegalLifecycleState):
            await app.start()
        assert app.state is LifecycleState.STARTED


class TestRestart:
    async def test_registrations_survive_restart(self) -> None:
        app = App(options=Options.SECURITY)
        app.add_unit(hello, "/", name="hello")
        async with TestClient(app) as client:
            assert (await client.get("/")).text == "hello"
        assert app.state is LifecycleState.STOPPED
        assert app.handler is None

        app.add_unit(lambda request: "more", "/more", name="more")
        async with TestClient(app) as client:
            assert (await client.get("/")).text == "hello"
            assert (await client.get("/more")).text == "more"

    async def test_hook_registrations_are_redone_on_restart(self) -> None:
        calls: list[str] = []

        async def tag(request: Request, next) -> Response:
            return (await next(request)).with_header("X-Tag", "late")

        app = App()
        app.add_unit(hello, "/", name="hello")

        @app.on_startup
        def register(binding: ContextBinding) -> None:
            calls.append("register")
            binding.add_unit("late", lambda request: "late").add_mapping("/late")
            binding.add_unit_mapping("hello", "/hi")
            binding.add_interceptor("tag", tag)
            binding.add_interceptor_mapping_for_unit_names("tag", None, True, "hello")

        for _ in range(2):
            async with TestClient(app) as client:
                assert (await client.get("/late")).text == "late"
                response = await client.get("/hi")
                assert response.text == "hello"
                assert response.header("x-tag") == "late"
            assert app.state is LifecycleState.STOPPED
            assert app.table.find_unit("late") is None
            assert app.table.find_interceptor("tag") is None
            assert app.table.patterns_for_unit("hello") == ("/",)
        assert calls == ["register", "register"]

    async def test_init_registrations_are_redone_on_restart(self) -> None:
        class Parent:
            def __call__(self, request: Request) -> str:
                return "parent"

            def init(self, binding: ContextBinding) -> None:
                binding.add_unit("child", lambda request: "child").add_mapping("/child")

        app = App()
        app.add_unit(Parent, "/parent", name="parent")
        for _ in range(2):
            async with TestClient(app) as client:
                assert (await client.get("/child")).text == "child"
        assert app.table.unit_names() == ("parent",)

    async def test_clear_registrations(self) -> None:
        app = App()
        app.add_unit(hello, "/", name="hello")
        await app.start()
        with pytest.raises(IllegalLifecycleState):
            app.clear_registrations()
        await app.stop()
        app.clear_registrations()
        assert app.binding.find_unit_registration("hello") is None


# ---------------------------------------------------------------------------
# Registration conveniences
# ---------------------------------------------------------------------------


class TestConveniences:
    def test_default_names(self) -> None:
        app = App()
        first = app.add_unit(hello, "/one")
        second = app.add_unit(hello, "/two")
        assert first.name == "hello"
        assert second.name == "hello-1"

    def test_pattern_conflict(self) -> None:
        app = App()
        app.add_unit(hello, "/x", name="a")
        with pytest.raises(ConfigurationError, match="already mapped"):
            app.add_unit(hello, "/x", name="b")
        assert app.table.find_unit("b") is None
        assert app.add_unit(hello, "/y", name="b").mappings == ("/y",)

    def test_malformed_pattern_registers_nothing(self) -> None:
        app = App()
        with pytest.raises(ConfigurationError):
            app.add_unit(hello, "no-slash", name="a")
        assert app.table.find_unit("a") is None

    def test_decorators(self) -> None:
        app = App()

        @app.unit("/d", name="decorated")
        def decorated(request: Request) -> str:
            return "d"

        @app.interceptor("/*", name="wrap")
        async def wrap(request, next):
            return await next(request)

        assert decorated(None) == "d"  # type: ignore[arg-type]
        assert app.table.patterns_for_unit("decorated") == ("/d",)
        assert app.table.find_interceptor("wrap").path_mappings == ("/*",)


# ---------------------------------------------------------------------------
# ASGI lifespan
# ---------------------------------------------------------------------------


class TestLifespan:
    async def test_startup_and_shutdown(self) -> None:
        app = App()
        sent = await run_lifespan(app, "startup", "shutdown")
        assert [m["type"] for m in sent] == [
            "lifespan.startup.complete",
            "lifespan.shutdown.complete",
        ]
        assert app.state is LifecycleState.STOPPED

    async def test_startup_failure_reported(self) -> None:
        app = App()
        app.add_unit("perch_no_such_module:Unit", "/", name="broken")
        sent = await run_lifespan(app, "startup")
        assert sent[0]["type"] == "lifespan.startup.failed"
        assert "perch_no_such_module" in sent[0]["message"]
        assert app.state is LifecycleState.FAILED
