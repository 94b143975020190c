"""Tests for the session stage — signed cookie sessions."""

import logging

import pytest
from itsdangerous import URLSafeTimedSerializer

from perch.app import App
from perch.config import Options
from perch.errors import ConfigurationError
from perch.http.request import Request
from perch.stages.session import SessionConfig, SessionStage, get_session, regenerate_session
from perch.testing import TestClient


def _counter_app(config: SessionConfig | None = None) -> App:
    app = App(session_stage=SessionStage(config or SessionConfig(secret_key="test-secret")))

    @app.unit("/count", name="count")
    def count(request: Request) -> dict:
        session = get_session()
        session["n"] = session.get("n", 0) + 1
        return {"n": session["n"]}

    @app.unit("/reset", name="reset")
    def reset(request: Request) -> dict:
        return {"keys": sorted(regenerate_session())}

    return app


class TestSessionConfig:
    def test_defaults(self) -> None:
        config = SessionConfig()
        assert config.cookie_name == "perch_session"
        assert config.max_age == 86400
        assert config.httponly is True
        assert config.samesite == "lax"
        assert config.idle_timeout_seconds is None

    def test_idle_timeout_must_be_positive(self) -> None:
        with pytest.raises(ConfigurationError, match="idle_timeout_seconds"):
            SessionStage(SessionConfig(secret_key="k", idle_timeout_seconds=0))

    def test_missing_secret_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING, logger="perch.session"):
            SessionStage()
        assert "ephemeral" in caplog.text


class TestGetSession:
    def test_outside_request(self) -> None:
        with pytest.raises(LookupError, match="No active session"):
            get_session()

    async def test_without_session_stage(self) -> None:
        app = App()

        @app.unit("/", name="root")
        def root(request: Request) -> str:
            try:
                get_session()
            except LookupError:
                return "no session"
            return "session"

        async with TestClient(app) as client:
            assert (await client.get("/")).text == "no session"


class TestRoundTrip:
    async def test_session_persists_between_requests(self) -> None:
        async with TestClient(_counter_app()) as client:
            assert (await client.get("/count")).json() == {"n": 1}
            assert (await client.get("/count")).json() == {"n": 2}
            assert "perch_session" in client.cookies

    async def test_set_cookie_attributes(self) -> None:
        async with TestClient(_counter_app()) as client:
            response = await client.get("/count")
        cookie = response.header("set-cookie")
        assert cookie is not None
        assert cookie.startswith("perch_session=")
        assert "HttpOnly" in cookie
        assert "SameSite=Lax" in cookie
        assert "Path=/" in cookie
        assert "Max-Age=86400" in cookie

    async def test_cookie_is_signed_json(self) -> None:
        async with TestClient(_counter_app()) as client:
            await client.get("/count")
            raw = client.cookies["perch_session"]
        serializer = URLSafeTimedSerializer("test-secret", salt="perch.session")
        assert serializer.loads(raw) == {"n": 1}

    async def test_custom_cookie_name(self) -> None:
        app = _counter_app(SessionConfig(secret_key="k", cookie_name="sid"))
        async with TestClient(app) as client:
            await client.get("/count")
            assert "sid" in client.cookies
            assert "perch_session" not in client.cookies

    async def test_regenerate_clears(self) -> None:
        async with TestClient(_counter_app()) as client:
            await client.get("/count")
            assert (await client.get("/reset")).json() == {"keys": []}
            assert (await client.get("/count")).json() == {"n": 1}

    async def test_enabled_by_options(self) -> None:
        app = App(options=Options.SESSIONS)

        @app.unit("/", name="root")
        def root(request: Request) -> dict:
            get_session()["seen"] = True
            return dict(get_session())

        async with TestClient(app) as client:
            assert (await client.get("/")).json() == {"seen": True}
        assert isinstance(app.get_session_stage(), SessionStage)


class TestRejectedCookies:
    async def test_tampered_cookie_starts_fresh(self) -> None:
        async with TestClient(_counter_app()) as client:
            await client.get("/count")
            client.cookies["perch_session"] = client.cookies["perch_session"] + "x"
            assert (await client.get("/count")).json() == {"n": 1}

    async def test_foreign_key_rejected(self) -> None:
        foreign = URLSafeTimedSerializer("other-secret", salt="perch.session")
        async with TestClient(_counter_app()) as client:
            client.cookies["perch_session"] = foreign.dumps({"n": 41})
            assert (await client.get("/count")).json() == {"n": 1}

    async def test_non_dict_payload_ignored(self) -> None:
        serializer = URLSafeTimedSerializer("test-secret", salt="perch.session")
        async with TestClient(_counter_app()) as client:
            client.cookies["perch_session"] = serializer.dumps([1, 2, 3])
            assert (await client.get("/count")).json() == {"n": 1}


class TestTimeouts:
    async def test_idle_timeout_expires_session(self, monkeypatch: pytest.MonkeyPatch) -> None:
        now = [1_000_000.0]
        monkeypatch.setattr("perch.stages.session.time", lambda: now[0])
        app = _counter_app(SessionConfig(secret_key="k", idle_timeout_seconds=60))
        async with TestClient(app) as client:
            assert (await client.get("/count")).json() == {"n": 1}
            now[0] += 30
            assert (await client.get("/count")).json() == {"n": 2}
            now[0] += 61
            assert (await client.get("/count")).json() == {"n": 1}

    async def test_absolute_timeout_ignores_activity(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        now = [1_000_000.0]
        monkeypatch.setattr("perch.stages.session.time", lambda: now[0])
        app = _counter_app(SessionConfig(secret_key="k", absolute_timeout_seconds=100))
        async with TestClient(app) as client:
            for expected in (1, 2, 3):
                assert (await client.get("/count")).json() == {"n": expected}
                now[0] += 40
            assert (await client.get("/count")).json() == {"n": 1}
