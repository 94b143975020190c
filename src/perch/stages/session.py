"""Session stage — signed cookie sessions.

Session data is serialized as JSON and signed using ``itsdangerous``.
The session dict is stored in a ContextVar, reachable through
``get_session()`` from any stage, interceptor, or unit further in.
"""

import logging
import secrets
from contextvars import ContextVar
from dataclasses import dataclass
from time import time
from typing import Any

from itsdangerous import BadSignature, URLSafeTimedSerializer

from perch.errors import ConfigurationError
from perch.http.cookies import SetCookie
from perch.http.request import Request
from perch.http.response import Response
from perch.stages.protocol import WrappingStage

logger = logging.getLogger("perch.session")

_session_var: ContextVar[dict[str, Any] | None] = ContextVar("perch_session", default=None)


def get_session() -> dict[str, Any]:
    """Return the current session dict.

    Raises ``LookupError`` outside a request that passed through a
    ``SessionStage``.
    """
    session = _session_var.get()
    if session is None:
        msg = (
            "No active session. Enable Options.SESSIONS (or supply a "
            "SessionStage) before accessing the session."
        )
        raise LookupError(msg)
    return session


def regenerate_session() -> dict[str, Any]:
    """Clear the session and return the same, now empty, dict.

    Discards everything from the previous session so a fresh cookie is
    issued on the response. Used by ``login()`` and ``logout()``.
    """
    session = get_session()
    session.clear()
    return session


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Session stage configuration.

    Sessions are signed, not encrypted. When ``secret_key`` is empty a
    random per-process key is generated, so sessions do not survive a
    restart of the process.
    """

    secret_key: str = ""
    cookie_name: str = "perch_session"
    max_age: int = 86400  # 24 hours
    path: str = "/"
    domain: str | None = None
    secure: bool = False
    httponly: bool = True
    samesite: str = "lax"
    idle_timeout_seconds: int | None = None
    absolute_timeout_seconds: int | None = None
    created_at_key: str = "__created_at"
    last_seen_at_key: str = "__last_seen_at"


class SessionStage(WrappingStage):
    """Outermost optional stage: resolves the session before anything else.

    Reads the session cookie, verifies its signature, exposes the dict via
    ``get_session()``, delegates, then signs the (possibly changed) dict
    back onto the response.
    """

    __slots__ = ("_config", "_serializer")

    def __init__(self, config: SessionConfig | None = None) -> None:
        super().__init__()
        config = config or SessionConfig()
        secret = config.secret_key
        if not secret:
            secret = secrets.token_urlsafe(32)
            logger.warning("SessionStage has no secret_key; using an ephemeral one")
        if config.idle_timeout_seconds is not None and config.idle_timeout_seconds <= 0:
            msg = "SessionConfig.idle_timeout_seconds must be positive."
            raise ConfigurationError(msg)
        self._config = config
        self._serializer = URLSafeTimedSerializer(secret, salt="perch.session")

    @property
    def config(self) -> SessionConfig:
        return self._config

    def _load_session(self, request: Request) -> dict[str, Any]:
        """Deserialize and verify the session cookie."""
        cookie_value = request.cookies.get(self._config.cookie_name)
        if not cookie_value:
            return {}

        try:
            data = self._serializer.loads(cookie_value, max_age=self._config.max_age)
        except BadSignature:
            logger.debug("discarding session cookie with a bad signature")
            return {}

        if not isinstance(data, dict):
            return {}

        cfg = self._config
        if cfg.idle_timeout_seconds is None and cfg.absolute_timeout_seconds is None:
            return data

        now = time()
        try:
            created_ts = float(data.get(cfg.created_at_key, now))
            last_seen_ts = float(data.get(cfg.last_seen_at_key, now))
        except (TypeError, ValueError):
            return {}

        if cfg.absolute_timeout_seconds is not None and now - created_ts > cfg.absolute_timeout_seconds:
            return {}
        if cfg.idle_timeout_seconds is not None and now - last_seen_ts > cfg.idle_timeout_seconds:
            return {}
        return data

    def _save_session(self, response: Response, session: dict[str, Any]) -> Response:
        cfg = self._config
        return response.with_cookie(
            SetCookie(
                name=cfg.cookie_name,
                value=self._serializer.dumps(session),
                max_age=cfg.max_age,
                path=cfg.path,
                domain=cfg.domain,
                secure=cfg.secure,
                httponly=cfg.httponly,
                samesite=cfg.samesite,
            )
        )

    async def handle(self, request: Request) -> Response:
        """Load session, delegate, then save the session to the response."""
        session = self._load_session(request)
        cfg = self._config
        if cfg.idle_timeout_seconds is not None or cfg.absolute_timeout_seconds is not None:
            now = time()
            session.setdefault(cfg.created_at_key, now)
            session[cfg.last_seen_at_key] = now
        token = _session_var.set(session)

        try:
            response = await self.call_next(request)
        finally:
            _session_var.reset(token)

        # Always re-sign, which refreshes the timestamp for sliding expiry
        return self._save_session(response, session)
