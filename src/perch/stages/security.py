"""Security stage — authentication plus path constraints.

Authenticates requests via bearer tokens (API clients) or the session
(browsers), exposes the user through ``get_user()``, then checks the
request path against the configured constraints before delegating.

Usage::

    from perch.stages.security import Constraint, SecurityConfig, SecurityStage

    app.set_security_stage(SecurityStage(SecurityConfig(
        constraints=(Constraint("/admin/*", roles=frozenset({"admin"})),),
        load_user=db.get_user_by_id,       # (id: str) -> User | None
        verify_token=db.get_user_by_token, # (token: str) -> User | None
    )))

With no configuration every request is let through as anonymous.
"""

import logging
from collections.abc import Callable
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from perch._internal.invoke import invoke
from perch.errors import Forbidden, Unauthorized
from perch.http.request import Request
from perch.http.response import Response, redirect
from perch.routing.pattern import PathPattern, compile_pattern
from perch.stages.protocol import WrappingStage
from perch.stages.session import get_session, regenerate_session

logger = logging.getLogger("perch.security")


@runtime_checkable
class User(Protocol):
    """Minimal user protocol.

    Any object with ``id`` and ``is_authenticated`` satisfies this. Roles
    are read from an optional ``permissions`` attribute.
    """

    @property
    def id(self) -> str: ...

    @property
    def is_authenticated(self) -> bool: ...


@dataclass(frozen=True, slots=True)
class AnonymousUser:
    """Stands in for the user on unauthenticated requests."""

    id: str = ""
    is_authenticated: bool = False
    permissions: frozenset[str] = frozenset()


_ANONYMOUS: AnonymousUser = AnonymousUser()

_user_var: ContextVar[Any] = ContextVar("perch_user")


def get_user() -> User:
    """Return the current user (or ``AnonymousUser``).

    Raises ``LookupError`` outside a request that passed through a
    ``SecurityStage``.
    """
    try:
        return _user_var.get()
    except LookupError:
        msg = "No security context. Enable Options.SECURITY before accessing the user."
        raise LookupError(msg) from None


def current_user() -> User:
    """Like ``get_user()``, but returns ``AnonymousUser`` instead of raising."""
    try:
        return _user_var.get()
    except LookupError:
        return _ANONYMOUS


def user_roles(user: Any) -> frozenset[str]:
    return frozenset(getattr(user, "permissions", ()) or ())


@dataclass(frozen=True, slots=True)
class Constraint:
    """Access rule for requests whose path matches ``pattern``.

    ``roles`` empty means any authenticated user; with roles, the user
    needs at least one of them. ``authenticated=False`` opens the path to
    everyone, which is how a public hole is punched in a wider constraint.
    """

    pattern: str
    roles: frozenset[str] = frozenset()
    authenticated: bool = True

    @property
    def compiled(self) -> PathPattern:
        return compile_pattern(self.pattern)

    def matches(self, path: str) -> bool:
        return self.compiled.matches(path)


@dataclass(frozen=True, slots=True)
class SecurityConfig:
    """Security stage configuration.

    Attributes:
        constraints: Checked in order; the first match decides.
        load_user: Callback loading a user by id (session auth), sync or async.
        verify_token: Callback verifying a bearer token (token auth), sync or async.
        session_key: Session dict key for the user id.
        token_header: HTTP header carrying the token.
        token_scheme: Expected scheme prefix.
        login_url: Where unauthenticated browsers are redirected.
            ``None`` answers 401 instead.
    """

    constraints: tuple[Constraint, ...] = ()
    load_user: Callable[[str], Any] | None = None
    verify_token: Callable[[str], Any] | None = None
    session_key: str = "user_id"
    token_header: str = "Authorization"
    token_scheme: str = "Bearer"
    login_url: str | None = None


_active_config: ContextVar[SecurityConfig | None] = ContextVar(
    "perch_security_config", default=None
)


def login(user: User) -> None:
    """Log in *user*: regenerate the session and store the user id.

    Needs both the session and the security stage in the pipeline.
    """
    config = _active_config.get()
    if config is None:
        msg = "login() requires an active SecurityStage."
        raise LookupError(msg)
    session = regenerate_session()
    session[config.session_key] = user.id
    _user_var.set(user)
    logger.info("login user_id=%s", user.id)


def logout() -> None:
    """Log out: discard the whole session and reset the user."""
    config = _active_config.get()
    if config is None:
        msg = "logout() requires an active SecurityStage."
        raise LookupError(msg)
    regenerate_session()
    _user_var.set(_ANONYMOUS)


class SecurityStage(WrappingStage):
    """Middle stage: decides whether the request may reach dispatch.

    Sits inside the session stage when both are enabled, so session
    authentication sees the already-loaded session.
    """

    __slots__ = ("_config",)

    def __init__(self, config: SecurityConfig | None = None) -> None:
        super().__init__()
        self._config = config or SecurityConfig()

    @property
    def config(self) -> SecurityConfig:
        return self._config

    def constraint_for(self, path: str) -> Constraint | None:
        for constraint in self._config.constraints:
            if constraint.matches(path):
                return constraint
        return None

    def _extract_token(self, request: Request) -> str | None:
        header = request.headers.get(self._config.token_header)
        if header is None:
            return None
        prefix = f"{self._config.token_scheme} "
        if not header.startswith(prefix):
            return None
        token = header[len(prefix) :].strip()
        return token or None

    async def _authenticate_token(self, token: str | None) -> User | None:
        if token is None or self._config.verify_token is None:
            return None
        user = await invoke(self._config.verify_token, token)
        if user is None:
            logger.info("rejected bearer token")
        return user

    async def _authenticate_session(self) -> User | None:
        if self._config.load_user is None:
            return None
        try:
            session = get_session()
        except LookupError:
            # Sessions disabled: token auth only
            return None
        user_id = session.get(self._config.session_key)
        if not user_id:
            return None
        return await invoke(self._config.load_user, str(user_id))

    def _check(self, request: Request, user: User) -> None:
        constraint = self.constraint_for(request.path)
        if constraint is None or not constraint.authenticated:
            return
        if not user.is_authenticated:
            logger.debug("unauthenticated request to %s", request.path)
            raise Unauthorized()
        if constraint.roles and not constraint.roles & user_roles(user):
            logger.info("user %s lacks a role for %s", user.id, request.path)
            raise Forbidden()

    async def handle(self, request: Request) -> Response:
        """Authenticate, check constraints, then delegate."""
        cfg = self._config
        token = self._extract_token(request)
        user = await self._authenticate_token(token)
        if user is None:
            user = await self._authenticate_session()
        resolved: User = user if user is not None else _ANONYMOUS

        user_token = _user_var.set(resolved)
        config_token = _active_config.set(cfg)
        try:
            try:
                self._check(request, resolved)
            except Unauthorized:
                if cfg.login_url is not None and token is None:
                    return redirect(cfg.login_url)
                raise
            return await self.call_next(request)
        finally:
            _user_var.reset(user_token)
            _active_config.reset(config_token)
