"""Lifecycle state machine for an application context.

The single gate for whether registrations may change. States advance
uninitialized -> starting -> started -> stopping -> stopped, a stopped
context may start again, and ``failed`` is reachable from any active
state and is terminal.

Thread safety:
    Transitions are driven by one control task. There is no locking;
    reads from request tasks only ever observe a settled state.
"""

import logging
from collections.abc import Callable
from enum import Enum
from typing import TypeAlias

from perch.errors import IllegalLifecycleState

logger = logging.getLogger("perch.lifecycle")


class LifecycleState(Enum):
    UNINITIALIZED = "uninitialized"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


# target -> states it may be entered from
_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    LifecycleState.STARTING: frozenset({LifecycleState.UNINITIALIZED, LifecycleState.STOPPED}),
    LifecycleState.STARTED: frozenset({LifecycleState.STARTING}),
    LifecycleState.STOPPING: frozenset({LifecycleState.STARTED}),
    LifecycleState.STOPPED: frozenset({LifecycleState.STOPPING}),
    LifecycleState.FAILED: frozenset(
        {LifecycleState.STARTING, LifecycleState.STARTED, LifecycleState.STOPPING}
    ),
}

# The pipeline is frozen in these states: no stage may be created.
FROZEN_STATES: frozenset[LifecycleState] = frozenset(
    {
        LifecycleState.STARTED,
        LifecycleState.STOPPING,
        LifecycleState.STOPPED,
        LifecycleState.FAILED,
    }
)

LifecycleListener: TypeAlias = Callable[[LifecycleState, LifecycleState], None]


class StartToken:
    """Capability held only while the context is starting.

    Minted by ``Lifecycle.begin_start()`` and revoked when the start
    finishes or fails. Calls that are legal only during the starting
    phase check that a live token exists.
    """

    __slots__ = ("_valid",)

    def __init__(self) -> None:
        self._valid = True

    @property
    def valid(self) -> bool:
        return self._valid

    def revoke(self) -> None:
        self._valid = False

    def __repr__(self) -> str:
        return f"<StartToken valid={self._valid}>"


class Lifecycle:
    """Tracks the context's lifecycle state and validates transitions.

    Usage::

        lifecycle = Lifecycle()
        token = lifecycle.begin_start()
        ...  # assemble, run startup work
        lifecycle.finish_start()
    """

    __slots__ = ("_error", "_listeners", "_name", "_state", "_token")

    def __init__(self, name: str = "perch") -> None:
        self._name = name
        self._state = LifecycleState.UNINITIALIZED
        self._token: StartToken | None = None
        self._error: BaseException | None = None
        self._listeners: list[LifecycleListener] = []

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def error(self) -> BaseException | None:
        """The exception that moved the context to ``failed``, if any."""
        return self._error

    @property
    def start_token(self) -> StartToken | None:
        """The live starting-phase capability, or ``None``."""
        token = self._token
        if token is None or not token.valid:
            return None
        return token

    @property
    def is_starting(self) -> bool:
        return self._state is LifecycleState.STARTING

    @property
    def is_started(self) -> bool:
        return self._state is LifecycleState.STARTED

    @property
    def is_running(self) -> bool:
        """True between ``begin_start()`` and ``finish_stop()``."""
        return self._state in (
            LifecycleState.STARTING,
            LifecycleState.STARTED,
            LifecycleState.STOPPING,
        )

    @property
    def is_frozen(self) -> bool:
        """True once the pipeline has been frozen (started or later)."""
        return self._state in FROZEN_STATES

    def add_listener(self, listener: LifecycleListener) -> None:
        """Call *listener(old, new)* after every transition."""
        self._listeners.append(listener)

    # -- Transitions --

    def begin_start(self) -> StartToken:
        self._transition(LifecycleState.STARTING, "begin_start")
        self._error = None
        self._token = StartToken()
        return self._token

    def finish_start(self) -> None:
        self._transition(LifecycleState.STARTED, "finish_start")
        self._revoke()

    def begin_stop(self) -> None:
        self._transition(LifecycleState.STOPPING, "begin_stop")

    def finish_stop(self) -> None:
        self._transition(LifecycleState.STOPPED, "finish_stop")

    def fail(self, exc: BaseException) -> None:
        """Move to ``failed``. A no-op if the context has already failed."""
        if self._state is LifecycleState.FAILED:
            return
        self._transition(LifecycleState.FAILED, "fail")
        self._error = exc
        self._revoke()
        logger.error("%s failed: %s", self._name, exc)

    def _revoke(self) -> None:
        if self._token is not None:
            self._token.revoke()
            self._token = None

    def _transition(self, target: LifecycleState, operation: str) -> None:
        old = self._state
        if old not in _TRANSITIONS[target]:
            raise IllegalLifecycleState(operation, old)
        self._state = target
        logger.debug("%s %s -> %s", self._name, old.value, target.value)
        for listener in self._listeners:
            listener(old, target)

    def __repr__(self) -> str:
        return f"<Lifecycle {self._name!r} {self._state.value}>"
