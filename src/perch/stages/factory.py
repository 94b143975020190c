"""Lazy stage construction policy.

Whether a stage slot gets filled is decided in one place, by a pure
function of the stage kind, the context options, and the lifecycle
state. The context then applies the decision to its ``StageSlot``.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from perch.config import Options
from perch.lifecycle import FROZEN_STATES, LifecycleState

T = TypeVar("T")


class StageKind(Enum):
    SESSION = "session"
    SECURITY = "security"
    DISPATCH = "dispatch"

    @property
    def option(self) -> Options | None:
        """The option flag that enables this kind, or None if always on."""
        match self:
            case StageKind.SESSION:
                return Options.SESSIONS
            case StageKind.SECURITY:
                return Options.SECURITY
            case _:
                return None


class StageDecision(Enum):
    SUPPLIED = "supplied"
    CREATE = "create"
    ABSENT = "absent"


def decide_stage(
    kind: StageKind,
    *,
    options: Options,
    state: LifecycleState,
    supplied: bool,
) -> StageDecision:
    """Decide what ``get_or_create_stage(kind)`` should do.

    1. a supplied (or already created) instance wins
    2. a disabled optional stage is absent
    3. nothing is created once the pipeline is frozen
    4. otherwise the stage is created with its default policy
    """
    if supplied:
        return StageDecision.SUPPLIED
    flag = kind.option
    if flag is not None and not options & flag:
        return StageDecision.ABSENT
    if state in FROZEN_STATES:
        return StageDecision.ABSENT
    return StageDecision.CREATE


@dataclass(slots=True)
class StageSlot(Generic[T]):
    """Holds at most one stage instance of one kind."""

    kind: StageKind
    value: T | None = None

    @property
    def filled(self) -> bool:
        return self.value is not None

    def get_or_create(
        self,
        *,
        options: Options,
        state: LifecycleState,
        factory: Callable[[], T],
    ) -> T | None:
        """Apply ``decide_stage`` and cache a newly created instance."""
        match decide_stage(self.kind, options=options, state=state, supplied=self.filled):
            case StageDecision.SUPPLIED:
                return self.value
            case StageDecision.CREATE:
                self.value = factory()
                return self.value
            case _:
                return None
