"""Context configuration.

ContextConfig is a frozen dataclass — immutable after creation, so the
stage options chosen at construction cannot drift once the context exists.
"""

from dataclasses import dataclass
from enum import IntFlag

from perch.errors import ConfigurationError


class Options(IntFlag):
    """Which optional pipeline stages are created by default.

    Dispatch is always present; these flags only cover the wrappers::

        Options.SESSIONS | Options.SECURITY
    """

    NONE = 0
    NO_SESSIONS = 0
    NO_SECURITY = 0
    SESSIONS = 1
    SECURITY = 2

    @classmethod
    def of(cls, *, sessions: bool = False, security: bool = False) -> "Options":
        """Build options from booleans."""
        options = cls.NONE
        if sessions:
            options |= cls.SESSIONS
        if security:
            options |= cls.SECURITY
        return options


@dataclass(frozen=True, slots=True)
class ContextConfig:
    """Context configuration. Immutable after creation.

    All fields have sensible defaults. Override what you need::

        config = ContextConfig(options=Options.SESSIONS, context_path="/app")
    """

    options: Options = Options.NONE

    # Requests outside this prefix get a 404; inside it the prefix is stripped
    context_path: str = "/"

    display_name: str = "perch"
    debug: bool = False

    def __post_init__(self) -> None:
        if not self.context_path.startswith("/"):
            msg = f"context_path must start with '/', got {self.context_path!r}."
            raise ConfigurationError(msg)

    @property
    def sessions_enabled(self) -> bool:
        return bool(self.options & Options.SESSIONS)

    @property
    def security_enabled(self) -> bool:
        return bool(self.options & Options.SECURITY)
