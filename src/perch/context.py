"""ContextBinding — the registration surface handed to application code.

Startup hooks and the ``init(binding)`` hooks of units and interceptors
receive a ``ContextBinding``. It forwards to the registration table but
checks the lifecycle state first: static configuration is accepted
before the context starts, and dynamic registration only while it is
starting::

    async def init(self, binding: ContextBinding) -> None:
        reg = binding.add_unit("health", HealthUnit())
        reg.add_mapping("/health")

The binding holds explicit references to the table, the lifecycle, and
the dispatch stage slot. It never reaches back into the app.
"""

from typing import Any

from perch.config import ContextConfig
from perch.errors import ConfigurationError, IllegalLifecycleState
from perch.lifecycle import Lifecycle, LifecycleState
from perch.registry.binding import Binding
from perch.registry.holders import InterceptorRegistration, UnitRegistration
from perch.registry.mapping import DispatchType, InterceptorMapping
from perch.registry.table import RegistrationTable
from perch.stages.dispatch import Dispatcher, DispatchStage
from perch.stages.factory import StageSlot

_CONFIGURABLE = frozenset({LifecycleState.UNINITIALIZED, LifecycleState.STARTING})


class ContextBinding:
    """Lifecycle-guarded proxy over the registration table."""

    __slots__ = ("_attributes", "_config", "_dispatch_slot", "_lifecycle", "_table")

    # Factory-assisted creation is not offered; create_* always return None
    supports_factory_creation = False

    def __init__(
        self,
        table: RegistrationTable,
        lifecycle: Lifecycle,
        dispatch_slot: StageSlot[DispatchStage],
        config: ContextConfig | None = None,
    ) -> None:
        self._table = table
        self._lifecycle = lifecycle
        self._dispatch_slot = dispatch_slot
        self._config = config or ContextConfig()
        self._attributes: dict[str, Any] = {}

    # -- Context information --

    @property
    def state(self) -> LifecycleState:
        return self._lifecycle.state

    @property
    def config(self) -> ContextConfig:
        return self._config

    @property
    def context_path(self) -> str:
        return self._config.context_path

    @property
    def attributes(self) -> dict[str, Any]:
        """Application-wide values shared between units and interceptors."""
        return self._attributes

    def dispatch_stage(self) -> DispatchStage | None:
        """The dispatch stage, if one exists. Never creates one."""
        return self._dispatch_slot.value

    # -- Guards --

    def _require(self, operation: str, allowed: frozenset[LifecycleState]) -> None:
        state = self._lifecycle.state
        if state not in allowed:
            raise IllegalLifecycleState(operation, state)

    def _require_start_token(self, operation: str) -> None:
        if self._lifecycle.start_token is None:
            raise IllegalLifecycleState(
                operation,
                self._lifecycle.state,
                "Units can only be added from startup or init hooks.",
            )

    # -- Registration --

    def add_interceptor(
        self,
        name: str,
        target: Any,
        dispatch_types: DispatchType = DispatchType.REQUEST,
    ) -> InterceptorRegistration:
        """Register an interceptor under *name*.

        *target* is an instance, a class, or a ``"module:Class"`` name.
        """
        self._require("add_interceptor", _CONFIGURABLE)
        return self._table.register_interceptor(name, Binding.of(target), dispatch_types)

    def add_unit(self, name: str, target: Any) -> UnitRegistration:
        """Register a unit while the context is starting."""
        self._require("add_unit", frozenset({LifecycleState.STARTING}))
        self._require_start_token("add_unit")
        return self._table.register_unit(name, Binding.of(target))

    def add_unit_mapping(self, unit_name: str, *patterns: str) -> frozenset[str]:
        """Map *patterns* to a registered unit. Returns conflicting patterns."""
        self._require("add_unit_mapping", _CONFIGURABLE)
        return self._table.add_unit_mapping(unit_name, patterns)

    def add_interceptor_mapping_for_unit_names(
        self,
        interceptor_name: str,
        dispatch_types: DispatchType | None,
        match_after: bool,
        *unit_names: str,
    ) -> InterceptorMapping:
        self._require("add_interceptor_mapping_for_unit_names", _CONFIGURABLE)
        registration = self._table.find_interceptor(interceptor_name)
        if registration is None:
            msg = f"No interceptor named {interceptor_name!r} is registered."
            raise ConfigurationError(msg)
        return registration.add_mapping_for_unit_names(
            *unit_names, dispatch_types=dispatch_types, match_after=match_after
        )

    # -- Lookup (any state) --

    def find_unit_registration(self, name: str) -> UnitRegistration | None:
        return self._table.find_unit(name)

    def find_interceptor_registration(self, name: str) -> InterceptorRegistration | None:
        return self._table.find_interceptor(name)

    def get_named_dispatcher(self, name: str) -> Dispatcher | None:
        """A dispatcher for unit *name*, or ``None`` if no such unit exists."""
        if self._table.find_unit(name) is None:
            return None
        return Dispatcher(self.dispatch_stage, name)

    # -- Factory hooks --

    def create_unit(self, cls: type) -> None:
        return None

    def create_interceptor(self, cls: type) -> None:
        return None

    def __repr__(self) -> str:
        return f"<ContextBinding {self._config.display_name!r} {self.state.value}>"
