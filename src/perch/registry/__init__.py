"""Registration table for handler units and interceptors.

Units and interceptors are registered by name against a binding (an
instance, a class, or a class name) and mapped to path patterns or, for
interceptors, to unit names. The table is frozen into an immutable
snapshot when the context starts.
"""

from perch.registry.binding import Binding
from perch.registry.holders import (
    InterceptorHolder,
    InterceptorRegistration,
    UnitHolder,
    UnitRegistration,
)
from perch.registry.mapping import ALL_UNITS, DispatchType, InterceptorMapping, UnitMapping
from perch.registry.table import RegistrationSnapshot, RegistrationTable

__all__ = [
    "ALL_UNITS",
    "Binding",
    "DispatchType",
    "InterceptorHolder",
    "InterceptorMapping",
    "InterceptorRegistration",
    "RegistrationSnapshot",
    "RegistrationTable",
    "UnitHolder",
    "UnitMapping",
    "UnitRegistration",
]
