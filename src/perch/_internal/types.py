"""Shared type aliases used across perch modules."""

from collections.abc import Callable
from typing import Any, TypeAlias

# Handler unit: a callable taking the request, sync or async
Unit: TypeAlias = Callable[..., Any]

# Interceptor: a callable taking (request, next), sync or async
Interceptor: TypeAlias = Callable[..., Any]

# Startup/shutdown hook: receives the ContextBinding
LifecycleHook: TypeAlias = Callable[..., Any]
