"""Invoke helpers — call sync or async callables uniformly.

Units, interceptors, and their ``init``/``destroy`` hooks can be ``def``
or ``async def``. Any code that calls user-provided objects goes through
this helper so the sync/async check lives in exactly one place.

Usage::

    from perch._internal.invoke import invoke

    result = await invoke(unit, request)
"""

import inspect
from typing import Any


async def invoke(target: Any, *args: Any, **kwargs: Any) -> Any:
    """Call *target* and await the result if it's awaitable."""
    result = target(*args, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


async def invoke_hook(obj: Any, hook: str, *args: Any) -> bool:
    """Call ``obj.<hook>(*args)`` if it exists. Returns whether it ran."""
    method = getattr(obj, hook, None)
    if method is None or not callable(method):
        return False
    await invoke(method, *args)
    return True
