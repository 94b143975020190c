"""Class loading — turn a class name into an instance.

Accepts ``"package.module:Attr"`` or ``"package.module.Attr"``. Nested
attributes (``"pkg.mod:Outer.Inner"``) are followed with ``getattr``.
"""

import importlib
from typing import Any

from perch.errors import ClassResolutionError


def load_class(name: str) -> Any:
    """Import the object named by *name*.

    Raises ``ClassResolutionError`` if the module cannot be imported or
    the attribute does not exist.
    """
    if not name or not name.strip():
        raise ClassResolutionError(name, "empty class name")

    if ":" in name:
        module_name, _, attr_path = name.partition(":")
    else:
        module_name, _, attr_path = name.rpartition(".")
    if not module_name or not attr_path:
        raise ClassResolutionError(name, "expected 'module:Attr' or 'module.Attr'")

    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise ClassResolutionError(name, str(exc)) from exc

    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as exc:
            raise ClassResolutionError(name, f"no attribute {attr!r}") from exc
    return target


def instantiate(cls: Any, name: str | None = None) -> Any:
    """Call *cls* with no arguments.

    Constructor failures are wrapped in ``ClassResolutionError`` so a bad
    registration surfaces the same way whether it was made by name or by
    class reference.
    """
    label = name or getattr(cls, "__qualname__", repr(cls))
    if not callable(cls):
        raise ClassResolutionError(label, "not callable")
    try:
        return cls()
    except Exception as exc:
        raise ClassResolutionError(label, f"{type(exc).__name__}: {exc}") from exc
