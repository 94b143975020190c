"""What a registration points at: an instance, a class, or a class name."""

from dataclasses import dataclass
from typing import Any

from perch.errors import ConfigurationError
from perch.loading import instantiate, load_class


@dataclass(frozen=True, slots=True)
class Binding:
    """Exactly one of ``instance``, ``cls``, or ``class_name`` is set.

    Prefer ``Binding.of(target)``, which picks the right field::

        Binding.of(my_unit)              # instance (any callable object)
        Binding.of(MyUnit)               # cls
        Binding.of("app.units:MyUnit")   # class_name
    """

    instance: Any = None
    cls: type | None = None
    class_name: str | None = None

    def __post_init__(self) -> None:
        given = sum(v is not None for v in (self.instance, self.cls, self.class_name))
        if given != 1:
            msg = (
                "A binding needs exactly one of instance, cls, or class_name "
                f"(got {given})."
            )
            raise ConfigurationError(msg)

    @classmethod
    def of(cls, target: Any) -> "Binding":
        if isinstance(target, Binding):
            return target
        if isinstance(target, str):
            return cls(class_name=target)
        if isinstance(target, type):
            return cls(cls=target)
        return cls(instance=target)

    @property
    def is_instance(self) -> bool:
        return self.instance is not None

    @property
    def label(self) -> str:
        """Human-readable description, also used to derive default names."""
        if self.class_name is not None:
            return self.class_name
        if self.cls is not None:
            return self.cls.__qualname__
        target = self.instance
        return getattr(target, "__qualname__", None) or type(target).__qualname__

    def resolve(self) -> Any:
        """Produce the object to run.

        Instances are returned as-is; classes are instantiated with no
        arguments; class names are imported first. Import and constructor
        failures raise ``ClassResolutionError``.
        """
        if self.instance is not None:
            return self.instance
        if self.cls is not None:
            return instantiate(self.cls)
        assert self.class_name is not None
        loaded = load_class(self.class_name)
        if isinstance(loaded, type):
            return instantiate(loaded, self.class_name)
        # A module-level function or ready-made object named by path
        return loaded
