"""Perch — an ASGI application context with a lifecycle-guarded pipeline.

Handler units and interceptors are registered by name, and a fixed
session -> security -> dispatch pipeline is assembled when the context
starts. Optional stages are switched on with ``Options``.

Basic usage::

    from perch import App, Options

    app = App(options=Options.SESSIONS)

    @app.unit("/")
    def index(request):
        return "Hello, World!"

Run it with any ASGI server; lifespan startup calls ``app.start()``.
"""

from importlib import import_module

__version__ = "0.1.0"

# public name -> defining module
_EXPORTS: dict[str, str] = {
    "App": "perch.app",
    "ContextBinding": "perch.context",
    "ContextConfig": "perch.config",
    "Options": "perch.config",
    "Lifecycle": "perch.lifecycle",
    "LifecycleState": "perch.lifecycle",
    "DispatchType": "perch.registry.mapping",
    "Dispatcher": "perch.stages.dispatch",
    "Next": "perch.stages.dispatch",
    "Request": "perch.http.request",
    "Response": "perch.http.response",
    "redirect": "perch.http.response",
    "get_request": "perch.server.handler",
    "get_session": "perch.stages.session",
    "get_user": "perch.stages.security",
    "PerchError": "perch.errors",
    "ConfigurationError": "perch.errors",
    "IllegalLifecycleState": "perch.errors",
    "DuplicateName": "perch.errors",
    "ClassResolutionError": "perch.errors",
    "HTTPError": "perch.errors",
    "NotFound": "perch.errors",
    "Forbidden": "perch.errors",
    "Unauthorized": "perch.errors",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> object:
    """Lazy imports for the public API.

    Keeps ``import perch`` fast while providing a clean top-level API.
    """
    module = _EXPORTS.get(name)
    if module is None:
        msg = f"module 'perch' has no attribute {name!r}"
        raise AttributeError(msg)
    return getattr(import_module(module), name)
