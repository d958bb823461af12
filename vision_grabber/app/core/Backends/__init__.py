"""Backend package exports with lazy loading.

Exposes the backend contract, the four variants, the registry and the
exception types while deferring submodule imports until first access.
"""

from typing import TYPE_CHECKING, Any
import importlib

__all__ = [
    "BackendKind",
    "BackendSelection",
    "BaseBackend",
    "BackendManager",
    "LlamaServerBackend",
    "RemoteLlamaBackend",
    "GeminiBackend",
    "RelayBackend",
    "BackendFailure",
    "BackendConfigurationError",
    "BackendConnectionError",
    "BackendNotRunningError",
    "BackendHTTPError",
    "BackendAuthenticationError",
    "BackendResponseError",
]

_PKG = "vision_grabber.app.core.Backends"
_ATTR_MAP = {
    "BackendKind": (f"{_PKG}.base", "BackendKind"),
    "BackendSelection": (f"{_PKG}.base", "BackendSelection"),
    "BaseBackend": (f"{_PKG}.base", "BaseBackend"),
    "BackendManager": (f"{_PKG}.backend_manager", "BackendManager"),
    "LlamaServerBackend": (f"{_PKG}.llama_backend", "LlamaServerBackend"),
    "RemoteLlamaBackend": (f"{_PKG}.llama_backend", "RemoteLlamaBackend"),
    "GeminiBackend": (f"{_PKG}.gemini_backend", "GeminiBackend"),
    "RelayBackend": (f"{_PKG}.relay_backend", "RelayBackend"),
    "BackendFailure": (f"{_PKG}.backend_exceptions", "BackendFailure"),
    "BackendConfigurationError": (f"{_PKG}.backend_exceptions", "BackendConfigurationError"),
    "BackendConnectionError": (f"{_PKG}.backend_exceptions", "BackendConnectionError"),
    "BackendNotRunningError": (f"{_PKG}.backend_exceptions", "BackendNotRunningError"),
    "BackendHTTPError": (f"{_PKG}.backend_exceptions", "BackendHTTPError"),
    "BackendAuthenticationError": (f"{_PKG}.backend_exceptions", "BackendAuthenticationError"),
    "BackendResponseError": (f"{_PKG}.backend_exceptions", "BackendResponseError"),
}

def __getattr__(name: str) -> Any:
    mod_attr = _ATTR_MAP.get(name)
    if not mod_attr:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr = mod_attr
    module = importlib.import_module(module_name)
    return getattr(module, attr)

if TYPE_CHECKING:  # for static type checkers
    from .base import BackendKind, BackendSelection, BaseBackend
    from .backend_manager import BackendManager
    from .llama_backend import LlamaServerBackend, RemoteLlamaBackend
    from .gemini_backend import GeminiBackend
    from .relay_backend import RelayBackend
    from .backend_exceptions import (
        BackendFailure,
        BackendConfigurationError,
        BackendConnectionError,
        BackendNotRunningError,
        BackendHTTPError,
        BackendAuthenticationError,
        BackendResponseError,
    )
