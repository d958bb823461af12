"""Backend exception types.

Defines a small hierarchy of exceptions raised by image-processing backends.
Every failure a caller needs to handle is a ``BackendFailure``.
"""

from typing import Optional


# Base class
class BackendFailure(Exception):
    """Base exception for all backend failures. The message is human readable."""
    pass


class BackendConfigurationError(BackendFailure):
    """Raised when a backend is missing an address, key or other setting."""
    pass


class BackendConnectionError(BackendFailure):
    """Raised when the upstream service cannot be reached."""
    pass


class BackendNotRunningError(BackendFailure):
    """Raised when the locally managed engine is not running."""
    pass


class BackendHTTPError(BackendFailure):
    """Raised when the upstream service answers with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BackendAuthenticationError(BackendHTTPError):
    """Raised when the upstream service rejects the credential."""
    pass


class BackendResponseError(BackendFailure):
    """Raised when the upstream payload cannot be turned into text."""
    pass

# End of backend_exceptions.py
