"""Local engine exception types.

Defines a small hierarchy of exceptions for the Local_LLM module. They never
escape the lifecycle manager's public start/stop methods; they describe why a
launch failed.
"""

# Base class
class LLMInferenceLibError(Exception):
    """Base exception for the local engine package."""
    pass


class ModelNotFoundError(LLMInferenceLibError):
    """Raised when a model or projector file is not found."""
    pass


class ServerError(LLMInferenceLibError):
    """Raised for server-related errors (configuration, launch, readiness)."""
    pass

# End of LLM_Inference_Exceptions.py
