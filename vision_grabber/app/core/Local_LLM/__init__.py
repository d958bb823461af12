"""Managed llama-server process and the errors raised while launching it."""

from .LLM_Inference_Exceptions import LLMInferenceLibError, ModelNotFoundError, ServerError
from .LlamaCpp_Handler import LlamaServerManager

__all__ = [
    "LlamaServerManager",
    "LLMInferenceLibError",
    "ModelNotFoundError",
    "ServerError",
]
