"""Cloud-API backend for Google Gemini's generateContent endpoint."""

from __future__ import annotations

from typing import Any, Dict

from vision_grabber.app.core.config import SettingsManager
from . import http_utils
from .backend_exceptions import BackendConfigurationError, BackendResponseError
from .base import BackendKind, BaseBackend
from .image_utils import guess_image_mime, strip_data_url


GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
REQUEST_TIMEOUT = 180.0


def create_async_client(*args, **kwargs):
    """Proxy create_async_client so tests can monkeypatch either module."""
    return http_utils.create_async_client(*args, **kwargs)


def build_gemini_payload(image: str, instruction: str) -> Dict[str, Any]:
    body = strip_data_url(image)
    parts = []
    if instruction:
        parts.append({"text": instruction})
    parts.append({"inline_data": {"mime_type": guess_image_mime(body), "data": body}})
    return {"contents": [{"role": "user", "parts": parts}]}


def extract_gemini_text(data: Any) -> str:
    candidates = (data or {}).get("candidates") or []
    if not candidates:
        feedback = (data or {}).get("promptFeedback") or {}
        reason = feedback.get("blockReason")
        if reason:
            raise BackendResponseError(f"Gemini blocked the request: {reason}")
        raise BackendResponseError("Gemini returned no candidates.")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    texts = [part["text"] for part in parts if isinstance(part, dict) and "text" in part]
    if not texts:
        reason = candidates[0].get("finishReason", "unknown")
        raise BackendResponseError(f"Gemini returned no text (finish reason: {reason}).")
    return "".join(texts)


class GeminiBackend(BaseBackend):
    kind = BackendKind.CLOUD
    provider = "Gemini"

    def __init__(self, settings_manager: SettingsManager):
        super().__init__()
        self.settings_manager = settings_manager

    async def process(self, image: str, instruction: str) -> str:
        settings = self.settings_manager.current
        api_key = settings.CloudApiKey.strip()
        if not api_key:
            raise BackendConfigurationError("Google API key is not configured.")
        model = settings.CloudModelId.strip() or "gemini-2.0-flash-lite"
        api_url = f"{GEMINI_API_BASE}/{model}:generateContent"
        headers = {"x-goog-api-key": api_key, "Content-Type": "application/json"}
        self.logger.debug(f"Sending image request to Gemini model {model}")
        async with create_async_client(timeout=REQUEST_TIMEOUT) as client:
            data = await http_utils.request_json(
                client, "POST", api_url, provider=self.provider, json=build_gemini_payload(image, instruction),
                headers=headers,
            )
        return extract_gemini_text(data)
