"""Backends speaking the llama-server (OpenAI-compatible) chat protocol.

``LlamaServerBackend`` talks to the process owned by ``LlamaServerManager`` on
the loopback interface; ``RemoteLlamaBackend`` talks to a llama-server hosted
on another machine that this application does not manage.
"""

from __future__ import annotations

from typing import Any, Dict

from vision_grabber.app.core.config import SettingsManager
from . import http_utils
from .backend_exceptions import (
    BackendConfigurationError,
    BackendNotRunningError,
    BackendResponseError,
)
from .base import BackendKind, BaseBackend
from .image_utils import to_data_url


CHAT_COMPLETIONS_PATH = "/v1/chat/completions"
REQUEST_TIMEOUT = 300.0


def create_async_client(*args, **kwargs):
    """Proxy create_async_client so tests can monkeypatch either module."""
    return http_utils.create_async_client(*args, **kwargs)


def build_chat_payload(image: str, instruction: str) -> Dict[str, Any]:
    content = []
    if instruction:
        content.append({"type": "text", "text": instruction})
    content.append({"type": "image_url", "image_url": {"url": to_data_url(image)}})
    return {"messages": [{"role": "user", "content": content}], "stream": False}


def extract_chat_text(data: Any) -> str:
    """Pull the assistant text out of a chat completions response."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise BackendResponseError("llama-server response did not contain a message.")
    if isinstance(content, list):
        content = "".join(part.get("text", "") for part in content if isinstance(part, dict))
    if content is None:
        raise BackendResponseError("llama-server returned an empty message.")
    return str(content)


class OpenAIChatBackend(BaseBackend):
    provider = "llama-server"

    def base_url(self) -> str:
        raise NotImplementedError

    async def process(self, image: str, instruction: str) -> str:
        target_url = self.base_url().rstrip("/") + CHAT_COMPLETIONS_PATH
        payload = build_chat_payload(image, instruction)
        self.logger.debug(f"Sending image request to {target_url}")
        async with create_async_client(timeout=REQUEST_TIMEOUT) as client:
            data = await http_utils.request_json(
                client,
                "POST",
                target_url,
                provider=self.provider,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        return extract_chat_text(data)


class LlamaServerBackend(OpenAIChatBackend):
    """Local-Engine backend; requires the managed llama-server to be running."""

    kind = BackendKind.LOCAL
    provider = "Local llama-server"

    def __init__(self, server_manager):
        super().__init__()
        self.server_manager = server_manager

    def base_url(self) -> str:
        return self.server_manager.base_url

    async def process(self, image: str, instruction: str) -> str:
        if not self.server_manager.is_running:
            raise BackendNotRunningError("Local llama-server is not running.")
        return await super().process(image, instruction)


class RemoteLlamaBackend(OpenAIChatBackend):
    """Remote-Engine backend at ``RemoteLlamaAddress``."""

    kind = BackendKind.REMOTE
    provider = "Remote llama-server"

    def __init__(self, settings_manager: SettingsManager):
        super().__init__()
        self.settings_manager = settings_manager

    def base_url(self) -> str:
        address = self.settings_manager.current.RemoteLlamaAddress.strip()
        if not address:
            raise BackendConfigurationError("Remote llama-server address is not configured.")
        return address
