"""Relay-Client backend: forwards jobs to another instance's relay server."""

from __future__ import annotations

from vision_grabber.app.core.config import SettingsManager
from . import http_utils
from .backend_exceptions import BackendConfigurationError
from .base import BackendKind, BaseBackend


PROCESS_PATH = "/process"
REQUEST_TIMEOUT = 300.0


def create_async_client(*args, **kwargs):
    """Proxy create_async_client so tests can monkeypatch either module."""
    return http_utils.create_async_client(*args, **kwargs)


class RelayBackend(BaseBackend):
    kind = BackendKind.RELAY
    provider = "Relay server"

    def __init__(self, settings_manager: SettingsManager):
        super().__init__()
        self.settings_manager = settings_manager

    async def process(self, image: str, instruction: str) -> str:
        address = self.settings_manager.current.RelayClientAddress.strip()
        if not address:
            raise BackendConfigurationError("Relay server address is not configured.")
        target_url = address.rstrip("/") + PROCESS_PATH
        self.logger.debug(f"Forwarding image request to relay {target_url}")
        async with create_async_client(timeout=REQUEST_TIMEOUT) as client:
            resp = await http_utils.send_request(
                client, "POST", target_url, provider=self.provider, json={"image": image, "prompt": instruction},
            )
        return resp.text
