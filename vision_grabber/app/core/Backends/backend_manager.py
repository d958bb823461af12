# backend_manager.py
# Description: Owns one instance of each backend and answers which one to use.
#
from __future__ import annotations

from typing import Callable, Dict, Optional

from loguru import logger

from vision_grabber.app.core.config import SettingsManager
from vision_grabber.app.core.Local_LLM.LlamaCpp_Handler import LlamaServerManager
from .base import BackendKind, BackendSelection, BackendSelector, BaseBackend
from .gemini_backend import GeminiBackend
from .llama_backend import LlamaServerBackend, RemoteLlamaBackend
from .relay_backend import RelayBackend


class BackendManager:
    """Registry of the four backends plus the llama-server lifecycle manager.

    The relay server is always served by the local backend so peers can never
    reach the cloud credential or chain through another relay.
    """

    def __init__(
        self,
        settings_manager: SettingsManager,
        server_manager: Optional[LlamaServerManager] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.settings_manager = settings_manager
        self.server_manager = server_manager or LlamaServerManager(settings_manager, on_status=on_status)
        self.llama = LlamaServerBackend(self.server_manager)
        self.gemini = GeminiBackend(settings_manager)
        self.remote_llama = RemoteLlamaBackend(settings_manager)
        self.relay = RelayBackend(settings_manager)
        self._by_kind: Dict[BackendKind, BaseBackend] = {
            BackendKind.LOCAL: self.llama,
            BackendKind.CLOUD: self.gemini,
            BackendKind.REMOTE: self.remote_llama,
            BackendKind.RELAY: self.relay,
        }

    def get(self, kind: BackendKind) -> BackendSelection:
        return BackendSelection.of(self._by_kind[kind])

    def resolve_kind(self, selection: BackendSelector = None) -> BackendKind:
        if isinstance(selection, BackendKind):
            return selection
        # bool is an int subclass but never a UI index
        if isinstance(selection, int) and not isinstance(selection, bool):
            return BackendKind.from_index(selection)
        if isinstance(selection, str):
            return BackendKind.from_setting(selection)
        return BackendKind.from_setting(self.settings_manager.current.DefaultBackend)

    def active_backend(self, selection: BackendSelector = None) -> BackendSelection:
        """Resolve an explicit selection, or the configured default when None.

        Missing or unrecognized values resolve to the cloud backend.
        """
        return self.get(self.resolve_kind(selection))

    def backend_by_index(self, index: int) -> BackendSelection:
        return self.get(BackendKind.from_index(index))

    def relay_backend(self) -> BackendSelection:
        return self.get(BackendKind.LOCAL)

    def start_relay_server_backend(self) -> None:
        """Start llama-server in the background for relay processing."""
        self.server_manager.start_in_background()

    def start_default_services(self) -> None:
        if self.settings_manager.current.StartLlamaOnStartup:
            logger.info("Starting llama-server on startup.")
            self.server_manager.start_in_background()

    async def stop_all(self) -> None:
        await self.server_manager.stop()

#
# End of backend_manager.py
