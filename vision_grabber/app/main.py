# main.py
# Description: Headless application core wiring settings, backends, relay server and history together.
#
# Imports
import asyncio
from typing import Callable, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from vision_grabber.app.core.Backends.backend_exceptions import BackendFailure
from vision_grabber.app.core.Backends.backend_manager import BackendManager
from vision_grabber.app.core.Backends.base import BackendKind, BackendSelection, BackendSelector
from vision_grabber.app.core.config import DEFAULT_PROMPT, SettingsManager
from vision_grabber.app.core.History.history_manager import HistoryManager
from vision_grabber.app.core.Relay.firewall import FirewallProvisioner
from vision_grabber.app.core.Relay.relay_server import RelayBindError, RelayServer
#
########################################################################################################################
#
# Functions:

def resolve_prompt(instruction: Optional[str], custom_prompt: Optional[str]) -> str:
    """Pick the instruction for a capture: explicit, then configured, then built-in."""
    if instruction and instruction.strip():
        return instruction
    if custom_prompt and custom_prompt.strip():
        return custom_prompt
    return DEFAULT_PROMPT


class VisionGrabberApp:
    """Everything the desktop shell drives, minus the windows.

    Status strings from the engine and the relay server arrive on
    ``on_status``; relay results the user should see arrive on ``on_result``
    as ``(text, prompt, label)``.
    """

    def __init__(
        self,
        settings_manager: Optional[SettingsManager] = None,
        history_manager: Optional[HistoryManager] = None,
        backend_manager: Optional[BackendManager] = None,
        firewall: Optional[FirewallProvisioner] = None,
        on_status: Optional[Callable[[str], None]] = None,
        on_result: Optional[Callable[[str, str, str], None]] = None,
    ):
        self.settings_manager = settings_manager or SettingsManager()
        self.history = history_manager or HistoryManager(self.settings_manager.path.parent / "history.json")
        self.on_status = on_status
        self.on_result = on_result
        self.backend_manager = backend_manager or BackendManager(self.settings_manager, on_status=self._engine_status)
        self.relay_server = RelayServer(
            self.backend_manager,
            on_result=self._handle_relay_result,
            on_status=self._relay_status,
            firewall=firewall,
        )
        self.selected_kind: BackendKind = BackendKind.from_setting(self.settings_manager.current.DefaultBackend)
        self.last_status: str = ""
        self.last_relay_status: str = ""

    # --- Status ---
    @property
    def status_text(self) -> str:
        base = self.selected_kind.display_name
        if self.last_relay_status:
            return f"{base} | {self.last_relay_status}"
        return base

    def _publish(self, status: str) -> None:
        self.last_status = status
        if self.on_status is not None:
            try:
                self.on_status(status)
            except Exception as e:
                logger.warning(f"Status callback raised: {e}")

    def _engine_status(self, status: str) -> None:
        logger.debug(f"Engine status: {status}")
        self._publish(status)

    def _relay_status(self, status: str) -> None:
        self.last_relay_status = status
        self._publish(self.status_text)

    def _handle_relay_result(self, text: str, prompt: str, label: str) -> None:
        self.history.add_entry(text, prompt, label)
        self._publish("Received from Relay Client")
        if self.on_result is not None:
            self.on_result(text, prompt, label)

    # --- Lifecycle ---
    async def startup(self) -> None:
        """Load persisted state and bring up the services the settings ask for."""
        self.settings_manager.load()
        self.history.load()
        self.selected_kind = BackendKind.from_setting(self.settings_manager.current.DefaultBackend)
        self.backend_manager.start_default_services()
        await self._start_relay_if_enabled()
        logger.info(f"VisionGrabber ready: {self.status_text}")

    async def _start_relay_if_enabled(self) -> None:
        settings = self.settings_manager.current
        if not settings.RelayServerEnabled:
            return
        self.backend_manager.start_relay_server_backend()
        try:
            await self.relay_server.start(settings.RelayServerPort)
        except RelayBindError as e:
            # Already reported through the relay status sink
            logger.error(f"Relay server unavailable: {e}")

    async def apply_settings(self) -> None:
        """Re-read relay settings after the user saved the settings dialog."""
        await self.relay_server.stop()
        await self._start_relay_if_enabled()

    async def shutdown(self) -> None:
        # Relay first so in-flight relay jobs still reach a live engine
        await self.relay_server.stop()
        await self.backend_manager.stop_all()
        logger.info("VisionGrabber shut down.")

    # --- Backend selection ---
    def select_backend(self, selection: BackendSelector) -> BackendSelection:
        """Switch the active backend and start or stop the local engine to match.

        Must be called on the running event loop: the engine start or stop is
        scheduled as a background task and not awaited.
        """
        chosen = self.backend_manager.active_backend(selection)
        self.selected_kind = chosen.kind
        if chosen.kind is BackendKind.LOCAL:
            self._publish("Starting Local Model (Please wait)...")
            self.backend_manager.server_manager.start_in_background()
        elif self.relay_server.is_running:
            logger.debug("Relay server is listening; keeping the local engine running.")
        else:
            self.backend_manager.server_manager.stop_in_background()
        self._publish(self.status_text)
        return chosen

    # --- Processing ---
    async def process_capture(
        self,
        image: str,
        instruction: Optional[str] = None,
        selection: BackendSelector = None,
        api_key: Optional[str] = None,
    ) -> str:
        """Run one captured image through a backend and record the result.

        ``selection`` defaults to the backend chosen with ``select_backend``.
        Raises ``BackendFailure`` after reporting it as an ``Error:`` status.
        """
        chosen = self.backend_manager.active_backend(self.selected_kind if selection is None else selection)
        prompt = resolve_prompt(instruction, self.settings_manager.current.CustomPrompt)

        if chosen.kind is BackendKind.CLOUD and api_key and api_key.strip():
            self.settings_manager.update(CloudApiKey=api_key.strip())

        self._publish("Thinking...")
        try:
            result = await chosen.backend.process(image, prompt)
        except BackendFailure as e:
            logger.error(f"{chosen.label} backend failed: {e}")
            self._publish(f"Error: {e}")
            raise
        self.history.add_entry(result, prompt, chosen.label)
        self._publish("Done!")
        return result


async def run_relay_forever(app: VisionGrabberApp, port: Optional[str] = None) -> None:
    """Serve relay jobs until cancelled. Used by the command line front end."""
    await app.startup()
    if port is not None and str(port) != app.settings_manager.current.RelayServerPort:
        app.settings_manager.current.RelayServerPort = str(port)
        await app.relay_server.stop()
    if not app.relay_server.is_running:
        app.backend_manager.start_relay_server_backend()
        await app.relay_server.start(app.settings_manager.current.RelayServerPort)
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await app.shutdown()

#
# End of main.py
########################################################################################################################
