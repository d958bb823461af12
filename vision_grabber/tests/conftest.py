"""
Shared fixtures for the VisionGrabber test suite.

Every test gets its own VisionGrabber home directory so settings, history and
the secret key never touch the real user profile.
"""

import asyncio
from typing import List, Optional, Tuple

import pytest

from vision_grabber.app.core.Backends.backend_manager import BackendManager
from vision_grabber.app.core.Backends.base import BackendKind, BaseBackend
from vision_grabber.app.core.config import SettingsManager


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("VISIONGRABBER_HOME", str(home))
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    return home


@pytest.fixture
def settings_manager(tmp_path) -> SettingsManager:
    return SettingsManager(tmp_path / "settings" / "settings.json")


class FakeServerManager:
    """Stands in for LlamaServerManager where no process should be launched."""

    def __init__(self, running: bool = False):
        self.is_running = running
        self.base_url = "http://127.0.0.1:8081"
        self.background_starts = 0
        self.background_stops = 0
        self.stops = 0

    def start_in_background(self):
        self.background_starts += 1

    def stop_in_background(self):
        self.background_stops += 1

    async def start(self) -> bool:
        self.is_running = True
        return True

    async def stop(self) -> None:
        self.stops += 1
        self.is_running = False


class FakeBackend(BaseBackend):
    """Local backend double that echoes a fixed result after an optional delay."""

    kind = BackendKind.LOCAL

    def __init__(self, result: str = "fake output", delay: float = 0.0, error: Optional[Exception] = None):
        super().__init__()
        self.result = result
        self.delay = delay
        self.error = error
        self.calls: List[Tuple[str, str]] = []

    async def process(self, image: str, instruction: str) -> str:
        self.calls.append((image, instruction))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def install_local_backend(manager: BackendManager, backend: BaseBackend) -> None:
    manager.llama = backend
    manager._by_kind[BackendKind.LOCAL] = backend


@pytest.fixture
def fake_server_manager() -> FakeServerManager:
    return FakeServerManager()


@pytest.fixture
def backend_manager(settings_manager, fake_server_manager) -> BackendManager:
    return BackendManager(settings_manager, server_manager=fake_server_manager)
