import asyncio
import atexit

import pytest

from vision_grabber.app.core.Backends.backend_exceptions import BackendConnectionError
from vision_grabber.app.core.Backends.base import BackendKind
from vision_grabber.app.core.config import DEFAULT_PROMPT
from vision_grabber.app.core.History.history_manager import HistoryManager
from vision_grabber.app.core.Local_LLM.LlamaCpp_Handler import LlamaServerManager
from vision_grabber.app.core.Relay.firewall import FirewallResult
from vision_grabber.app.core.Relay.relay_server import RELAY_RESULT_LABEL, RelayState
from vision_grabber.app.main import VisionGrabberApp, resolve_prompt

from conftest import FakeBackend


class CloudDouble(FakeBackend):
    kind = BackendKind.CLOUD


class SkippingFirewall:
    async def ensure_rule(self, port):
        return FirewallResult.SKIPPED


@pytest.fixture
def events():
    return {"statuses": [], "results": []}


@pytest.fixture
def app(settings_manager, backend_manager, tmp_path, events):
    return VisionGrabberApp(
        settings_manager=settings_manager,
        history_manager=HistoryManager(tmp_path / "history.json"),
        backend_manager=backend_manager,
        firewall=SkippingFirewall(),
        on_status=events["statuses"].append,
        on_result=lambda *args: events["results"].append(args),
    )


def _use_cloud_double(app, **kwargs) -> CloudDouble:
    double = CloudDouble(**kwargs)
    app.backend_manager.gemini = double
    app.backend_manager._by_kind[BackendKind.CLOUD] = double
    return double


def test_resolve_prompt_order():
    assert resolve_prompt("explicit", "custom") == "explicit"
    assert resolve_prompt("  ", "custom") == "custom"
    assert resolve_prompt(None, "") == DEFAULT_PROMPT


@pytest.mark.asyncio
async def test_process_capture_records_history(app, events):
    double = _use_cloud_double(app, result="E = mc^2")
    app.settings_manager.current.CustomPrompt = "Transcribe"

    result = await app.process_capture("aW1n")

    assert result == "E = mc^2"
    assert double.calls == [("aW1n", "Transcribe")]
    entry = app.history.items[0]
    assert (entry.content, entry.prompt, entry.model_name) == ("E = mc^2", "Transcribe", "Gemini")
    assert events["statuses"][-2:] == ["Thinking...", "Done!"]


@pytest.mark.asyncio
async def test_blank_custom_prompt_falls_back_to_default(app):
    double = _use_cloud_double(app)
    app.settings_manager.current.CustomPrompt = ""
    await app.process_capture("aW1n", instruction="")
    assert double.calls[0][1] == DEFAULT_PROMPT


@pytest.mark.asyncio
async def test_supplied_api_key_is_persisted(app):
    _use_cloud_double(app)
    await app.process_capture("aW1n", api_key=" key-42 ")
    assert app.settings_manager.current.CloudApiKey == "key-42"
    assert app.settings_manager.path.is_file()


@pytest.mark.asyncio
async def test_api_key_not_persisted_for_local_backend(app):
    local = FakeBackend()
    app.backend_manager.llama = local
    app.backend_manager._by_kind[BackendKind.LOCAL] = local

    await app.process_capture("aW1n", selection=0, api_key="key-42")
    assert app.settings_manager.current.CloudApiKey == ""


@pytest.mark.asyncio
async def test_backend_failure_reported_and_raised(app, events):
    _use_cloud_double(app, error=BackendConnectionError("Could not connect"))
    with pytest.raises(BackendConnectionError):
        await app.process_capture("aW1n", "hi")
    assert events["statuses"][-1] == "Error: Could not connect"
    assert app.history.items == []


@pytest.mark.asyncio
async def test_explicit_selection_overrides_active(app):
    local = FakeBackend(result="local text")
    app.backend_manager.llama = local
    app.backend_manager._by_kind[BackendKind.LOCAL] = local

    assert await app.process_capture("aW1n", "hi", selection=0) == "local text"
    assert app.history.items[0].model_name == "Llama"


def test_select_local_starts_engine(app, fake_server_manager):
    chosen = app.select_backend("Local")
    assert chosen.kind is BackendKind.LOCAL
    assert fake_server_manager.background_starts == 1
    assert app.status_text == "Local"


def test_select_other_stops_engine(app, fake_server_manager):
    app.select_backend(2)
    assert fake_server_manager.background_stops == 1
    assert app.status_text == "Networked llama-server"


def test_select_other_keeps_engine_while_relaying(app, fake_server_manager):
    app.relay_server._state = RelayState.LISTENING
    app.select_backend(BackendKind.RELAY)
    assert fake_server_manager.background_stops == 0


def test_status_text_includes_relay_status(app):
    assert app.status_text == "Cloud (Google Gemini)"
    app._relay_status("Relay Server: Running on Port 8082")
    assert app.status_text == "Cloud (Google Gemini) | Relay Server: Running on Port 8082"


def test_relay_result_goes_to_history_and_sink(app, events):
    app._handle_relay_result("text", "hi", RELAY_RESULT_LABEL)
    assert app.history.items[0].model_name == "Relay Server"
    assert events["results"] == [("text", "hi", "Relay Server")]
    assert events["statuses"][-1] == "Received from Relay Client"


@pytest.mark.asyncio
async def test_startup_starts_relay_when_enabled(app, settings_manager, fake_server_manager):
    settings_manager.update(RelayServerEnabled=True, RelayServerPort="0", DefaultBackend="Remote")

    await app.startup()
    try:
        assert app.relay_server.is_running
        assert fake_server_manager.background_starts == 1
        assert app.selected_kind is BackendKind.REMOTE
        assert app.status_text.startswith("Networked llama-server | Relay Server: Running on Port ")
    finally:
        await app.shutdown()

    assert fake_server_manager.stops == 1
    assert app.relay_server.state is RelayState.STOPPED
    assert app.status_text.endswith("| Relay Server: Stopped")


@pytest.mark.asyncio
async def test_startup_survives_bind_failure(app, settings_manager):
    settings_manager.update(RelayServerEnabled=True, RelayServerPort="not-a-port")
    await app.startup()
    assert not app.relay_server.is_running
    assert app.status_text.endswith("| Relay Server: Failed to start")
    await app.shutdown()


@pytest.mark.asyncio
async def test_startup_honours_start_on_startup(app, settings_manager, fake_server_manager):
    settings_manager.update(StartLlamaOnStartup=True)
    await app.startup()
    assert fake_server_manager.background_starts == 1
    assert not app.relay_server.is_running
    await app.shutdown()


@pytest.mark.asyncio
async def test_apply_settings_restarts_relay(app, settings_manager):
    settings_manager.update(RelayServerEnabled=True, RelayServerPort="0")
    await app.startup()
    assert app.relay_server.is_running

    settings_manager.current.RelayServerEnabled = False
    await app.apply_settings()
    assert not app.relay_server.is_running

    settings_manager.current.RelayServerEnabled = True
    await app.apply_settings()
    try:
        assert app.relay_server.is_running
    finally:
        await app.shutdown()


@pytest.mark.asyncio
async def test_shutdown_stops_relay_before_engine(app, monkeypatch):
    order = []

    async def _stop_relay():
        order.append("relay")

    async def _stop_engine():
        order.append("engine")

    monkeypatch.setattr(app.relay_server, "stop", _stop_relay)
    monkeypatch.setattr(app.backend_manager, "stop_all", _stop_engine)

    await app.shutdown()
    assert order == ["relay", "engine"]


@pytest.mark.asyncio
async def test_select_local_schedules_real_engine_start(app, monkeypatch):
    started = []

    async def _start(self):
        started.append(self)
        return True

    monkeypatch.setattr(LlamaServerManager, "start", _start)
    real = LlamaServerManager(app.settings_manager)
    app.backend_manager.server_manager = real
    try:
        app.select_backend("Local")
        await asyncio.gather(*real._background_tasks)
    finally:
        atexit.unregister(real._cleanup_managed_server_sync)
    assert started == [real]
