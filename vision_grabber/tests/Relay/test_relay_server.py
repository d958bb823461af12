import asyncio
import socket

import httpx
import pytest
import pytest_asyncio

from vision_grabber.app.core.Relay.firewall import FirewallResult
from vision_grabber.app.core.Relay.relay_server import RelayBindError, RelayServer, RelayState

from conftest import FakeBackend, install_local_backend


class RecordingFirewall:
    def __init__(self):
        self.ports = []

    async def ensure_rule(self, port):
        self.ports.append(port)
        return FirewallResult.SKIPPED


@pytest.fixture
def statuses():
    return []


@pytest_asyncio.fixture
async def relay(backend_manager, statuses):
    server = RelayServer(
        backend_manager,
        on_status=statuses.append,
        firewall=RecordingFirewall(),
        host="127.0.0.1",
    )
    yield server
    await server.stop()


@pytest.mark.asyncio
async def test_start_listens_and_answers_liveness(relay, statuses):
    await relay.start(0)
    assert relay.state is RelayState.LISTENING
    assert relay.is_running
    assert statuses == [f"Relay Server: Running on Port {relay.port}"]

    async with httpx.AsyncClient(trust_env=False) as client:
        resp = await client.get(f"http://127.0.0.1:{relay.port}/ping")
    assert resp.status_code == 200
    assert resp.text == "Relay Server is Active"


@pytest.mark.asyncio
async def test_second_start_is_noop(relay, statuses):
    await relay.start(0)
    listener, port = relay.listener, relay.port
    await relay.start(0)
    assert relay.listener is listener
    assert relay.port == port
    assert len(statuses) == 1
    assert len(relay.firewall.ports) == 1


@pytest.mark.asyncio
async def test_stop_without_start_does_not_raise(relay, statuses):
    await relay.stop()
    assert relay.state is RelayState.STOPPED
    assert statuses == ["Relay Server: Stopped"]


@pytest.mark.asyncio
async def test_stop_closes_listener(relay, statuses):
    await relay.start(0)
    port = relay.port
    await relay.stop()
    assert relay.state is RelayState.STOPPED
    assert relay.port is None
    assert statuses[-1] == "Relay Server: Stopped"

    async with httpx.AsyncClient(trust_env=False) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get(f"http://127.0.0.1:{port}/")


@pytest.mark.asyncio
async def test_restart_after_stop(relay):
    await relay.start(0)
    await relay.stop()
    await relay.start(0)
    assert relay.is_running


@pytest.mark.asyncio
@pytest.mark.parametrize("port", ["abc", "", "70000"])
async def test_invalid_port_fails_to_bind(relay, statuses, port):
    with pytest.raises(RelayBindError):
        await relay.start(port)
    assert relay.state is RelayState.STOPPED
    assert statuses == ["Relay Server: Failed to start"]
    assert relay.firewall.ports == [port]


@pytest.mark.asyncio
async def test_port_in_use_fails_to_bind(relay, statuses):
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        with pytest.raises(RelayBindError) as excinfo:
            await relay.start(blocker.getsockname()[1])
    finally:
        blocker.close()
    assert not excinfo.value.permission_denied
    assert relay.state is RelayState.STOPPED


@pytest.mark.asyncio
async def test_permission_denied_suggests_elevation(relay, monkeypatch):
    def _denied(self, address):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(socket.socket, "bind", _denied)
    with pytest.raises(RelayBindError) as excinfo:
        await relay.start(80)
    assert excinfo.value.permission_denied
    assert "elevated privileges" in str(excinfo.value)


@pytest.mark.asyncio
async def test_concurrent_jobs_over_network(relay, backend_manager):
    install_local_backend(backend_manager, FakeBackend(result="ok", delay=0.3))
    await relay.start(0)
    url = f"http://127.0.0.1:{relay.port}/process"
    loop = asyncio.get_running_loop()
    async with httpx.AsyncClient(trust_env=False, timeout=10) as client:
        started = loop.time()
        responses = await asyncio.gather(*(client.post(url, json={"image": "aW1n", "prompt": "hi"}) for _ in range(6)))
        elapsed = loop.time() - started
    assert [resp.text for resp in responses] == ["ok"] * 6
    assert elapsed < 0.3 * 3
