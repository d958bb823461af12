import httpx
import pytest

from vision_grabber.app.core.Backends import http_utils
from vision_grabber.app.core.Backends.backend_exceptions import BackendHTTPError, BackendResponseError
from vision_grabber.app.core.Backends.image_utils import guess_image_mime, strip_data_url, to_data_url


def test_redact_cmd_args_masks_api_key():
    cmd = ["llama-server", "--api-key", "secret", "-m", "model.gguf", "--api-key"]
    assert http_utils.redact_cmd_args(cmd) == ["llama-server", "--api-key", "REDACTED", "-m", "model.gguf", "--api-key"]


@pytest.mark.asyncio
async def test_send_request_does_not_retry_by_default():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="busy")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(BackendHTTPError):
            await http_utils.send_request(client, "POST", "http://svc/x", provider="svc")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_send_request_retries_when_asked():
    responses = [httpx.Response(502), httpx.Response(200, text="ok")]

    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: responses.pop(0))) as client:
        resp = await http_utils.send_request(client, "GET", "http://svc/x", provider="svc", retries=1, backoff=0)
    assert resp.text == "ok"


@pytest.mark.asyncio
async def test_request_json_rejects_non_json():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))) as client:
        with pytest.raises(BackendResponseError):
            await http_utils.request_json(client, "GET", "http://svc/x", provider="svc")


@pytest.mark.asyncio
async def test_wait_for_http_ready_accepts_first_healthy_path(monkeypatch):
    def handler(request):
        if request.url.path == "/health":
            return httpx.Response(503)
        return httpx.Response(200)

    monkeypatch.setattr(
        http_utils, "create_async_client",
        lambda timeout=None: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    assert await http_utils.wait_for_http_ready("http://127.0.0.1:1", timeout_total=1, interval=0.01)


@pytest.mark.asyncio
async def test_wait_for_http_ready_times_out(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    monkeypatch.setattr(
        http_utils, "create_async_client",
        lambda timeout=None: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    assert not await http_utils.wait_for_http_ready("http://127.0.0.1:1", timeout_total=0.05, interval=0.01)


def test_image_helpers():
    assert strip_data_url("data:image/jpeg;base64,/9j/abc") == "/9j/abc"
    assert guess_image_mime("/9j/abc") == "image/jpeg"
    assert guess_image_mime("unknown") == "image/png"
    assert to_data_url("R0lGODlh") == "data:image/gif;base64,R0lGODlh"
