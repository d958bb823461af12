"""HTTP plumbing shared by the backends and the engine launcher.

Backends never see raw httpx errors: ``send_request`` and ``request_json``
translate transport failures and error statuses into ``BackendFailure``
types. ``wait_for_http_ready`` probes a freshly launched llama-server and
``redact_cmd_args`` keeps secrets out of logged command lines.
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, List, Optional, Tuple

import httpx

from .backend_exceptions import (
    BackendAuthenticationError,
    BackendConnectionError,
    BackendHTTPError,
    BackendResponseError,
)


DEFAULT_TIMEOUT: float = 120.0
DEFAULT_RETRIES: int = 0
DEFAULT_BACKOFF: float = 0.75
READY_PATHS: Tuple[str, ...] = ("/health", "/v1/models")
_MAX_ERROR_BODY = 500


def redact_cmd_args(args: Iterable[str], sensitive_flags: Tuple[str, ...] = ("--api-key",)) -> List[str]:
    """Return ``args`` with the value after each sensitive flag replaced by ``REDACTED``."""
    tokens = list(args)
    return [
        "REDACTED" if index > 0 and tokens[index - 1] in sensitive_flags else token
        for index, token in enumerate(tokens)
    ]


def create_async_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    # trust_env=False keeps loopback engine traffic away from system proxies
    return httpx.AsyncClient(timeout=timeout or DEFAULT_TIMEOUT, trust_env=False)


def _error_excerpt(resp: httpx.Response) -> str:
    try:
        text = resp.text.strip()
    except Exception:
        return ""
    return text[:_MAX_ERROR_BODY]


def raise_for_backend_status(resp: httpx.Response, provider: str) -> None:
    """Translate a non-2xx response into the matching BackendFailure."""
    if resp.is_success:
        return
    excerpt = _error_excerpt(resp)
    message = f"{provider} returned HTTP {resp.status_code}"
    if excerpt:
        message = f"{message}: {excerpt}"
    if resp.status_code in (401, 403):
        raise BackendAuthenticationError(message, status_code=resp.status_code)
    raise BackendHTTPError(message, status_code=resp.status_code)


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    json: Optional[dict] = None,
    headers: Optional[dict] = None,
    retries: int = DEFAULT_RETRIES,
    backoff: float = DEFAULT_BACKOFF,
) -> httpx.Response:
    """Perform an HTTP request and return the successful response.

    Retries on network errors and 5xx status codes only when ``retries`` is
    positive; backends call this with the default of zero.
    """
    attempt = 0
    while True:
        try:
            resp = await client.request(method.upper(), url, json=json, headers=headers)
        except httpx.RequestError as e:
            if attempt < retries:
                attempt += 1
                await asyncio.sleep(backoff * attempt)
                continue
            raise BackendConnectionError(f"Could not connect to {provider} at {url}: {e}") from e
        if 500 <= resp.status_code < 600 and attempt < retries:
            attempt += 1
            await asyncio.sleep(backoff * attempt)
            continue
        raise_for_backend_status(resp, provider)
        return resp


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    json: Optional[dict] = None,
    headers: Optional[dict] = None,
    retries: int = DEFAULT_RETRIES,
    backoff: float = DEFAULT_BACKOFF,
) -> Any:
    """Like ``send_request`` but returns the parsed JSON body."""
    resp = await send_request(
        client, method, url, provider=provider, json=json, headers=headers, retries=retries, backoff=backoff
    )
    try:
        return resp.json()
    except ValueError as e:
        raise BackendResponseError(f"{provider} returned a response that is not JSON") from e


async def _answers(client: httpx.AsyncClient, url: str) -> bool:
    try:
        resp = await client.get(url)
    except httpx.RequestError:
        return False
    return resp.status_code < 500


async def wait_for_http_ready(
    base_url: str,
    *,
    paths: Tuple[str, ...] = READY_PATHS,
    timeout_total: float = 60.0,
    interval: float = 0.5,
) -> bool:
    """Probe ``paths`` under ``base_url`` until any answers below 500.

    A 404 counts as ready: the server is up, it just lacks that route.
    Returns False once ``timeout_total`` seconds pass without an answer.
    """
    root = base_url.rstrip("/")
    urls = [f"{root}/{path.lstrip('/')}" for path in paths]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_total
    async with create_async_client(timeout=5.0) as client:
        while loop.time() < deadline:
            for url in urls:
                if await _answers(client, url):
                    return True
            await asyncio.sleep(interval)
    return False
