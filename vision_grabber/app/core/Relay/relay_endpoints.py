"""HTTP routes of the relay server.

GET on any path is a liveness probe; POST /process runs one job on the local
engine; everything else is 404.
"""

from __future__ import annotations

import json

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from loguru import logger

from vision_grabber.app.core.Logging.log_context import relay_request_context


LIVENESS_BODY = "Relay Server is Active"

router = APIRouter()


def get_relay_server(request: Request):
    return request.app.state.relay_server


def _peer_address(request: Request) -> str:
    if request.client is None:
        return "unknown"
    return f"{request.client.host}:{request.client.port}"


@router.post("/process")
async def process_image(request: Request, relay=Depends(get_relay_server)):
    peer = _peer_address(request)
    with relay_request_context(peer) as log:
        try:
            body = await request.body()
            if not body.strip():
                return Response(status_code=400)
            try:
                data = json.loads(body)
            except ValueError:
                log.debug("Rejected relay request with invalid JSON body")
                return Response(status_code=400)
            if not isinstance(data, dict) or data.get("image") is None:
                return Response(status_code=400)
            image = data["image"]
            prompt = data.get("prompt") or ""
            if not isinstance(image, str) or not isinstance(prompt, str):
                return Response(status_code=400)

            result = await relay.process_job(image, prompt, peer)
            return PlainTextResponse(result)
        except Exception as e:
            log.error(f"Relay request failed: {e}")
            return PlainTextResponse(f"Server Error: {e}", status_code=500)


@router.get("/{path:path}")
async def liveness(path: str):
    return PlainTextResponse(LIVENESS_BODY)


@router.api_route("/{path:path}", methods=["POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
async def not_found(path: str):
    return Response(status_code=404)


def create_relay_app(relay_server) -> FastAPI:
    """Build the ASGI app bound to ``relay_server``."""
    app = FastAPI(
        title="VisionGrabber Relay Server",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.relay_server = relay_server
    app.include_router(router)
    logger.debug("Relay app created")
    return app
