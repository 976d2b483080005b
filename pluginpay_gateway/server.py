"""
HTTP surface of the gateway.

Only one operation is exposed, ``POST /api/v1/plugins/{pluginId}/call``. The
pipeline itself is synchronous and runs on the server's thread pool.
"""
import json
import logging
import re
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from . import metrics
from .gateway import PluginGateway
from .version import __version__

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type,X-User-Address,X-Signature,X-Timestamp",
    "Access-Control-Allow-Methods": "GET,POST,OPTIONS",
}

_PLUGIN_ID = re.compile(r"^[0-9]+$")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def create_app(gateway: PluginGateway) -> FastAPI:
    """
    Create the FastAPI application serving a gateway.

    Args:
        gateway: Assembled gateway; closed when the application shuts down

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down gateway")
        gateway.close()

    app = FastAPI(title="PluginPay Gateway", version=__version__, lifespan=lifespan)
    app.state.gateway = gateway

    @app.middleware("http")
    async def _cors_and_request_id(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        for name, value in CORS_HEADERS.items():
            response.headers[name] = value
        response.headers["X-Request-Id"] = request_id
        return response

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.get("/metrics")
    async def prometheus_metrics():
        payload, content_type = metrics.render_latest()
        return Response(content=payload, media_type=content_type)

    @app.post("/api/v1/plugins/{plugin_id}/call")
    async def call_plugin(plugin_id: str, request: Request):
        if not _PLUGIN_ID.match(plugin_id):
            return _error(400, "Invalid endpoint")

        raw = await request.body()
        try:
            body = json.loads(raw) if raw.strip() else {}
        except ValueError:
            return _error(400, "Invalid JSON body")

        result = await run_in_threadpool(
            gateway.handle,
            int(plugin_id),
            dict(request.headers),
            body,
            request.state.request_id,
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    @app.options("/{path:path}")
    async def preflight(path: str):
        return Response(status_code=200)

    @app.post("/{path:path}")
    async def unknown_endpoint(path: str):
        return _error(400, "Invalid endpoint")

    return app
