"""FastAPI bridge: native HTTP requests in, resident-application dispatch, responses out."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List
from urllib.parse import parse_qsl

from fastapi import FastAPI
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request as HttpRequest
from starlette.responses import Response as HttpResponse

from . import __version__
from .config import WorkerConfig
from .container import load_application
from .errors import ApplicationLoadError
from .messages import Request
from .routes import worker_router
from .servers import BaseServer, create_server


logger = logging.getLogger(__name__)

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
_FORM_TYPE = "application/x-www-form-urlencoded"


def _multi_dict(pairs) -> Dict[str, Any]:
    """Collapse repeated keys into lists (single values stay scalar)."""
    out: Dict[str, Any] = {}
    for k, v in pairs:
        if k in out:
            prev = out[k]
            out[k] = prev + [v] if isinstance(prev, list) else [prev, v]
        else:
            out[k] = v
    return out


async def to_worker_request(http: HttpRequest) -> Request:
    body = await http.body()
    form: Dict[str, Any] = {}
    content_type = str(http.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
    if content_type == _FORM_TYPE and body:
        form = _multi_dict(parse_qsl(body.decode("latin-1"), keep_blank_values=True))

    query_string = http.url.query or ""
    uri = http.url.path + (f"?{query_string}" if query_string else "")
    client = http.client
    return Request(
        method=http.method,
        uri=uri,
        path=http.url.path,
        query_string=query_string,
        headers={k: v for k, v in http.headers.items()},
        query=_multi_dict(http.query_params.multi_items()),
        form=form,
        cookies=dict(http.cookies),
        body=body,
        remote_addr=client.host if client else None,
        remote_port=client.port if client else None,
        server={
            "server_protocol": "HTTP/" + str(http.scope.get("http_version") or "1.1"),
            "server_name": http.url.hostname or "",
            "server_port": http.url.port,
            "url_scheme": http.url.scheme,
        },
    )


def _dispatch_lock(app: FastAPI) -> asyncio.Lock:
    lock = getattr(app.state, "dispatch_lock", None)
    if lock is None:
        lock = asyncio.Lock()
        app.state.dispatch_lock = lock
    return lock


def create_app(server: BaseServer) -> FastAPI:
    """HTTP application serving `server` (control routes first, then a catch-all dispatch)."""

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        app.state.dispatch_lock = asyncio.Lock()
        await run_in_threadpool(server.boot_worker)
        yield

    app = FastAPI(
        title="warmworker",
        description="Resident application worker",
        version=__version__,
        lifespan=_lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.warmworker = server
    app.include_router(worker_router)

    async def _recycle() -> None:
        if server.serialized:
            async with _dispatch_lock(app):
                await run_in_threadpool(server.perform_pending_recycle)
        else:
            await run_in_threadpool(server.perform_pending_recycle)

    async def dispatch(request: HttpRequest) -> HttpResponse:
        worker_request = await to_worker_request(request)
        if server.serialized:
            async with _dispatch_lock(app):
                result = await run_in_threadpool(server.handle_request, worker_request)
        else:
            result = await run_in_threadpool(server.handle_request, worker_request)

        background = BackgroundTask(_recycle) if server.recycle_pending else None
        return HttpResponse(
            content=result.body,
            status_code=int(result.status),
            headers=dict(result.headers or {}),
            background=background,
        )

    app.add_api_route("/{path:path}", dispatch, methods=_METHODS, include_in_schema=False)
    return app


def create_worker_app() -> FastAPI:
    """uvicorn factory used inside worker processes; everything comes from WARMWORKER_* env."""
    config = WorkerConfig.from_env()
    if not config.app:
        raise ApplicationLoadError("WARMWORKER_APP is not set; workers cannot load the application.")
    server = create_server(load_application(config.app), config)
    server.attach_process()
    logger.info("warmworker %s worker ready (app=%s)", server.name, config.app)
    return create_app(server)


def build_app(target: str, config: WorkerConfig | None = None) -> FastAPI:
    """Convenience for embedding: load `module:attr` and wrap it for the configured server type."""
    cfg = config or WorkerConfig()
    return create_app(create_server(load_application(target), cfg))


__all__: List[str] = ["build_app", "create_app", "create_worker_app", "to_worker_request"]
