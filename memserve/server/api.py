# memserve/server/api.py
# FastAPI application serving the in-memory file cache

from __future__ import annotations

import asyncio
import logging
import math
import time
from contextlib import asynccontextmanager
from typing import Awaitable, List, Optional, Sequence, Tuple

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response

from memserve import __version__
from memserve.config import MemserveConfig, get_config
from memserve.errors import ErrorCode, MemserveError
from memserve.server.content import serve_content
from memserve.server.state import ServerState
from memserve.server.tls import CertificateProvider, CertificateReloader, StaticCertificateProvider

logger = logging.getLogger(__name__)

NOT_FOUND_BODY = "404 page not found"
RATE_LIMITED_BODY = "Too many requests, please try again later"


def get_client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    """Caller identity for rate limiting: the peer address without its port."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_app(state: ServerState) -> FastAPI:
    """Build the app around an already constructed ServerState."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not state.loaded:
            state.load()
        await state.start_refresh()
        logger.info(f"[API] Serving {state.cached_files} cached files from {state.root}")
        try:
            yield
        finally:
            logger.info("[API] Shutting down...")
            await state.stop_refresh()

    app = FastAPI(
        title="memserve",
        description="Serves a directory tree from memory",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.server = state

    @app.exception_handler(MemserveError)
    async def memserve_error_handler(request: Request, exc: MemserveError):
        if exc.is_client_visible:
            logger.debug(f"[API] {exc.code.value}: {exc.message}")
            body = exc.message
        else:
            logger.error(f"[API] {request.method} {request.url.path} failed: {exc.to_dict()}")
            body = "Internal Server Error"
        return PlainTextResponse(body, status_code=exc.http_status)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"[API] Unhandled error for {request.method} {request.url.path}")
        return PlainTextResponse("Internal Server Error", status_code=500)

    @app.middleware("http")
    async def log_request(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(f"{request.method} {request.url.path} {response.status_code} {elapsed:.2f}ms")
        return response

    @app.api_route("/{path:path}", methods=["GET", "HEAD"])
    async def handle_request(request: Request, path: str) -> Response:
        if not state.allow(get_client_ip(request, state.trust_forwarded_for)):
            raise MemserveError(
                ErrorCode.RATE_LIMITED,
                RATE_LIMITED_BODY,
                details={"path": path},
            )

        entry = state.lookup(path)
        if entry is None:
            raise MemserveError(ErrorCode.CACHE_MISS, NOT_FOUND_BODY, details={"path": path})
        return serve_content(request, path, entry)

    return app


def create_redirect_app(domain: str) -> FastAPI:
    """Plain-HTTP app that sends every request to the HTTPS origin."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"])
    async def redirect(request: Request, path: str) -> Response:
        target = f"https://{domain}{request.url.path}"
        if request.url.query:
            target = f"{target}?{request.url.query}"
        return RedirectResponse(target, status_code=301)

    return app


def _uvicorn_config(app: FastAPI, host: str, port: int, config: MemserveConfig, **kwargs) -> uvicorn.Config:
    if config.http.request_timeout is not None:
        kwargs.setdefault("timeout_keep_alive", max(1, math.ceil(config.http.request_timeout)))
    return uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        access_log=False,
        server_header=False,
        **kwargs,
    )


async def _serve_all(servers: List[uvicorn.Server], background: Sequence[Awaitable[None]] = ()) -> None:
    tasks = [asyncio.create_task(server.serve()) for server in servers]
    helpers = [asyncio.create_task(coro) for coro in background]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for server in servers:
            server.should_exit = True
        if pending:
            await asyncio.gather(*pending)
    finally:
        for helper in helpers:
            helper.cancel()
        await asyncio.gather(*helpers, return_exceptions=True)
    for task in done:
        task.result()


def _https_server(
    app: FastAPI,
    config: MemserveConfig,
    provider: CertificateProvider,
) -> Tuple[uvicorn.Server, CertificateReloader]:
    """HTTPS listener whose SSLContext can be reloaded while it runs."""
    domain = config.tls.domain
    cert = provider.get_certificate(domain)
    https_config = _uvicorn_config(
        app,
        config.http.host,
        config.tls.https_port,
        config,
        ssl_certfile=str(cert.cert_file),
        ssl_keyfile=str(cert.key_file),
    )
    # Load now so the SSLContext exists before serving; Server.serve skips a loaded config.
    https_config.load()
    reloader = CertificateReloader(provider, domain, https_config.ssl, current=cert)
    return uvicorn.Server(https_config), reloader


def serve(
    state: ServerState,
    config: Optional[MemserveConfig] = None,
    cert_provider: Optional[CertificateProvider] = None,
) -> None:
    """Run the HTTP (or HTTPS + redirect) listeners until shutdown."""
    config = config or get_config()
    app = create_app(state)

    if not config.tls.enabled:
        logger.info(f"Starting HTTP server on {config.http.host}:{config.http.port}")
        server = uvicorn.Server(_uvicorn_config(app, config.http.host, config.http.port, config))
        server.run()
        return

    domain = config.tls.domain
    provider = cert_provider or StaticCertificateProvider(config.tls.cert_file, config.tls.key_file)
    https, reloader = _https_server(app, config, provider)

    logger.info(f"Starting HTTPS server for https://{domain}")
    servers = [https]
    if config.tls.redirect_port:
        logger.info(f"Starting HTTP->HTTPS redirect on :{config.tls.redirect_port}")
        servers.append(uvicorn.Server(_uvicorn_config(
            create_redirect_app(domain),
            config.http.host,
            config.tls.redirect_port,
            config,
            lifespan="off",
        )))
    asyncio.run(_serve_all(servers, background=[reloader.watch(config.tls.cert_check_interval)]))
