from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, PlainTextResponse

from flowgate.api.error_handling import register_exception_handlers
from flowgate.api.routes import router
from flowgate.api.schemas import HealthResponse
from flowgate.config import __version__
from flowgate.logging import get_logger, set_correlation_id
from flowgate.service.domains import is_allowed
from flowgate.service.embed import embed_script
from flowgate.service.runtime import Runtime, get_runtime
from flowgate.storage.session_cache import SessionCache

logger = get_logger(__name__)

_sweep_task: asyncio.Task | None = None

_WEB_JS_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _log_embed_snippets(runtime: Runtime) -> None:
    base_url = runtime.settings.public_base_url or (
        f"http://localhost:{runtime.settings.port}"
    )
    for tenant in runtime.registry.servable():
        logger.info(
            "embed_snippet",
            identifier=tenant.identifier,
            origins=sorted(tenant.allowed_origins),
            oauth=runtime.oauth_configs.find(tenant.identifier) is not None,
            popup=embed_script(base_url, chatflow_id=tenant.identifier),
            full_page=embed_script(base_url, chatflow_id=tenant.identifier, full_page=True),
        )


async def _run_session_sweep(sessions: SessionCache, interval_seconds: float) -> None:
    """Background loop evicting expired chat sessions."""

    interval = max(interval_seconds, 0.01)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                sessions.sweep()
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("session_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime, start the session sweep, and close upstream connections on exit."""
    global _sweep_task
    runtime = get_runtime()
    _log_embed_snippets(runtime)
    _sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.sessions, runtime.settings.session_sweep_interval_seconds)
    )
    logger.info(
        "gateway_started",
        version=__version__,
        upstream_url=runtime.gateway.upstream_url,
        chatflows=len(runtime.registry.servable()),
    )

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Flowgate", version=__version__, lifespan=lifespan)


# Widgets are embedded on arbitrary customer sites; the per-tenant
# allow-list is enforced by the routes, not by CORS.
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=".*",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def log_request(request: Request, call_next):
    logger.info(
        "request_received",
        method=request.method,
        path=request.url.path,
        origin=request.headers.get("origin") or "unknown",
        user_agent=request.headers.get("user-agent") or "unknown",
    )
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with X-Request-ID (client supplied or generated) for log tracing."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/auth/") or request.url.path.startswith("/debug/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)


def _public_file(name: str) -> Path:
    return Path(get_runtime().settings.public_dir) / name


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc).isoformat())


@app.get("/", response_class=FileResponse)
async def serve_index() -> FileResponse:
    index = _public_file("index.html")
    if not index.exists():
        logger.warning("public_missing_entrypoint", index=str(index))
        raise HTTPException(status_code=404, detail="index.html missing")
    return FileResponse(index)


@app.get("/oauth-callback.html", response_class=FileResponse)
async def serve_oauth_callback() -> FileResponse:
    callback = _public_file("oauth-callback.html")
    if not callback.exists():
        logger.warning("public_missing_oauth_callback", path=str(callback))
        raise HTTPException(status_code=404, detail="oauth-callback.html missing")
    return FileResponse(callback, headers={"Cache-Control": "no-store"})


@app.api_route("/web.js", methods=["GET", "OPTIONS"])
async def serve_widget(request: Request) -> Response:
    origin = request.headers.get("origin")
    runtime = get_runtime()
    if not is_allowed(origin, runtime.registry.all_allowed_origins()):
        logger.warning("widget_access_denied", origin=origin)
        return PlainTextResponse("Access Denied", status_code=403)
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=_WEB_JS_HEADERS)
    bundle = _public_file("web.js")
    if not bundle.exists():
        logger.warning("public_missing_widget", path=str(bundle))
        raise HTTPException(status_code=404, detail="web.js missing")
    return FileResponse(bundle, media_type="application/javascript", headers=_WEB_JS_HEADERS)


app.include_router(router)


def create_app() -> FastAPI:
    return app
