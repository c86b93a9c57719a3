from __future__ import annotations

import hmac
import json
from typing import Any, Dict, Optional, Type

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from flowgate.api.schemas import AuthConfigResponse, SessionDump, SessionView
from flowgate.logging import bind_tenant, get_logger
from flowgate.service.chatbot_config import resolve_chatbot_config
from flowgate.service.domains import ensure_origin_allowed
from flowgate.service.embed import embed_module
from flowgate.service.errors import (
    BadRequestError,
    PayloadTooLargeError,
    TenantNotFoundError,
    UnauthorizedDevKeyError,
    UploadTooLargeError,
)
from flowgate.service.identity import UserContext, chat_id_from
from flowgate.service.multipart import is_multipart
from flowgate.service.oauth_config import build_auth_payload
from flowgate.service.proxy import wants_stream
from flowgate.service.runtime import Runtime, get_runtime
from flowgate.storage.models import ProxyRequestContext, TenantEntry

logger = get_logger(__name__)

router = APIRouter()

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
_PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


def runtime_dependency() -> Runtime:
    return get_runtime()


def _public_host(request: Request, runtime: Runtime) -> str:
    if runtime.settings.public_base_url:
        return runtime.settings.public_base_url.rstrip("/")
    return str(request.base_url).rstrip("/")


def _is_json(request: Request) -> bool:
    return "json" in request.headers.get("content-type", "").lower()


def _check_key(expected: Optional[str], supplied: Optional[str]) -> None:
    if not expected:
        return
    if not supplied or not hmac.compare_digest(expected.encode(), supplied.encode()):
        raise UnauthorizedDevKeyError("Invalid API key")


async def read_limited_body(
    request: Request,
    limit: int,
    error_cls: Type[PayloadTooLargeError] = PayloadTooLargeError,
) -> bytes:
    """Read and cache the raw request body, refusing anything over ``limit`` bytes."""
    cached = getattr(request.state, "raw_body", None)
    if cached is not None:
        if len(cached) > limit:
            raise error_cls(detail={"limit_bytes": limit})
        return cached
    if getattr(request.state, "body_overflow", False):
        raise error_cls(detail={"limit_bytes": limit})

    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        request.state.body_overflow = True
        raise error_cls(detail={"limit_bytes": limit, "declared_bytes": int(declared)})

    buffer = bytearray()
    async for chunk in request.stream():
        buffer.extend(chunk)
        if len(buffer) > limit:
            request.state.body_overflow = True
            raise error_cls(detail={"limit_bytes": limit})
    body = bytes(buffer)
    request.state.raw_body = body
    return body


async def resolve_user_context(
    request: Request, runtime: Runtime = Depends(runtime_dependency)
) -> Optional[UserContext]:
    """Attach the caller's identity to ``request.state.user``; never rejects."""
    body: Optional[bytes] = None
    if request.method.upper() in _BODY_METHODS and _is_json(request):
        try:
            body = await read_limited_body(request, runtime.settings.json_body_limit_bytes)
        except PayloadTooLargeError:
            # The route raises it again from the overflow marker.
            body = None

    context: Optional[UserContext] = None
    try:
        context = await runtime.resolver.resolve(
            path=request.url.path,
            method=request.method,
            authorization=request.headers.get("authorization"),
            chat_id=chat_id_from(body, request.query_params.get("chatId")),
        )
    except Exception as exc:
        logger.error(
            "user_context_failed",
            path=request.url.path,
            error_type=type(exc).__name__,
            error=str(exc),
        )
    request.state.user = context.user if context else None
    request.state.user_context = context
    return context


def _guarded_tenant(runtime: Runtime, identifier: str, origin: Optional[str]) -> TenantEntry:
    tenant = runtime.registry.lookup(identifier)
    bind_tenant(tenant.identifier)
    ensure_origin_allowed(origin, tenant)
    return tenant


async def _forward_upload(
    request: Request, runtime: Runtime, tenant: TenantEntry, path: str
) -> Response:
    body = await read_limited_body(
        request, runtime.settings.upload_limit_bytes, UploadTooLargeError
    )
    if not body:
        raise BadRequestError("No files uploaded")
    return await runtime.dispatcher.forward_multipart(
        "POST",
        path,
        body=body,
        query=request.url.query,
        headers=request.headers,
        tenant_id=tenant.identifier,
    )


@router.get("/api/auth/config/{identifier}", response_model=AuthConfigResponse)
async def auth_config(
    identifier: str,
    x_oauth_api_key: Optional[str] = Header(None, alias="x-oauth-api-key"),
    runtime: Runtime = Depends(runtime_dependency),
):
    _check_key(runtime.dev_api_key, x_oauth_api_key)
    runtime.registry.lookup(identifier)
    config = runtime.oauth_configs.lookup(identifier)
    logger.info("auth_config_served", identifier=config.identifier, mode=config.mode.value)
    return build_auth_payload(config)


@router.get("/api/v1/public-chatbotConfig/{identifier}")
async def public_chatbot_config(
    identifier: str,
    request: Request,
    runtime: Runtime = Depends(runtime_dependency),
    _user: Optional[UserContext] = Depends(resolve_user_context),
) -> Dict[str, Any]:
    tenant = _guarded_tenant(runtime, identifier, request.headers.get("origin"))
    return await resolve_chatbot_config(
        runtime.dispatcher,
        runtime.merger,
        tenant,
        runtime.oauth_configs.find(tenant.identifier),
        host=_public_host(request, runtime),
        timeout=runtime.settings.config_fetch_timeout_seconds,
        debug=tenant.debug_override,
    )


@router.post("/api/v1/attachments/{identifier}/{chat_id}")
async def upload_attachment(
    identifier: str,
    chat_id: str,
    request: Request,
    runtime: Runtime = Depends(runtime_dependency),
    _user: Optional[UserContext] = Depends(resolve_user_context),
) -> Response:
    tenant = _guarded_tenant(runtime, identifier, request.headers.get("origin"))
    return await _forward_upload(
        request, runtime, tenant, f"/api/v1/attachments/{tenant.chatflow_id}/{chat_id}"
    )


@router.post("/api/v1/openai-assistants-file/{identifier}")
async def upload_assistants_file(
    identifier: str,
    request: Request,
    runtime: Runtime = Depends(runtime_dependency),
    _user: Optional[UserContext] = Depends(resolve_user_context),
) -> Response:
    tenant = _guarded_tenant(runtime, identifier, request.headers.get("origin"))
    return await _forward_upload(
        request, runtime, tenant, f"/api/v1/openai-assistants-file/{tenant.chatflow_id}"
    )


@router.get("/api/v1/get-upload-file")
async def get_upload_file(
    request: Request,
    runtime: Runtime = Depends(runtime_dependency),
    _user: Optional[UserContext] = Depends(resolve_user_context),
) -> Response:
    query = request.query_params
    requested = query.get("chatflowId")
    if not requested:
        raise BadRequestError("chatflowId is required")
    tenant = runtime.registry.find(requested)
    if tenant is None or tenant.unreachable:
        tenant = runtime.registry.find_by_chatflow_id(requested)
    if tenant is None:
        raise TenantNotFoundError(requested)
    bind_tenant(tenant.identifier)
    ensure_origin_allowed(request.headers.get("origin"), tenant)

    params = {"chatflowId": tenant.chatflow_id}
    for key in ("chatId", "fileName"):
        if query.get(key) is not None:
            params[key] = query[key]
    return await runtime.dispatcher.forward_streamed(
        "GET",
        "/api/v1/get-upload-file",
        headers=request.headers,
        tenant_id=tenant.identifier,
        params=params,
    )


@router.get("/api/v1/chatflows/{identifier}/embed")
async def embed_snippet(
    identifier: str,
    request: Request,
    runtime: Runtime = Depends(runtime_dependency),
) -> Response:
    tenant = _guarded_tenant(runtime, identifier, request.headers.get("origin"))
    chatflow_config = dict(request.query_params) or None
    script = embed_module(_public_host(request, runtime), tenant.identifier, chatflow_config)
    return Response(
        content=script,
        media_type="application/javascript",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/debug/sessions/{identifier}", response_model=SessionDump)
async def debug_sessions(
    identifier: str,
    x_dev_api_key: Optional[str] = Header(None, alias="x-dev-api-key"),
    runtime: Runtime = Depends(runtime_dependency),
):
    tenant = runtime.registry.find(identifier)
    if tenant is None or not runtime.debug_enabled(tenant):
        # Hidden unless debugging is on for this tenant.
        raise HTTPException(status_code=404, detail="Not Found")
    _check_key(runtime.dev_api_key, x_dev_api_key)
    sessions = runtime.sessions.list_for_tenant(tenant.identifier)
    return SessionDump(
        identifier=tenant.identifier,
        count=len(sessions),
        sessions=[SessionView.model_validate(session.to_dict()) for session in sessions],
    )


@router.api_route("/api/v1/{rest:path}", methods=_PROXY_METHODS)
async def proxy_api(
    rest: str,
    request: Request,
    runtime: Runtime = Depends(runtime_dependency),
    user_context: Optional[UserContext] = Depends(resolve_user_context),
) -> Response:
    """Generic passthrough for every other upstream API path."""
    method = request.method.upper()
    result = runtime.rewriter.rewrite(request.url.path)
    if result.tenant is None:
        # Never relay with the upstream credential on behalf of an unknown tenant.
        logger.warning(
            "proxy_unresolved_tenant", path=request.url.path, identifier=result.identifier
        )
        if result.identifier is None:
            raise BadRequestError("Chatflow identifier is required")
        raise TenantNotFoundError(result.identifier)
    bind_tenant(result.tenant.identifier)
    ensure_origin_allowed(request.headers.get("origin"), result.tenant)

    context = ProxyRequestContext(
        original_path=request.url.path,
        tenant=result.tenant,
        rewritten_path=result.path,
        user=user_context.user if user_context else None,
    )
    tenant_id = result.tenant.identifier
    content_type = request.headers.get("content-type")

    if method in _BODY_METHODS and is_multipart(content_type):
        body = await read_limited_body(
            request, runtime.settings.upload_limit_bytes, UploadTooLargeError
        )
        return await runtime.dispatcher.forward_multipart(
            method,
            context.target_path,
            body=body,
            query=request.url.query,
            headers=request.headers,
            tenant_id=tenant_id,
        )

    body: Optional[bytes] = None
    parsed: Any = None
    if method in _BODY_METHODS:
        body = await read_limited_body(request, runtime.settings.json_body_limit_bytes)
        if body and _is_json(request):
            try:
                parsed = json.loads(body)
            except ValueError:
                parsed = None
    context.streaming = wants_stream(context.target_path, parsed)
    logger.info(
        "proxy_dispatch",
        path=context.original_path,
        target=context.target_path,
        identifier=tenant_id,
        streaming=context.streaming,
        subject=context.user.subject if context.user else None,
    )
    forward = (
        runtime.dispatcher.forward_streamed
        if context.streaming
        else runtime.dispatcher.forward_buffered
    )
    return await forward(
        method,
        context.target_path,
        query=request.url.query,
        headers=request.headers,
        body=body,
        tenant_id=tenant_id,
    )
