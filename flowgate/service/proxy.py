from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Sequence

import httpx
from fastapi.responses import Response, StreamingResponse

from flowgate.logging import get_logger
from flowgate.service.errors import UpstreamError
from flowgate.service.limiter import TenantLimiter
from flowgate.service.multipart import (
    DEFAULT_STRATEGIES,
    BoundaryRecovery,
    resolve_multipart_content_type,
)

logger = get_logger(__name__)

# Never forwarded upstream; the outbound client recomputes framing headers and
# the gateway substitutes its own credential.
_STRIPPED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "content-length",
        "connection",
        "keep-alive",
        "transfer-encoding",
        "te",
        "upgrade",
        "proxy-authorization",
        "proxy-connection",
        "authorization",
        "x-dev-api-key",
        "x-oauth-api-key",
    }
)
_STRIPPED_RESPONSE_HEADERS = frozenset(
    {"connection", "keep-alive", "transfer-encoding", "te", "upgrade", "proxy-connection"}
)
# Buffered responses are re-framed after httpx decodes the body.
_STRIPPED_BUFFERED_RESPONSE_HEADERS = _STRIPPED_RESPONSE_HEADERS | {
    "content-length",
    "content-encoding",
}

STREAM_PATH_HINTS: Sequence[str] = ("download", "stream")


def wants_stream(path: str, body: Optional[Mapping[str, Any]] = None) -> bool:
    """Streamed passthrough for explicit ``streaming`` bodies and stream/download paths.

    Path hints must match a whole segment; ``/upstream-x`` is not a stream.
    """
    if isinstance(body, Mapping) and body.get("streaming") is True:
        return True
    segments = path.partition("?")[0].lower().split("/")
    return any(hint in segments for hint in STREAM_PATH_HINTS)


def decode_error_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            pass
    try:
        return response.text
    except UnicodeDecodeError:
        return response.reason_phrase


class ProxyDispatcher:
    """Outbound calls to the upstream chat service.

    Three modes: buffered (JSON and other small bodies), raw multipart
    passthrough, and streamed passthrough including SSE.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstream_url: str,
        api_key: str,
        *,
        limiter: Optional[TenantLimiter] = None,
        proxy_timeout: float = 30.0,
        upload_timeout: float = 300.0,
        boundary_strategies: Sequence[BoundaryRecovery] = DEFAULT_STRATEGIES,
    ) -> None:
        self.client = client
        self.upstream_url = upstream_url.rstrip("/")
        self.api_key = api_key
        self.limiter = limiter or TenantLimiter()
        self.proxy_timeout = proxy_timeout
        self.upload_timeout = upload_timeout
        self.boundary_strategies = tuple(boundary_strategies)

    def build_url(self, path: str, query: str = "") -> str:
        if not path.startswith("/"):
            path = "/" + path
        url = f"{self.upstream_url}{path}"
        return f"{url}?{query}" if query else url

    def credential_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def upstream_headers(
        self,
        inbound: Optional[Mapping[str, str]] = None,
        *,
        content_type: Optional[str] = None,
    ) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for key, value in (inbound or {}).items():
            if key.lower() in _STRIPPED_REQUEST_HEADERS:
                continue
            headers[key.lower()] = value
        if content_type is not None:
            headers["content-type"] = content_type
        headers.update(self.credential_headers())
        return headers

    def _slot(self, tenant_id: Optional[str]):
        if tenant_id:
            return self.limiter.slot(tenant_id)
        return contextlib.nullcontext()

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        body: Optional[bytes],
        timeout: float,
    ) -> httpx.Response:
        try:
            response = await self.client.request(
                method, url, headers=headers, content=body or None, timeout=timeout
            )
        except httpx.TimeoutException as exc:
            logger.error("upstream_timeout", method=method, url=url, error=str(exc))
            raise UpstreamError() from exc
        except httpx.HTTPError as exc:
            logger.error("upstream_request_failed", method=method, url=url, error=str(exc))
            raise UpstreamError() from exc

        logger.info("upstream_response", method=method, url=url, status_code=response.status_code)
        if response.status_code >= 400:
            raise UpstreamError(
                f"Upstream responded with {response.status_code}",
                status_code=response.status_code,
                body=decode_error_body(response),
            )
        return response

    @staticmethod
    def _relay(response: httpx.Response) -> Response:
        headers = {
            key: value
            for key, value in response.headers.items()
            if key.lower() not in _STRIPPED_BUFFERED_RESPONSE_HEADERS
        }
        return Response(
            content=response.content, status_code=response.status_code, headers=headers
        )

    async def forward_buffered(
        self,
        method: str,
        path: str,
        *,
        query: str = "",
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        tenant_id: Optional[str] = None,
    ) -> Response:
        url = self.build_url(path, query)
        logger.info("proxy_request", mode="buffered", method=method, url=url, identifier=tenant_id)
        async with self._slot(tenant_id):
            response = await self._send(
                method,
                url,
                headers=self.upstream_headers(headers),
                body=body,
                timeout=self.proxy_timeout,
            )
        return self._relay(response)

    async def forward_multipart(
        self,
        method: str,
        path: str,
        *,
        body: bytes,
        query: str = "",
        headers: Optional[Mapping[str, str]] = None,
        tenant_id: Optional[str] = None,
    ) -> Response:
        """Relay a raw multipart body byte-for-byte, fixing a missing boundary."""
        inbound = dict(headers or {})
        original_type = next(
            (value for key, value in inbound.items() if key.lower() == "content-type"), None
        )
        content_type = resolve_multipart_content_type(
            original_type, body, self.boundary_strategies
        )
        url = self.build_url(path, query)
        logger.info(
            "proxy_request",
            mode="multipart",
            method=method,
            url=url,
            identifier=tenant_id,
            size=len(body),
        )
        async with self._slot(tenant_id):
            response = await self._send(
                method,
                url,
                headers=self.upstream_headers(inbound, content_type=content_type),
                body=body,
                timeout=self.upload_timeout,
            )
        return self._relay(response)

    async def forward_streamed(
        self,
        method: str,
        path: str,
        *,
        query: str = "",
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        tenant_id: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> StreamingResponse:
        url = self.build_url(path, query)
        logger.info("proxy_request", mode="streamed", method=method, url=url, identifier=tenant_id)
        if tenant_id:
            self.limiter.acquire(tenant_id)

        def _release() -> None:
            if tenant_id:
                self.limiter.release(tenant_id)

        request = self.client.build_request(
            method,
            url,
            headers=self.upstream_headers(headers),
            content=body or None,
            params=params,
            timeout=self.proxy_timeout,
        )
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            _release()
            logger.error("upstream_stream_failed", method=method, url=url, error=str(exc))
            raise UpstreamError() from exc

        if upstream.status_code >= 400:
            try:
                await upstream.aread()
                error_body = decode_error_body(upstream)
            except httpx.HTTPError as exc:
                error_body = None
                logger.warning("upstream_error_body_unreadable", url=url, error=str(exc))
            finally:
                await upstream.aclose()
                _release()
            logger.error("upstream_stream_rejected", url=url, status_code=upstream.status_code)
            raise UpstreamError(
                f"Upstream responded with {upstream.status_code}",
                status_code=upstream.status_code,
                body=error_body,
            )

        response_headers = {
            key: value
            for key, value in upstream.headers.items()
            if key.lower() not in _STRIPPED_RESPONSE_HEADERS
        }
        if "text/event-stream" in upstream.headers.get("content-type", ""):
            response_headers["cache-control"] = "no-cache"
            response_headers["connection"] = "keep-alive"

        async def relay() -> AsyncIterator[bytes]:
            sent = 0
            try:
                async for chunk in upstream.aiter_raw():
                    sent += len(chunk)
                    yield chunk
            except httpx.HTTPError as exc:
                # Headers are already out; the status can no longer change.
                logger.error("upstream_stream_error", url=url, error=str(exc), bytes_sent=sent)
            finally:
                await upstream.aclose()
                _release()
                logger.info("upstream_stream_closed", url=url, bytes_sent=sent)

        return StreamingResponse(
            relay(), status_code=upstream.status_code, headers=response_headers
        )

    async def get_json(self, path: str, *, timeout: float) -> Any:
        """GET an upstream JSON document with the gateway credential."""
        response = await self._send(
            "GET",
            self.build_url(path),
            headers=self.upstream_headers({"accept": "application/json"}),
            body=None,
            timeout=timeout,
        )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError("Upstream returned invalid JSON", status_code=502) from exc
