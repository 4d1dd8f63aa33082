"""Reverse-proxy handlers for external and agent services."""

from __future__ import annotations

import logging

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from plexus.plugins.collaborators import Handler

logger = logging.getLogger("plexus.api")

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
})


def _forwardable(headers) -> dict[str, str]:  # noqa: ANN001
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP_HEADERS}


class HttpxProxyFactory:
    """ProxyFactory forwarding requests with ``httpx.AsyncClient``.

    The sub-path after the version segment (``request.state.sub_path``)
    and the query string are appended to the upstream prefix.
    """

    def __init__(self, timeout: float = 30.0, verify_tls: bool = True, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.transport = transport

    def make_proxy_handler(self, host: str, port: int, url_prefix: str | None, is_https: bool) -> Handler:
        scheme = "https" if is_https else "http"
        base = f"{scheme}://{host}:{port}"
        prefix = "/" + (url_prefix or "").strip("/") if url_prefix and url_prefix.strip("/") else ""

        async def proxy(request: Request) -> Response:
            sub_path = getattr(request.state, "sub_path", "")
            url = httpx.URL(base + prefix + sub_path, query=request.url.query.encode())
            body = await request.body()
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, verify=self.verify_tls, transport=self.transport
                ) as client:
                    upstream = await client.request(
                        request.method, url, headers=_forwardable(request.headers), content=body
                    )
            except httpx.HTTPError as e:
                logger.warning("proxy_error upstream=%s error=%s", base, e)
                return JSONResponse({"detail": f"Upstream {base} unavailable"}, status_code=502)
            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                headers=_forwardable(upstream.headers),
            )

        return proxy
