from __future__ import annotations

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from .router import NoRoute, RouterHolder
from .settings import settings

# Connection-scoped headers that must not be forwarded by a proxy.
HOP_BY_HOP = {
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
}

METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _forward_headers(headers, client_host: str | None) -> dict[str, str]:
    out = {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP}
    if client_host:
        prior = out.get("x-forwarded-for")
        out["x-forwarded-for"] = f"{prior}, {client_host}" if prior else client_host
    return out


def create_proxy_app(holder: RouterHolder, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Public listener: every request is routed through the active rule table.

    Unmatched paths get a 404, unreachable upstreams a 502. Neither response
    names the internal target.
    """
    app = FastAPI(title="sdp public listener", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=METHODS)
    async def proxy(path: str, request: Request) -> Response:
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        try:
            match = holder.current().route(target)
        except NoRoute:
            return JSONResponse({"detail": "Not Found"}, status_code=404)

        body = await request.body()
        client_host = request.client.host if request.client else None
        try:
            async with httpx.AsyncClient(
                base_url=match.upstream,
                timeout=settings.proxy_timeout_s,
                follow_redirects=False,
                transport=transport,
            ) as client:
                upstream = await client.request(
                    request.method,
                    match.forward_path,
                    content=body,
                    headers=_forward_headers(request.headers, client_host),
                )
        except (httpx.TransportError, httpx.TimeoutException):
            return JSONResponse({"detail": "Bad Gateway"}, status_code=502)

        headers = {k: v for k, v in upstream.headers.items() if k.lower() not in HOP_BY_HOP | {"content-encoding"}}
        return Response(content=upstream.content, status_code=upstream.status_code, headers=headers)

    return app
