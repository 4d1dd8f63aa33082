"""Dispatch of plugin service requests against the published routing table."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response

from plexus.plugins.registry import PluginRegistry

logger = logging.getLogger("plexus.api")

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def create_dispatch_router(product_code: str) -> APIRouter:
    """Catch-all router for ``/{product_code}/plugins/...``.

    Each request captures the registry's table once, so a table
    published mid-request does not affect it.
    """
    router = APIRouter(tags=["services"])

    @router.api_route(f"/{product_code}/plugins/{{rest:path}}", methods=_METHODS, include_in_schema=False)
    async def dispatch(request: Request, rest: str) -> Response:
        registry: PluginRegistry = request.app.state.registry
        table = registry.table
        matched = table.match(request.url.path)
        if matched is None:
            return JSONResponse({"detail": f"No service at {request.url.path}"}, status_code=404)
        route, sub_path = matched
        request.state.sub_path = sub_path
        request.state.route = route
        return await route.handle(request)

    return router
