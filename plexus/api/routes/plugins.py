"""Plugin introspection and dynamic install endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query, Request

from plexus.plugins.definition import PluginType
from plexus.plugins.installer import PluginInstaller
from plexus.plugins.plugin import PluginEvent
from plexus.plugins.registry import PluginRegistry

logger = logging.getLogger("plexus.api")

router = APIRouter(prefix="/plugins", tags=["plugins"])


def _registry(request: Request) -> PluginRegistry:
    return request.app.state.registry


def drain_events(registry: PluginRegistry) -> list[PluginEvent]:
    """Consume the pending installation events, logging each one."""
    events = registry.drain_notifications()
    for event in events:
        logger.info("%s plugin_id=%s routes=%s",
                    event.event_type, event.plugin_id, event.details.get("routes"))
    return events


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("")
async def list_plugins(request: Request, type: PluginType | None = Query(default=None)) -> dict:
    """Installed plugins, optionally filtered by pluginType."""
    plugins = _registry(request).get_all_plugins(type)
    return {"plugins": [p.to_dict() for p in plugins]}


@router.get("/rejected")
async def list_rejected(request: Request) -> dict:
    """Plugins, services and routes left out of the published table."""
    registry = _registry(request)
    return {
        "plugins": [r.to_dict() for r in registry.get_rejected()],
        "services": [r.to_dict() for r in registry.get_service_rejections()],
        "routes": [r.to_dict() for r in registry.get_route_failures()],
    }


@router.get("/{plugin_id}/services")
async def list_services(request: Request, plugin_id: str) -> dict:
    """Service groups and routes of one installed plugin."""
    registry = _registry(request)
    plugin = registry.get_plugin(plugin_id)
    if plugin is None:
        raise HTTPException(status_code=404, detail=f"Plugin {plugin_id} is not installed.")
    return {
        "identifier": plugin_id,
        "services": [g.to_dict() for g in plugin.data_services_grouped.values()],
        "imports": [g.to_dict() for g in plugin.imports_grouped.values()],
        "routes": sorted((r.to_dict() for r in registry.get_routes(plugin_id)), key=lambda r: r["urlPath"]),
    }


@router.post("", status_code=201)
async def add_plugin(request: Request, definition: dict[str, Any] = Body(...)) -> dict:
    """Install one plugin definition at runtime.

    Install requests are serialised; a failed install leaves the
    published table unchanged.
    """
    installer: PluginInstaller = request.app.state.installer
    async with request.app.state.install_lock:
        routes = await installer.add_dynamic_plugin(definition)
        drain_events(installer.registry)
    return {
        "identifier": definition.get("identifier"),
        "routes": [r.to_dict() for r in routes],
    }
