"""
Published plugin state for Plexus.

The registry is the one place request handlers read from. It holds the
current RoutingTable, the history of rejections and the queue of
installation notifications.

Registry Features:
    - Single-reference publication of immutable routing tables
    - Plugin and service lookup over the published snapshot
    - Rejection history (plugins, services, routes)
    - Installation notifications, drained explicitly by the web layer
    - Optional synchronous listeners

Example:
    registry = PluginRegistry()
    installer = PluginInstaller(registry, compiler)
    await installer.install_plugins(definitions)

    table = registry.table            # capture once per request
    matched = table.match(request.url.path)

    for event in registry.drain_notifications():
        mount_static_content(event.plugin_id)
"""

from typing import Any, Callable, Iterable
import logging

from plexus.plugins.definition import PluginType
from plexus.plugins.errors import ReasonCode, RejectedPlugin, RouteFailure, ServiceRejection
from plexus.plugins.plugin import InstalledPlugin, PluginEvent
from plexus.plugins.routing import Route, RoutingTable

logger = logging.getLogger(__name__)

# Type for event listeners
EventListener = Callable[[PluginEvent], None]


class PluginRegistry:
    """Holder of the published routing table.

    Only one writer may publish at a time; readers never lock. A reader
    that captured ``table`` keeps a consistent view even if a new table
    is published while it runs.

    Attributes:
        _table: The currently published snapshot.
        _rejected: Plugin rejections by identifier (latest wins).
        _duplicates: Later copies of an identifier, kept after the first
            copy is published.
        _service_rejections: Services dropped across all passes.
        _route_failures: Routes left out across all passes.
        _notifications: Pending installation events.
        _event_listeners: Called synchronously for each event.
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._table = RoutingTable()
        self._rejected: dict[str, RejectedPlugin] = {}
        self._duplicates: list[RejectedPlugin] = []
        self._service_rejections: list[ServiceRejection] = []
        self._route_failures: list[RouteFailure] = []
        self._notifications: list[PluginEvent] = []
        self._event_listeners: list[EventListener] = []

    @property
    def table(self) -> RoutingTable:
        """The current snapshot."""
        return self._table

    def publish(
        self,
        table: RoutingTable,
        events: Iterable[PluginEvent] = (),
    ) -> None:
        """Swap in a new snapshot and queue its notifications.

        Args:
            table: The new snapshot. Must contain everything the old one did.
            events: One event per newly installed plugin.
        """
        self._table = table
        for plugin_id in table.plugins:
            self._rejected.pop(plugin_id, None)
        for event in events:
            self._notifications.append(event)
            self._emit_event(event)
        logger.info(f"Published routing table: {len(table.plugins)} plugins, {len(table.routes)} routes")

    def record_rejections(
        self,
        rejected: Iterable[RejectedPlugin] = (),
        service_rejections: Iterable[ServiceRejection] = (),
        route_failures: Iterable[RouteFailure] = (),
    ) -> None:
        """Remember rejections for introspection."""
        for rejection in rejected:
            if rejection.reason is ReasonCode.DUPLICATE_IDENTIFIER:
                self._duplicates.append(rejection)
            else:
                self._rejected[rejection.plugin_id] = rejection
        self._service_rejections.extend(service_rejections)
        self._route_failures.extend(route_failures)

    def drain_notifications(self) -> list[PluginEvent]:
        """Return and clear the pending installation events."""
        events, self._notifications = self._notifications, []
        return events

    def get_plugin(self, plugin_id: str) -> InstalledPlugin | None:
        """Get an installed plugin by identifier.

        Args:
            plugin_id: Plugin identifier.

        Returns:
            InstalledPlugin if found, None otherwise.
        """
        return self._table.plugins.get(plugin_id)

    def get_all_plugins(self, plugin_type: PluginType | str | None = None) -> list[InstalledPlugin]:
        """Installed plugins, optionally filtered by type."""
        plugins = list(self._table.plugins.values())
        if plugin_type is not None:
            plugins = [p for p in plugins if p.plugin_type == plugin_type]
        return plugins

    def get_routes(self, plugin_id: str) -> list[Route]:
        return self._table.routes_for(plugin_id)

    def get_rejected(self) -> list[RejectedPlugin]:
        return [*self._rejected.values(), *self._duplicates]

    def get_service_rejections(self) -> list[ServiceRejection]:
        return list(self._service_rejections)

    def get_route_failures(self) -> list[RouteFailure]:
        return list(self._route_failures)

    def is_installed(self, plugin_id: str) -> bool:
        return plugin_id in self._table.plugins

    def add_event_listener(self, listener: EventListener) -> None:
        """Add an event listener.

        Args:
            listener: Callback for plugin events.
        """
        self._event_listeners.append(listener)

    def remove_event_listener(self, listener: EventListener) -> None:
        """Remove an event listener.

        Args:
            listener: The listener to remove.
        """
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def _emit_event(self, event: PluginEvent) -> None:
        for listener in self._event_listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener error: {e}")

    def get_statistics(self) -> dict[str, Any]:
        """Get registry statistics.

        Returns:
            Dictionary with registry statistics.
        """
        table = self._table
        by_type: dict[str, int] = {}
        for plugin in table.plugins.values():
            by_type[plugin.plugin_type.value] = by_type.get(plugin.plugin_type.value, 0) + 1
        return {
            "total_plugins": len(table.plugins),
            "plugins_by_type": by_type,
            "total_routes": len(table.routes),
            "default_routes": sum(1 for r in table.routes.values() if r.is_default),
            "rejected_plugins": len(self._rejected) + len(self._duplicates),
            "rejected_services": len(self._service_rejections),
            "failed_routes": len(self._route_failures),
            "pending_notifications": len(self._notifications),
        }

    def __repr__(self) -> str:
        return (
            f"<PluginRegistry plugins={len(self._table.plugins)} "
            f"routes={len(self._table.routes)} rejected={len(self._rejected) + len(self._duplicates)}>"
        )
