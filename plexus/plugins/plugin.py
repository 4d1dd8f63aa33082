"""
Per-plugin records flowing through an install pass.

    PluginRecord  --prepare_plugin-->  PreparedPlugin  --resolver-->  InstalledPlugin

A PreparedPlugin has its services classified and its exported services
grouped; its imports are still unresolved. An InstalledPlugin has every
import pinned to a concrete version of an installed exporter and is
published read-only once its install pass completes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
import logging

from plexus.plugins.collaborators import ConfigurationSource
from plexus.plugins.definition import PluginRecord, PluginType
from plexus.plugins.errors import (
    PluginError,
    ReasonCode,
    RejectedPlugin,
    RouteFailure,
    ServiceRejection,
)
from plexus.plugins.grouping import DuplicateVersionError, ServiceGroup
from plexus.plugins.services import (
    ImportService,
    ServiceKind,
    ServiceRecord,
    classify_service,
    service_key,
)

logger = logging.getLogger(__name__)


@dataclass
class PreparedPlugin:
    """A plugin whose services are classified but whose imports are open.

    Attributes:
        record: The validated definition.
        data_services_grouped: Exported services grouped by name.
        imports: Import declarations, in declaration order.
        service_rejections: Services dropped during classification.
    """

    record: PluginRecord
    data_services_grouped: dict[str, ServiceGroup] = field(default_factory=dict)
    imports: list[ImportService] = field(default_factory=list)
    service_rejections: list[ServiceRejection] = field(default_factory=list)

    @property
    def identifier(self) -> str:
        return self.record.identifier


@dataclass
class InstalledPlugin:
    """A plugin admitted by the resolver.

    Attributes:
        record: The validated definition.
        data_services_grouped: Exported services grouped by name.
        imports_grouped: Resolved imports grouped by local name.
        installed_at: When the plugin was admitted.
    """

    record: PluginRecord
    data_services_grouped: dict[str, ServiceGroup]
    imports_grouped: dict[str, ServiceGroup]
    installed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def identifier(self) -> str:
        return self.record.identifier

    @property
    def plugin_type(self) -> PluginType:
        return self.record.plugin_type

    def groups(self) -> list[ServiceGroup]:
        """Exported groups followed by import groups."""
        return [*self.data_services_grouped.values(), *self.imports_grouped.values()]

    def services(self) -> list[ServiceRecord]:
        return [record for group in self.groups() for record in group.versions.values()]

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "pluginType": self.plugin_type.value,
            "pluginVersion": self.record.plugin_version,
            "apiVersion": self.record.api_version,
            "installedAt": self.installed_at.isoformat(),
            "services": [g.to_dict() for g in self.data_services_grouped.values()],
            "imports": [g.to_dict() for g in self.imports_grouped.values()],
        }


@dataclass
class PluginEvent:
    """Notification emitted for every successfully installed plugin.

    Attributes:
        event_type: "plugin_installed" or "plugin_added" (dynamic).
        plugin_id: The installed plugin.
        timestamp: When the event occurred.
        details: Route count and plugin type.
    """

    event_type: str
    plugin_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResolutionResult:
    """Outcome of an install pass.

    Attributes:
        installable: Plugins in topological order (exporters first).
        rejected: Whole-plugin rejections.
        service_rejections: Individual services dropped.
        route_failures: Individual routes left out of the table.
        notifications: One event per installed plugin.
    """

    installable: list[InstalledPlugin] = field(default_factory=list)
    rejected: list[RejectedPlugin] = field(default_factory=list)
    service_rejections: list[ServiceRejection] = field(default_factory=list)
    route_failures: list[RouteFailure] = field(default_factory=list)
    notifications: list[PluginEvent] = field(default_factory=list)

    @property
    def order(self) -> list[str]:
        return [p.identifier for p in self.installable]

    def rejection_for(self, plugin_id: str) -> RejectedPlugin | None:
        for rejected in self.rejected:
            if rejected.plugin_id == plugin_id:
                return rejected
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "installed": self.order,
            "rejected": [r.to_dict() for r in self.rejected],
            "serviceRejections": [r.to_dict() for r in self.service_rejections],
            "routeFailures": [r.to_dict() for r in self.route_failures],
        }


def _check_proxy_connector(
    record: PluginRecord, config_source: ConfigurationSource | None
) -> PluginRecord:
    host, port = record.host, record.port
    if (not host or not port) and config_source is not None:
        remote = (config_source.get_service_configuration(record.identifier, None) or {}).get("remote.json")
        if isinstance(remote, dict):
            host = host or remote.get("host")
            port = port or remote.get("port")
    if not host or not port:
        raise PluginError(record.identifier, ReasonCode.MALFORMED_DEFINITION,
                          "proxy connector needs a host and a port")
    if (host, port) != (record.host, record.port):
        record = record.model_copy(update={"host": host, "port": port})
    return record


def prepare_plugin(
    record: PluginRecord,
    config_source: ConfigurationSource | None = None,
    strict: bool = False,
) -> PreparedPlugin:
    """Classify and group one plugin's services.

    Args:
        record: The validated definition.
        config_source: Configuration fallback for external services.
        strict: Raise on the first bad service instead of dropping it.

    Returns:
        The prepared plugin.

    Raises:
        PluginError: For whole-plugin problems, or any service problem
            when *strict* is set.
    """
    if record.plugin_type is PluginType.PROXY_CONNECTOR:
        record = _check_proxy_connector(record, config_source)

    prepared = PreparedPlugin(record=record)

    def reject(error: PluginError) -> None:
        if strict:
            raise error
        logger.warning(f"{record.identifier}: dropping service: {error}")
        prepared.service_rejections.append(ServiceRejection.from_error(error))

    for raw in record.data_services:
        try:
            service = classify_service(raw, record, config_source)
        except PluginError as e:
            reject(e)
            continue

        match service.kind:
            case ServiceKind.IMPORT:
                logger.info(
                    f"{record.identifier}: importing service '{service.source_name}' "
                    f"from {service.source_plugin} as '{service.local_name}'"
                )
                prepared.imports.append(service)
            case ServiceKind.LOCAL | ServiceKind.EXTERNAL:
                name = service_key(service)
                group = prepared.data_services_grouped.get(name)
                if group is None:
                    group = prepared.data_services_grouped[name] = ServiceGroup(name=name)
                try:
                    group.add(service)
                except DuplicateVersionError as e:
                    reject(PluginError(record.identifier, ReasonCode.MALFORMED_DEFINITION,
                                       str(e), service.name, service.version))
                    continue
                logger.info(f"{record.identifier}: found {service.kind.value} service '{name}@{service.version}'")

    return prepared
