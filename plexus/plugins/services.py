"""
Service classification for plugin definitions.

Turns each raw ``dataServices`` entry into one of a closed set of service
records, tagged by ServiceKind:

    - LOCAL: served by this server. Router and legacy handler services carry
      a deferred-load marker resolved later by the Module Loader; "service"
      typed entries are proxied to the configured agent.
    - EXTERNAL: reverse-proxied to an upstream host/port.
    - IMPORT: a dependency on another plugin's service.

Classification problems reject only the offending service.

Example:
    record = classify_service(raw_entry, plugin, config_source)
    match record.kind:
        case ServiceKind.IMPORT: ...
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Union
import logging

from pydantic import ValidationError

from plexus.plugins.collaborators import ConfigurationSource
from plexus.plugins.definition import PluginRecord, ServiceDeclaration
from plexus.plugins.errors import PluginError, ReasonCode
from plexus.plugins.versions import is_valid_range, is_valid_version

logger = logging.getLogger(__name__)


class ServiceKind(str, Enum):
    """Tag of the ServiceRecord union."""

    LOCAL = "local"
    EXTERNAL = "external"
    IMPORT = "import"


class DispatchKind(str, Enum):
    """How a LocalService is reached once a request is routed to it."""

    ROUTER = "router"
    LEGACY = "nodeService"
    AGENT_PROXY = "service"
    OTHER = "other"


@dataclass(frozen=True)
class LocalService:
    """A service implemented by (or proxied through) this server.

    Attributes:
        name: Service name.
        version: Semantic version.
        service_type: The declared type string.
        dispatch: How requests reach the implementation.
        filename: Module to load for ROUTER / LEGACY dispatch.
        router_factory: Attribute of the module building the handler.
        url_prefix: Upstream prefix for AGENT_PROXY dispatch.
        version_requirements: Sibling service name -> range (or pinned version).
        authorization: Service level auth configuration.
        http_caching: True when the service allows HTTP caching.
    """

    name: str
    version: str
    service_type: str
    dispatch: DispatchKind
    filename: str | None = None
    router_factory: str | None = None
    url_prefix: str | None = None
    version_requirements: dict[str, str] | None = None
    authorization: dict[str, Any] | None = None
    http_caching: bool = False
    kind: ServiceKind = field(default=ServiceKind.LOCAL, init=False)

    @property
    def needs_module(self) -> bool:
        return self.dispatch in (DispatchKind.ROUTER, DispatchKind.LEGACY)


@dataclass(frozen=True)
class ExternalService:
    """A service reverse-proxied to an upstream server."""

    name: str
    version: str
    host: str | None
    port: int | None
    url_prefix: str | None = None
    is_https: bool = False
    version_requirements: dict[str, str] | None = None
    authorization: dict[str, Any] | None = None
    http_caching: bool = False
    kind: ServiceKind = field(default=ServiceKind.EXTERNAL, init=False)


@dataclass(frozen=True)
class ImportService:
    """A service imported from another plugin.

    ``version`` stays None until the resolver picks a concrete version of
    the source service.
    """

    name: str
    source_plugin: str
    source_name: str
    version_range: str
    local_name: str
    version: str | None = None
    version_requirements: dict[str, str] | None = None
    authorization: dict[str, Any] | None = None
    http_caching: bool = False
    kind: ServiceKind = field(default=ServiceKind.IMPORT, init=False)

    def resolved(self, version: str) -> "ImportService":
        return replace(self, version=version)


ServiceRecord = Union[LocalService, ExternalService, ImportService]


def service_key(record: ServiceRecord) -> str:
    """Name a record is grouped and routed under."""
    match record.kind:
        case ServiceKind.IMPORT:
            return record.local_name
        case ServiceKind.LOCAL | ServiceKind.EXTERNAL:
            return record.name


def describe(record: ServiceRecord) -> dict[str, Any]:
    """Service definition as injected into requests and listed by introspection."""
    base = {
        "name": record.name,
        "version": record.version,
        "kind": record.kind.value,
    }
    if record.version_requirements:
        base["versionRequirements"] = dict(record.version_requirements)
    match record.kind:
        case ServiceKind.LOCAL:
            base["type"] = record.service_type
        case ServiceKind.EXTERNAL:
            base.update(type="external", host=record.host, port=record.port,
                        urlPrefix=record.url_prefix, isHttps=record.is_https)
        case ServiceKind.IMPORT:
            base.update(type="import", sourcePlugin=record.source_plugin,
                        sourceName=record.source_name, versionRange=record.version_range,
                        localName=record.local_name)
    return base


def _fail(plugin: PluginRecord, reason: ReasonCode, detail: str,
          name: str | None = None, version: str | None = None) -> PluginError:
    return PluginError(plugin.identifier, reason, detail, service_name=name, version=version)


def _check_requirements(plugin: PluginRecord, decl: ServiceDeclaration, name: str) -> None:
    for required, version_range in (decl.version_requirements or {}).items():
        if not is_valid_range(version_range):
            raise _fail(
                plugin,
                ReasonCode.INVALID_VERSION_RANGE,
                f"invalid version range {required}: {version_range}",
                name,
                version_range,
            )


def _remote_config(
    plugin: PluginRecord, name: str, config_source: ConfigurationSource | None
) -> dict[str, Any]:
    if config_source is None:
        return {}
    configuration = config_source.get_service_configuration(plugin.identifier, name) or {}
    remote = configuration.get("remote.json")
    return remote if isinstance(remote, dict) else {}


def classify_service(
    raw: Any,
    plugin: PluginRecord,
    config_source: ConfigurationSource | None = None,
) -> ServiceRecord:
    """Turn one raw service declaration into a ServiceRecord.

    Args:
        raw: The raw ``dataServices`` entry.
        plugin: The owning plugin.
        config_source: Consulted for external host/port fallback.

    Returns:
        The classified record.

    Raises:
        PluginError: MALFORMED_DEFINITION, INVALID_VERSION_STRING or
            INVALID_VERSION_RANGE, scoped to this one service.
    """
    if not isinstance(raw, (dict, ServiceDeclaration)):
        raise _fail(plugin, ReasonCode.MALFORMED_DEFINITION,
                    f"service entry must be an object, got {type(raw).__name__}")
    try:
        decl = raw if isinstance(raw, ServiceDeclaration) else ServiceDeclaration.model_validate(raw)
    except ValidationError as e:
        name = raw.get("name") if isinstance(raw, dict) else None
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise _fail(plugin, ReasonCode.MALFORMED_DEFINITION, f"invalid fields: {fields}", name) from e

    if decl.type == "import":
        if not decl.source_plugin or not decl.source_name:
            raise _fail(plugin, ReasonCode.MALFORMED_DEFINITION,
                        "import needs sourcePlugin and sourceName", decl.local_name or decl.name)
        local_name = decl.local_name or decl.source_name
        version_range = decl.version_range if decl.version_range is not None else "*"
        if not is_valid_range(version_range):
            raise _fail(plugin, ReasonCode.INVALID_VERSION_RANGE,
                        f'invalid version range "{version_range}"', local_name, version_range)
        _check_requirements(plugin, decl, local_name)
        return ImportService(
            name=decl.name or local_name,
            source_plugin=decl.source_plugin,
            source_name=decl.source_name,
            version_range=version_range,
            local_name=local_name,
            version_requirements=dict(decl.version_requirements) if decl.version_requirements else None,
            authorization=decl.authorization,
            http_caching=decl.http_caching is True,
        )

    if not decl.name:
        raise _fail(plugin, ReasonCode.MALFORMED_DEFINITION, f"{decl.type} service has no name")
    if not is_valid_version(decl.version):
        raise _fail(plugin, ReasonCode.INVALID_VERSION_STRING,
                    f'invalid version "{decl.version}"', decl.name, decl.version)
    _check_requirements(plugin, decl, decl.name)
    requirements = dict(decl.version_requirements) if decl.version_requirements else None

    if decl.type == "external":
        host, port = decl.host, decl.port
        if not host:
            host = plugin.host
        if not port:
            port = plugin.port
        if not host or not port:
            remote = _remote_config(plugin, decl.name, config_source)
            host = host or remote.get("host")
            port = port or remote.get("port")
        return ExternalService(
            name=decl.name,
            version=decl.version,
            host=host,
            port=port,
            url_prefix=decl.url_prefix,
            is_https=decl.is_https,
            version_requirements=requirements,
            authorization=decl.authorization,
            http_caching=decl.http_caching is True,
        )

    match decl.type:
        case "router":
            dispatch = DispatchKind.ROUTER
        case "nodeService":
            dispatch = DispatchKind.LEGACY
        case "service":
            dispatch = DispatchKind.AGENT_PROXY
        case _:
            dispatch = DispatchKind.OTHER

    if dispatch in (DispatchKind.ROUTER, DispatchKind.LEGACY) and not decl.filename:
        raise _fail(plugin, ReasonCode.MALFORMED_DEFINITION,
                    "no file name for data service", decl.name, decl.version)

    return LocalService(
        name=decl.name,
        version=decl.version,
        service_type=decl.type,
        dispatch=dispatch,
        filename=decl.filename,
        router_factory=decl.router_factory,
        url_prefix=decl.url_prefix,
        version_requirements=requirements,
        authorization=decl.authorization,
        http_caching=decl.http_caching is True,
    )
