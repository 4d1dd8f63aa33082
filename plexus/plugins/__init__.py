"""
Plugin engine for Plexus.

Plugins declare named, semantically versioned services and may import
services exported by other plugins. This package resolves those
declarations into an install order and a routing table:

    - Classification: raw service entries become LocalService,
      ExternalService or ImportService records (services.py)
    - Grouping: same-named services grouped by version, highest version
      cached (grouping.py)
    - Resolution: dependency graph, cycle detection, topological order,
      import binding (depgraph.py)
    - Validation: same-plugin version requirements checked and pinned
      (validation.py)
    - Compilation: one route per (plugin, service, version) plus a
      ``_current`` alias (routing.py)
    - Installation: batch and dynamic install passes (installer.py)

Collaborators:
    The engine reaches the outside world only through the Protocols in
    collaborators.py: ModuleLoader, ProxyFactory, AuthProvider and
    ConfigurationSource.

Example:
    from plexus.plugins import (
        DefinitionLoader, PluginInstaller, PluginRegistry,
        PythonModuleLoader, RouteCompiler,
    )

    definitions, errors = DefinitionLoader("./plugins").load()
    registry = PluginRegistry()
    compiler = RouteCompiler("plexus", module_loader=PythonModuleLoader())
    installer = PluginInstaller(registry, compiler)
    result = await installer.install_plugins(definitions)
"""

from plexus.plugins.errors import (
    DynamicInstallError,
    PluginError,
    ReasonCode,
    RejectedPlugin,
    RouteFailure,
    ServiceRejection,
)
from plexus.plugins.definition import (
    PluginRecord,
    PluginType,
    parse_plugin_definition,
)
from plexus.plugins.services import (
    DispatchKind,
    ExternalService,
    ImportService,
    LocalService,
    ServiceKind,
    classify_service,
)
from plexus.plugins.grouping import ServiceGroup, group_services
from plexus.plugins.plugin import (
    InstalledPlugin,
    PluginEvent,
    PreparedPlugin,
    ResolutionResult,
    prepare_plugin,
)
from plexus.plugins.depgraph import DependencyEdge, DependencyGraph, DependencyResolver
from plexus.plugins.validation import LocalRequirementValidator
from plexus.plugins.routing import (
    AgentTarget,
    Route,
    RouteCompiler,
    RoutingTable,
    ServiceHandle,
)
from plexus.plugins.registry import PluginRegistry
from plexus.plugins.installer import PluginInstaller
from plexus.plugins.loader import (
    DefinitionLoadError,
    DefinitionLoader,
    PythonModuleLoader,
)

__all__ = [
    # Errors
    "DynamicInstallError",
    "PluginError",
    "ReasonCode",
    "RejectedPlugin",
    "RouteFailure",
    "ServiceRejection",
    # Definitions and services
    "PluginRecord",
    "PluginType",
    "parse_plugin_definition",
    "DispatchKind",
    "ExternalService",
    "ImportService",
    "LocalService",
    "ServiceKind",
    "classify_service",
    "ServiceGroup",
    "group_services",
    # Install pipeline
    "InstalledPlugin",
    "PluginEvent",
    "PreparedPlugin",
    "ResolutionResult",
    "prepare_plugin",
    "DependencyEdge",
    "DependencyGraph",
    "DependencyResolver",
    "LocalRequirementValidator",
    "AgentTarget",
    "Route",
    "RouteCompiler",
    "RoutingTable",
    "ServiceHandle",
    "PluginRegistry",
    "PluginInstaller",
    # Collaborator implementations
    "DefinitionLoadError",
    "DefinitionLoader",
    "PythonModuleLoader",
]
