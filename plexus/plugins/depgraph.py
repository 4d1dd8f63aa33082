"""
Dependency graph and topological resolution of plugins.

Every import declared by a plugin becomes an edge importer -> exporter.
The resolver partitions a batch of prepared plugins into an installable
list, ordered so that exporters precede importers, and a list of rejected
plugins with structured reasons.

Resolution steps:
    1. Duplicate identifiers (within the batch or against plugins already
       installed) are rejected before the graph is built.
    2. Importers of a plugin that exists nowhere are rejected (MISSING_PLUGIN).
    3. Members of a dependency cycle are rejected (CYCLIC_DEPENDENCY).
    4. Survivors are ordered with Kahn's algorithm; ties keep input order.
    5. Walking that order, each plugin's imports are checked against the
       exporters admitted so far only. The highest version of the exported
       group satisfying the import range is chosen. Post-admission
       validators (the local version-requirement check) run next.

Rejection is shallow: nothing walks the graph to reject dependents of a
rejected plugin. A dependent fails its own import check in step 5 because
its exporter was never admitted (REQUIRED_PLUGIN_FAILED).

Example:
    resolver = DependencyResolver(validators=[LocalRequirementValidator()])
    result = resolver.resolve(prepared_plugins, installed=published_plugins)
    for plugin in result.installable:
        ...
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol, Sequence
import heapq
import logging

from plexus.plugins.errors import PluginError, ReasonCode, RejectedPlugin
from plexus.plugins.grouping import DuplicateVersionError, ServiceGroup
from plexus.plugins.plugin import InstalledPlugin, PreparedPlugin, ResolutionResult
from plexus.plugins.services import ImportService
from plexus.plugins.versions import max_satisfying

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEdge:
    """One import: *importer* needs *service* from *exporter*."""

    importer: str
    exporter: str
    service: ImportService


class PluginValidator(Protocol):
    """Check run on each plugin right before it is admitted."""

    def validate(self, plugin: InstalledPlugin) -> None:
        """Raise PluginError to reject the plugin."""
        ...


class DependencyGraph:
    """Graph of plugins with one edge per import.

    Plugins already installed by an earlier pass can satisfy imports but
    are not nodes: they never import anything from the current batch.

    Attributes:
        nodes: Prepared plugins by identifier, in input order.
        edges: Every import edge, multiplicity preserved.
    """

    def __init__(
        self,
        plugins: Iterable[PreparedPlugin],
        installed: Mapping[str, InstalledPlugin] | None = None,
    ):
        self.nodes: dict[str, PreparedPlugin] = {p.identifier: p for p in plugins}
        self.installed: Mapping[str, InstalledPlugin] = installed or {}
        self.edges: list[DependencyEdge] = []
        self._exporters: dict[str, list[DependencyEdge]] = defaultdict(list)
        for plugin in self.nodes.values():
            for service in plugin.imports:
                edge = DependencyEdge(plugin.identifier, service.source_plugin, service)
                self.edges.append(edge)
                self._exporters[plugin.identifier].append(edge)
                logger.debug(f"Found dependency: {edge.importer} -> {edge.exporter}:{service.source_name}")

    def dependencies_of(self, plugin_id: str) -> list[DependencyEdge]:
        """Outgoing edges (imports) of a plugin."""
        return list(self._exporters.get(plugin_id, ()))

    def dependents_of(self, plugin_id: str) -> list[str]:
        """Plugins importing from *plugin_id*."""
        return sorted({e.importer for e in self.edges if e.exporter == plugin_id})

    def missing_exporters(self, plugin_id: str) -> list[DependencyEdge]:
        """Imports whose exporter exists neither in the batch nor installed."""
        return [
            edge for edge in self._exporters.get(plugin_id, ())
            if edge.exporter not in self.nodes and edge.exporter not in self.installed
        ]

    def cycles(self) -> list[list[str]]:
        """Strongly connected components that form a cycle.

        Uses an iterative Tarjan walk over batch nodes. A single node is
        a cycle only if it imports from itself.
        """
        index: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        on_stack: set[str] = set()
        stack: list[str] = []
        result: list[list[str]] = []
        counter = 0

        def successors(node: str) -> list[str]:
            return [e.exporter for e in self._exporters.get(node, ()) if e.exporter in self.nodes]

        for root in self.nodes:
            if root in index:
                continue
            work = [(root, iter(successors(root)))]
            index[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            while work:
                node, children = work[-1]
                advanced = False
                for child in children:
                    if child not in index:
                        index[child] = lowlink[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(successors(child))))
                        advanced = True
                        break
                    if child in on_stack:
                        lowlink[node] = min(lowlink[node], index[child])
                if advanced:
                    continue
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] == index[node]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1 or node in successors(node):
                        result.append(sorted(component, key=list(self.nodes).index))
        return result

    def topological_order(self, plugin_ids: Iterable[str]) -> list[str]:
        """Order *plugin_ids* so every exporter precedes its importers.

        Edges to plugins outside *plugin_ids* are ignored. Among plugins
        that are ready at the same time, input order wins.

        Raises:
            ValueError: If the subset still contains a cycle.
        """
        wanted = set(plugin_ids)
        members = [p for p in self.nodes if p in wanted]
        position = {p: i for i, p in enumerate(members)}
        pending: dict[str, int] = {p: 0 for p in members}
        importers: dict[str, list[str]] = defaultdict(list)
        for edge in self.edges:
            if edge.importer in position and edge.exporter in position:
                pending[edge.importer] += 1
                importers[edge.exporter].append(edge.importer)

        ready = [position[p] for p in members if pending[p] == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            plugin_id = members[heapq.heappop(ready)]
            order.append(plugin_id)
            for importer in importers[plugin_id]:
                pending[importer] -= 1
                if pending[importer] == 0:
                    heapq.heappush(ready, position[importer])

        if len(order) != len(members):
            stuck = [p for p in members if p not in order]
            raise ValueError(f"circular dependency among {stuck}")
        return order


class DependencyResolver:
    """Orders plugins and resolves their imports.

    Args:
        validators: Checks run on each plugin before admission, in order.
    """

    def __init__(self, validators: Sequence[PluginValidator] = ()):
        self._validators = list(validators)

    def resolve(
        self,
        plugins: Sequence[PreparedPlugin],
        installed: Mapping[str, InstalledPlugin] | None = None,
    ) -> ResolutionResult:
        """Resolve a batch of prepared plugins.

        Args:
            plugins: The batch, in discovery order.
            installed: Plugins published by earlier passes.

        Returns:
            ResolutionResult with the installable order and the rejects.
        """
        installed = dict(installed or {})
        result = ResolutionResult()
        rejected: dict[str, RejectedPlugin] = {}

        def reject(error: PluginError) -> None:
            logger.warning(f"Could not initialize plugin {error.plugin_id}: {error}")
            rejected.setdefault(error.plugin_id, RejectedPlugin.from_error(error))

        # duplicates share an identifier with a surviving plugin, so they
        # are recorded directly rather than through ``rejected``
        unique: list[PreparedPlugin] = []
        seen = set(installed)
        for plugin in plugins:
            if plugin.identifier in seen:
                error = PluginError(plugin.identifier, ReasonCode.DUPLICATE_IDENTIFIER,
                                    f"duplicate plugin identifier {plugin.identifier} found")
                logger.warning(f"Could not initialize plugin {plugin.identifier}: {error}")
                result.rejected.append(RejectedPlugin.from_error(error))
                continue
            seen.add(plugin.identifier)
            unique.append(plugin)

        graph = DependencyGraph(unique, installed)

        for plugin in unique:
            missing = graph.missing_exporters(plugin.identifier)
            if missing:
                edge = missing[0]
                reject(PluginError(
                    plugin.identifier,
                    ReasonCode.MISSING_PLUGIN,
                    f"required plugin {edge.exporter} not found",
                    service_name=edge.service.local_name,
                ))

        for component in graph.cycles():
            for member in component:
                reject(PluginError(
                    member,
                    ReasonCode.CYCLIC_DEPENDENCY,
                    "circular dependency: " + " -> ".join(component + [component[0]]),
                ))

        survivors = [p.identifier for p in unique if p.identifier not in rejected]
        available: dict[str, InstalledPlugin] = dict(installed)
        for plugin_id in graph.topological_order(survivors):
            plugin = graph.nodes[plugin_id]
            try:
                admitted = self.admit(plugin, available, known=graph.nodes)
            except PluginError as e:
                reject(e)
                continue
            available[plugin_id] = admitted
            result.installable.append(admitted)

        for plugin in unique:
            result.service_rejections.extend(plugin.service_rejections)
            if plugin.identifier in rejected:
                result.rejected.append(rejected[plugin.identifier])
        logger.debug(f"Resolved order: {result.order}, rejects: {[r.plugin_id for r in result.rejected]}")
        return result

    def admit(
        self,
        plugin: PreparedPlugin,
        available: Mapping[str, InstalledPlugin],
        known: Mapping[str, object] | None = None,
    ) -> InstalledPlugin:
        """Resolve one plugin's imports against *available* exporters.

        Args:
            plugin: The plugin to admit.
            available: Exporters already admitted.
            known: Every plugin of the pass, to tell a rejected exporter
                from one that never existed.

        Returns:
            The InstalledPlugin, validated and with imports resolved.

        Raises:
            PluginError: If any import or validator fails.
        """
        imports_grouped: dict[str, ServiceGroup] = {}
        for service in plugin.imports:
            resolved = resolve_import(plugin.identifier, service, available, known or {})
            group = imports_grouped.get(resolved.local_name)
            if group is None:
                group = imports_grouped[resolved.local_name] = ServiceGroup(name=resolved.local_name)
            try:
                group.add(resolved)
            except DuplicateVersionError as e:
                raise PluginError(plugin.identifier, ReasonCode.MALFORMED_DEFINITION, str(e),
                                  resolved.local_name, resolved.version) from e
            logger.debug(
                f"{plugin.identifier}: resolved import {resolved.source_plugin}:"
                f"{resolved.source_name}@{resolved.version_range} to {resolved.version}"
            )

        installed = InstalledPlugin(
            record=plugin.record,
            data_services_grouped={k: _copy_group(g) for k, g in plugin.data_services_grouped.items()},
            imports_grouped=imports_grouped,
        )
        for validator in self._validators:
            validator.validate(installed)
        return installed


def _copy_group(group: ServiceGroup) -> ServiceGroup:
    return ServiceGroup(name=group.name, versions=dict(group.versions), highest_version=group.highest_version)


def resolve_import(
    importer_id: str,
    service: ImportService,
    available: Mapping[str, InstalledPlugin],
    known: Mapping[str, object],
) -> ImportService:
    """Pick the concrete version an import binds to.

    Raises:
        PluginError: MISSING_PLUGIN, REQUIRED_PLUGIN_FAILED, MISSING_SERVICE
            or UNSATISFIABLE_VERSION_RANGE.
    """
    exporter = available.get(service.source_plugin)
    if exporter is None:
        if service.source_plugin in known:
            raise PluginError(importer_id, ReasonCode.REQUIRED_PLUGIN_FAILED,
                              f"required plugin {service.source_plugin} failed to load",
                              service.local_name)
        raise PluginError(importer_id, ReasonCode.MISSING_PLUGIN,
                          f"required plugin {service.source_plugin} not found",
                          service.local_name)

    group = exporter.data_services_grouped.get(service.source_name)
    if group is None:
        if service.source_name in exporter.imports_grouped:
            detail = f"{service.source_plugin}:{service.source_name} is itself an import"
        else:
            detail = f"{service.source_plugin} has no service {service.source_name}"
        raise PluginError(importer_id, ReasonCode.MISSING_SERVICE, detail,
                          service.local_name, service.version_range)

    chosen = max_satisfying(group.versions, service.version_range)
    if chosen is None:
        raise PluginError(
            importer_id,
            ReasonCode.UNSATISFIABLE_VERSION_RANGE,
            f"no version of {service.source_plugin}:{service.source_name} satisfies "
            f"{service.version_range} (available: {', '.join(sorted(group.versions))})",
            service.local_name,
            service.version_range,
        )
    return service.resolved(chosen)
