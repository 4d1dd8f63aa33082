"""
Install passes.

PluginInstaller ties the pipeline together:

    parse -> prepare (classify + group) -> resolve (order + imports +
    local validation) -> compile routes -> publish one snapshot

``install_plugins`` handles a batch and never fails as a whole: every
problem ends up in the returned ResolutionResult. ``add_dynamic_plugin``
installs exactly one plugin against the published snapshot and is
all-or-nothing: on any failure the snapshot is left as it was and a
DynamicInstallError is raised.

A dynamically added plugin does not re-resolve plugins rejected earlier
for lacking it; reinstalling them is up to the caller.
"""

from typing import Any, Iterable, Sequence
import logging

from plexus.plugins.collaborators import ConfigurationSource
from plexus.plugins.definition import parse_plugin_definition
from plexus.plugins.depgraph import DependencyResolver, PluginValidator
from plexus.plugins.errors import DynamicInstallError, PluginError, ReasonCode, RejectedPlugin
from plexus.plugins.plugin import (
    InstalledPlugin,
    PluginEvent,
    PreparedPlugin,
    ResolutionResult,
    prepare_plugin,
)
from plexus.plugins.registry import PluginRegistry
from plexus.plugins.routing import Route, RouteCompiler
from plexus.plugins.validation import LocalRequirementValidator

logger = logging.getLogger(__name__)


class PluginInstaller:
    """Runs install passes and publishes their routing tables.

    Callers serialise install calls; the installer itself does not lock.

    Args:
        registry: Where snapshots are published.
        compiler: Builds routes for admitted plugins.
        config_source: Consulted while classifying services.
        validators: Checks run on each plugin before admission.
            Defaults to the local version-requirement check.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        compiler: RouteCompiler,
        config_source: ConfigurationSource | None = None,
        validators: Sequence[PluginValidator] | None = None,
    ):
        self.registry = registry
        self.compiler = compiler
        self.config_source = config_source
        if validators is None:
            validators = [LocalRequirementValidator()]
        self.resolver = DependencyResolver(validators)

    async def install_plugins(self, definitions: Iterable[Any]) -> ResolutionResult:
        """Install a batch of plugin definitions.

        Args:
            definitions: Raw definition dicts (or PluginRecords), in
                discovery order.

        Returns:
            The outcome: installed plugins in order plus every rejection.
        """
        early: list[RejectedPlugin] = []
        prepared: list[PreparedPlugin] = []
        for definition in definitions:
            try:
                record = parse_plugin_definition(definition)
                prepared.append(prepare_plugin(record, self.config_source))
            except PluginError as e:
                logger.warning(f"Could not initialize plugin {e.plugin_id}: {e}")
                early.append(RejectedPlugin.from_error(e))

        table = self.registry.table
        result = self.resolver.resolve(prepared, installed=table.plugins)
        result.rejected[:0] = early

        routes, failures = await self.compiler.compile(result.installable, base=table)
        result.route_failures.extend(failures)
        result.notifications.extend(self._installed_event("plugin_installed", p, routes)
                                    for p in result.installable)

        self.registry.record_rejections(result.rejected, result.service_rejections, result.route_failures)
        self.registry.publish(table.extend(result.installable, routes), result.notifications)
        logger.info(
            f"Installed {len(result.installable)} plugins, rejected {len(result.rejected)}: "
            f"{', '.join(result.order) or '-'}"
        )
        return result

    async def add_dynamic_plugin(self, definition: Any) -> list[Route]:
        """Install one plugin after startup.

        Args:
            definition: Raw definition dict (or PluginRecord).

        Returns:
            The routes added to the published table.

        Raises:
            DynamicInstallError: DYNAMIC_INSTALL_CONFLICT when the identifier
                is already installed, otherwise the reason of the first
                failure. The published table is left unchanged.
        """
        table = self.registry.table
        try:
            identifier = _identifier_of(definition)
            if identifier in table.plugins:
                raise PluginError(identifier, ReasonCode.DYNAMIC_INSTALL_CONFLICT,
                                  f"plugin {identifier} is already installed")
            record = parse_plugin_definition(definition)
            prepared = prepare_plugin(record, self.config_source, strict=True)
            known = {r.plugin_id: r for r in self.registry.get_rejected()}
            installed = self.resolver.admit(prepared, table.plugins, known=known)
            routes, failures = await self.compiler.compile_plugin(installed, table.index)
            if failures:
                failure = failures[0]
                raise PluginError(failure.plugin_id, failure.reason, failure.detail,
                                  failure.service_name, failure.version)
        except PluginError as e:
            logger.warning(f"Dynamic install failed: {e}")
            raise DynamicInstallError(e.plugin_id, e.reason, e.detail, e.service_name, e.version) from e

        event = self._installed_event("plugin_added", installed, routes)
        self.registry.publish(table.extend([installed], routes), [event])
        logger.info(f"Added plugin {installed.identifier} with {len(routes)} routes")
        return routes

    @staticmethod
    def _installed_event(event_type: str, plugin: InstalledPlugin, routes: Iterable[Route]) -> PluginEvent:
        return PluginEvent(
            event_type=event_type,
            plugin_id=plugin.identifier,
            details={
                "plugin_type": plugin.plugin_type.value,
                "routes": sum(1 for r in routes if r.plugin_id == plugin.identifier),
                "location": plugin.record.location,
            },
        )


def _identifier_of(definition: Any) -> str | None:
    if isinstance(definition, dict):
        identifier = definition.get("identifier")
        return identifier if isinstance(identifier, str) else None
    return getattr(definition, "identifier", None)
