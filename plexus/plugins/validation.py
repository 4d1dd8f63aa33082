"""Local version-requirement validation.

A service may declare ``versionRequirements``: sibling service name to
version range. Siblings are looked up first among the plugin's own
services, then among its resolved imports. A satisfied requirement is
pinned to the highest satisfying concrete version so that later handle
injection binds to exactly that version.
"""

from dataclasses import replace
import logging

from plexus.plugins.errors import PluginError, ReasonCode
from plexus.plugins.plugin import InstalledPlugin
from plexus.plugins.versions import max_satisfying

logger = logging.getLogger(__name__)


class LocalRequirementValidator:
    """Checks and pins every local version requirement of a plugin.

    Pinned requirements are concrete versions, which are valid ranges
    matching only themselves, so validating a pinned plugin again
    changes nothing.
    """

    def validate(self, plugin: InstalledPlugin) -> None:
        """Validate *plugin* in place.

        Raises:
            PluginError: MISSING_DEPENDENCY when a required sibling does not
                exist, UNSATISFIABLE_VERSION_RANGE when no version of it
                satisfies the range.
        """
        for group in plugin.groups():
            for version, service in list(group.versions.items()):
                requirements = service.version_requirements
                if not requirements:
                    continue
                pinned = {}
                for required, version_range in requirements.items():
                    sibling = plugin.data_services_grouped.get(required)
                    if sibling is None:
                        sibling = plugin.imports_grouped.get(required)
                    if sibling is None:
                        raise PluginError(
                            plugin.identifier,
                            ReasonCode.MISSING_DEPENDENCY,
                            f"{group.name}@{version} requires {required}, which is not "
                            f"a service or import of this plugin",
                            group.name,
                            version,
                        )
                    chosen = max_satisfying(sibling.versions, version_range)
                    if chosen is None:
                        raise PluginError(
                            plugin.identifier,
                            ReasonCode.UNSATISFIABLE_VERSION_RANGE,
                            f"{group.name}@{version} requires {required} {version_range}, "
                            f"available: {', '.join(sorted(sibling.versions))}",
                            group.name,
                            version_range,
                        )
                    pinned[required] = chosen

                if pinned != requirements:
                    logger.debug(f"{plugin.identifier}: pinned {group.name}@{version} requirements to {pinned}")
                    group.replace(replace(service, version_requirements=pinned))
