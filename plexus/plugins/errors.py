"""
Error kinds for plugin resolution and installation.

Every rejection produced by the engine carries a ReasonCode, the plugin
identifier and, where it applies, the service name and version. Errors
raised while processing one plugin never abort a batch install; they are
converted into RejectedPlugin / ServiceRejection / RouteFailure records
and returned to the caller.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ReasonCode(str, Enum):
    """Why a plugin, service or route was rejected."""

    MALFORMED_DEFINITION = "MALFORMED_DEFINITION"
    DUPLICATE_IDENTIFIER = "DUPLICATE_IDENTIFIER"
    UNKNOWN_PLUGIN_TYPE = "UNKNOWN_PLUGIN_TYPE"
    INVALID_VERSION_STRING = "INVALID_VERSION_STRING"
    INVALID_VERSION_RANGE = "INVALID_VERSION_RANGE"
    MISSING_PLUGIN = "MISSING_PLUGIN"
    MISSING_SERVICE = "MISSING_SERVICE"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    UNSATISFIABLE_VERSION_RANGE = "UNSATISFIABLE_VERSION_RANGE"
    CYCLIC_DEPENDENCY = "CYCLIC_DEPENDENCY"
    REQUIRED_PLUGIN_FAILED = "REQUIRED_PLUGIN_FAILED"
    DYNAMIC_INSTALL_CONFLICT = "DYNAMIC_INSTALL_CONFLICT"
    ROUTE_COMPILATION_FAILURE = "ROUTE_COMPILATION_FAILURE"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    ReasonCode.MALFORMED_DEFINITION: "Malformed definition",
    ReasonCode.DUPLICATE_IDENTIFIER: "Duplicate plugin identifier",
    ReasonCode.UNKNOWN_PLUGIN_TYPE: "Unknown plugin type",
    ReasonCode.INVALID_VERSION_STRING: "Invalid version string",
    ReasonCode.INVALID_VERSION_RANGE: "Invalid version range",
    ReasonCode.MISSING_PLUGIN: "Required plugin not found",
    ReasonCode.MISSING_SERVICE: "Required service not found",
    ReasonCode.MISSING_DEPENDENCY: "Required local service missing",
    ReasonCode.UNSATISFIABLE_VERSION_RANGE: "No version satisfies the required range",
    ReasonCode.CYCLIC_DEPENDENCY: "Circular dependency",
    ReasonCode.REQUIRED_PLUGIN_FAILED: "Required plugin failed to load",
    ReasonCode.DYNAMIC_INSTALL_CONFLICT: "Plugin already registered",
    ReasonCode.ROUTE_COMPILATION_FAILURE: "Route could not be compiled",
}


class PluginError(Exception):
    """Raised when a plugin (or one of its services) cannot be installed.

    Attributes:
        plugin_id: Identifier of the affected plugin.
        reason: Machine readable reason code.
        detail: Human readable explanation.
        service_name: Affected service, if any.
        version: Affected version or range, if any.
    """

    def __init__(
        self,
        plugin_id: str,
        reason: ReasonCode,
        detail: str,
        service_name: str | None = None,
        version: str | None = None,
    ):
        self.plugin_id = plugin_id
        self.reason = reason
        self.detail = detail
        self.service_name = service_name
        self.version = version
        where = plugin_id if not service_name else f"{plugin_id}::{service_name}"
        super().__init__(f"{where}: {reason.description}: {detail}")


class DynamicInstallError(PluginError):
    """Raised when a dynamically added plugin is discarded."""


@dataclass(frozen=True)
class RejectedPlugin:
    """A plugin excluded from the installable order."""

    plugin_id: str
    reason: ReasonCode
    detail: str
    service_name: str | None = None
    version: str | None = None

    @classmethod
    def from_error(cls, error: PluginError) -> "RejectedPlugin":
        return cls(
            plugin_id=error.plugin_id,
            reason=error.reason,
            detail=error.detail,
            service_name=error.service_name,
            version=error.version,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "pluginId": self.plugin_id,
            "reason": self.reason.value,
            "description": self.reason.description,
            "detail": self.detail,
            "serviceName": self.service_name,
            "version": self.version,
        }


@dataclass(frozen=True)
class ServiceRejection(RejectedPlugin):
    """A single service dropped during classification or grouping.

    The owning plugin may still install with its remaining services.
    """


@dataclass(frozen=True)
class RouteFailure(RejectedPlugin):
    """A single route left out of the routing table.

    The rest of the plugin's routes are still published.
    """
