"""Pydantic models for plugin definitions (pluginDefinition.json).

A plugin definition is supplied by the Definition Loader as a plain dict
with camelCase keys. ``parse_plugin_definition`` validates the plugin-level
fields into an immutable PluginRecord. Service entries stay raw at this
stage: each one is validated on its own by the service classifier so a bad
service rejects only itself, never its plugin.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from plexus.plugins.errors import PluginError, ReasonCode


class PluginType(str, Enum):
    """Closed set of plugin kinds."""

    LIBRARY = "library"
    APPLICATION = "application"
    WINDOW_MANAGER = "windowManager"
    BOOTSTRAP = "bootstrap"
    DESKTOP = "desktop"
    AUTHENTICATION = "nodeAuthentication"
    PROXY_CONNECTOR = "proxyConnector"


class ServiceDeclaration(BaseModel):
    """One raw entry of a plugin's ``dataServices`` list."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    type: str = Field(..., min_length=1)
    name: str | None = None
    version: str | None = None
    version_range: str | None = Field(default=None, alias="versionRange")
    version_requirements: dict[str, str] | None = Field(default=None, alias="versionRequirements")
    source_plugin: str | None = Field(default=None, alias="sourcePlugin")
    source_name: str | None = Field(default=None, alias="sourceName")
    local_name: str | None = Field(default=None, alias="localName")
    host: str | None = None
    port: int | None = None
    url_prefix: str | None = Field(default=None, alias="urlPrefix")
    is_https: bool = Field(default=False, alias="isHttps")
    filename: str | None = Field(default=None, validation_alias=AliasChoices("filename", "fileName"))
    router_factory: str | None = Field(default=None, alias="routerFactory")
    http_caching: bool | None = Field(default=None, alias="httpCaching")
    authorization: dict[str, Any] | None = None

    @field_validator("name", "source_plugin", "source_name", "local_name")
    @classmethod
    def _no_slashes(cls, v: str | None) -> str | None:
        if v is not None and ("/" in v or not v.strip()):
            raise ValueError(f"'{v}' cannot be used in a URL segment")
        return v


class PluginRecord(BaseModel):
    """A validated, immutable plugin definition."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")

    identifier: str = Field(..., min_length=1)
    api_version: str = Field(..., min_length=1, alias="apiVersion")
    plugin_version: str = Field(..., min_length=1, alias="pluginVersion")
    plugin_type: PluginType = Field(..., alias="pluginType")
    data_services: tuple[Any, ...] = Field(default=(), alias="dataServices")
    web_content: dict[str, Any] | None = Field(default=None, alias="webContent")
    location: str = "."
    host: str | None = None
    port: int | None = None
    filename: str | None = Field(default=None, validation_alias=AliasChoices("filename", "fileName"))
    authentication_category: str | None = Field(default=None, alias="authenticationCategory")
    authentication_categories: list[str] | None = Field(default=None, alias="authenticationCategories")

    @field_validator("identifier")
    @classmethod
    def _identifier_is_url_safe(cls, v: str) -> str:
        if "/" in v or v != v.strip():
            raise ValueError(f"identifier '{v}' cannot be used in a URL segment")
        return v

    def export_def(self) -> dict[str, Any]:
        """Definition as exposed to services and introspection endpoints."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        data.pop("location", None)
        return data

    def __str__(self) -> str:
        return f"[Plugin {self.identifier}]"


def parse_plugin_definition(raw: Any) -> PluginRecord:
    """Validate a raw plugin definition dict.

    Raises:
        PluginError: MALFORMED_DEFINITION or UNKNOWN_PLUGIN_TYPE.
    """
    if isinstance(raw, PluginRecord):
        return raw
    if not isinstance(raw, dict):
        raise PluginError("<unknown>", ReasonCode.MALFORMED_DEFINITION, "definition is not an object")

    identifier = raw.get("identifier")
    plugin_id = identifier if isinstance(identifier, str) and identifier else "<unknown>"

    plugin_type = raw.get("pluginType")
    if isinstance(plugin_type, str) and plugin_type not in {t.value for t in PluginType}:
        raise PluginError(
            plugin_id,
            ReasonCode.UNKNOWN_PLUGIN_TYPE,
            f"pluginType {plugin_type} is unknown",
        )

    try:
        record = PluginRecord.model_validate(raw)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise PluginError(plugin_id, ReasonCode.MALFORMED_DEFINITION, f"invalid fields: {fields}") from e

    if record.plugin_type is PluginType.AUTHENTICATION:
        if not record.filename or not (record.authentication_category or record.authentication_categories):
            raise PluginError(
                plugin_id,
                ReasonCode.MALFORMED_DEFINITION,
                "authentication plugins need a filename and an authenticationCategory",
            )
    return record
