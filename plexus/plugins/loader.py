"""
Plugin definition discovery and service module loading for Plexus.

Plugin Discovery:
    A plugins directory holds one pointer file per plugin::

        plugins/
            org.example.hello.json   {"identifier": "org.example.hello",
                                      "pluginLocation": "../hello"}

    The pointer names the plugin directory, which holds
    ``pluginDefinition.json``. Relative locations resolve against the
    pointer's directory. The definition's identifier must match the
    pointer's and ``pluginType`` must be present.

Service Modules:
    Router and legacy services name a file under ``<location>/lib/``.
    PythonModuleLoader imports it on first use and caches the module.

Example:
    from plexus.plugins.loader import DefinitionLoader

    loader = DefinitionLoader("./plugins")
    definitions, errors = loader.load()
    for error in errors:
        print(f"Skipped: {error}")
"""

from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Iterable
import importlib.util
import json
import logging
import re
import sys

logger = logging.getLogger(__name__)

DEFINITION_FILE = "pluginDefinition.json"


class DefinitionLoadError(Exception):
    """Raised when a plugin definition cannot be read.

    Attributes:
        identifier: Identifier from the pointer file, if it got that far.
        location: Pointer file or plugin directory that failed.
        reason: Reason for the failure.
    """

    def __init__(self, identifier: str | None, location: str, reason: str):
        self.identifier = identifier
        self.location = location
        self.reason = reason
        super().__init__(f"Failed to load plugin '{identifier or location}': {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {"identifier": self.identifier, "location": self.location, "reason": self.reason}


@dataclass(frozen=True)
class PluginPointer:
    """Contents of one pointer file."""

    identifier: str
    plugin_location: Path
    pointer_path: Path


class DefinitionLoader:
    """Reads plugin definitions from a plugins directory.

    Attributes:
        plugins_dir: Directory scanned for ``*.json`` pointer files.

    Example:
        loader = DefinitionLoader("./plugins")
        definitions, errors = loader.load()
        new_definitions, _ = loader.read_new(known_ids={"org.example.hello"})
    """

    def __init__(self, plugins_dir: str | Path):
        """Initialize the loader.

        Args:
            plugins_dir: Directory of pointer files.
        """
        self.plugins_dir = Path(plugins_dir)

    def pointers(self) -> tuple[list[PluginPointer], list[DefinitionLoadError]]:
        """Parse every pointer file, sorted by file name."""
        pointers: list[PluginPointer] = []
        errors: list[DefinitionLoadError] = []
        if not self.plugins_dir.is_dir():
            logger.warning(f"Plugins directory does not exist: {self.plugins_dir}")
            return pointers, errors

        logger.info(f"Scanning for plugins in: {self.plugins_dir}")
        for path in sorted(self.plugins_dir.glob("*.json")):
            try:
                pointers.append(self._read_pointer(path))
            except DefinitionLoadError as e:
                logger.warning(str(e))
                errors.append(e)
        return pointers, errors

    def _read_pointer(self, path: Path) -> PluginPointer:
        data = _read_json(path, None)
        identifier = data.get("identifier")
        location = data.get("pluginLocation")
        if not isinstance(identifier, str) or not identifier:
            raise DefinitionLoadError(None, str(path), "pointer has no identifier")
        if not isinstance(location, str) or not location:
            raise DefinitionLoadError(identifier, str(path), "pointer has no pluginLocation")
        plugin_location = Path(location)
        if not plugin_location.is_absolute():
            plugin_location = (path.parent / plugin_location).resolve()
        return PluginPointer(identifier, plugin_location, path)

    def read_definition(self, pointer: PluginPointer) -> dict[str, Any]:
        """Read and check the definition a pointer refers to.

        Returns:
            The raw definition dict, with ``location`` set.

        Raises:
            DefinitionLoadError: If the definition is missing or inconsistent.
        """
        definition = _read_json(pointer.plugin_location / DEFINITION_FILE, pointer.identifier)
        if definition.get("identifier") != pointer.identifier:
            raise DefinitionLoadError(
                pointer.identifier,
                str(pointer.plugin_location),
                f"identifier {definition.get('identifier')!r} does not match pointer",
            )
        if not definition.get("pluginType"):
            raise DefinitionLoadError(pointer.identifier, str(pointer.plugin_location),
                                      "definition has no pluginType")
        definition["location"] = str(pointer.plugin_location)
        return definition

    def load(self) -> tuple[list[dict[str, Any]], list[DefinitionLoadError]]:
        """Read every plugin definition.

        Returns:
            (definitions, errors). A failing plugin never stops the scan.
        """
        return self.read_new(known_ids=())

    def read_new(self, known_ids: Iterable[str]) -> tuple[list[dict[str, Any]], list[DefinitionLoadError]]:
        """Read only definitions whose identifier is not in *known_ids*."""
        known = set(known_ids)
        pointers, errors = self.pointers()
        definitions = []
        for pointer in pointers:
            if pointer.identifier in known:
                continue
            try:
                definitions.append(self.read_definition(pointer))
            except DefinitionLoadError as e:
                logger.warning(str(e))
                errors.append(e)
        logger.info(f"Read {len(definitions)} plugin definitions ({len(errors)} failed)")
        return definitions, errors


def _read_json(path: Path, identifier: str | None) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise DefinitionLoadError(identifier, str(path), "file not found") from e
    except (OSError, json.JSONDecodeError) as e:
        raise DefinitionLoadError(identifier, str(path), f"could not read JSON: {e}") from e
    if not isinstance(data, dict):
        raise DefinitionLoadError(identifier, str(path), "expected a JSON object")
    return data


class PythonModuleLoader:
    """Imports service implementation modules from plugin directories."""

    def __init__(self):
        self._modules: dict[Path, ModuleType] = {}

    def load_module(self, location: str, filename: str) -> ModuleType:
        """Import ``<location>/lib/<filename>``.

        A directory is imported as a package from its ``__init__.py``.
        Results are cached by resolved path.

        Raises:
            ImportError: If the file does not exist or cannot be imported.
        """
        path = (Path(location) / "lib" / filename).resolve()
        if path in self._modules:
            return self._modules[path]

        target = path / "__init__.py" if path.is_dir() else path
        if not target.is_file():
            raise ImportError(f"service module not found: {path}")

        module_name = "plexus_service_" + re.sub(r"\W", "_", str(path))
        spec = importlib.util.spec_from_file_location(
            module_name,
            target,
            submodule_search_locations=[str(path)] if path.is_dir() else None,
        )
        if spec is None or spec.loader is None:
            raise ImportError(f"cannot import {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            raise
        logger.info(f"Loaded service module {path}")
        self._modules[path] = module
        return module
