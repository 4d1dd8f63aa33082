"""Per-service configuration read from JSON files.

Layout under every configuration root::

    <root>/plugins/<pluginId>/<file>.json                        plugin level
    <root>/plugins/<pluginId>/services/<serviceName>/<file>.json service level

Configuration is returned keyed by file name (``{"remote.json": {...}}``).
Several roots may be layered, lowest precedence first; a file present in
more than one root is deep-merged with the later root winning.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger(__name__)


class FileConfigurationSource:
    """ConfigurationSource backed by JSON files on disk."""

    def __init__(self, roots: str | Path | Iterable[str | Path]):
        if isinstance(roots, (str, Path)):
            roots = [roots]
        self.roots = [Path(r) for r in roots]

    def get_service_configuration(self, plugin_id: str, service_name: str | None) -> dict[str, Any]:
        """Configuration files for one service, or the plugin when *service_name* is None.

        Missing directories yield ``{}``. Unreadable files are logged and skipped.
        """
        configuration: dict[str, Any] = {}
        for root in self.roots:
            directory = root / "plugins" / plugin_id
            if service_name is not None:
                directory = directory / "services" / service_name
            for name, content in _read_directory(directory).items():
                if isinstance(configuration.get(name), dict) and isinstance(content, dict):
                    configuration[name] = _deep_merge(configuration[name], content)
                else:
                    configuration[name] = content
        return configuration


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _read_directory(directory: Path) -> dict[str, Any]:
    if not directory.is_dir():
        return {}
    files: dict[str, Any] = {}
    for path in sorted(directory.glob("*.json")):
        if not path.is_file():
            continue
        try:
            files[path.name] = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Skipping unreadable configuration file %s: %s", path, e)
    return files


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into *base*. Lists are replaced, not appended."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
