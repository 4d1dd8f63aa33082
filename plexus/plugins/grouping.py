"""Grouping of same-named services by version."""

from dataclasses import dataclass, field
from typing import Callable, Iterable

from plexus.plugins.services import ServiceRecord, service_key
from plexus.plugins.versions import version_gt


class DuplicateVersionError(ValueError):
    """Raised when a group already holds a record for a version."""

    def __init__(self, name: str, version: str):
        self.name = name
        self.version = version
        super().__init__(f"{name}@{version} is declared more than once")


@dataclass
class ServiceGroup:
    """All versions of one service name, plus the cached highest version.

    Attributes:
        name: The service name (or import local name).
        versions: Version string -> service record.
        highest_version: Semantic-version maximum of ``versions``.
    """

    name: str
    versions: dict[str, ServiceRecord] = field(default_factory=dict)
    highest_version: str | None = None

    def add(self, record: ServiceRecord) -> None:
        """Insert a record under its version key.

        Raises:
            DuplicateVersionError: If the version is already present.
        """
        version = record.version
        if version is None:
            raise ValueError(f"{self.name}: cannot group a record without a version")
        if version in self.versions:
            raise DuplicateVersionError(self.name, version)
        self.versions[version] = record
        if self.highest_version is None or version_gt(version, self.highest_version):
            self.highest_version = version

    def replace(self, record: ServiceRecord) -> None:
        """Swap the record stored for an existing version."""
        if record.version not in self.versions:
            raise KeyError(record.version)
        self.versions[record.version] = record

    @property
    def current(self) -> ServiceRecord | None:
        if self.highest_version is None:
            return None
        return self.versions[self.highest_version]

    def __contains__(self, version: object) -> bool:
        return version in self.versions

    def __len__(self) -> int:
        return len(self.versions)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "highestVersion": self.highest_version,
            "versions": sorted(self.versions),
        }


def group_services(
    records: Iterable[ServiceRecord],
    key: Callable[[ServiceRecord], str] = service_key,
) -> dict[str, ServiceGroup]:
    """Group records by name.

    Raises:
        DuplicateVersionError: On the first repeated (name, version).
    """
    groups: dict[str, ServiceGroup] = {}
    for record in records:
        name = key(record)
        group = groups.get(name)
        if group is None:
            group = groups[name] = ServiceGroup(name=name)
        group.add(record)
    return groups
