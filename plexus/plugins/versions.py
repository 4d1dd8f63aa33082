"""
Semantic versions and npm-style version ranges.

Plugin definitions use semantic versions ("1.2.3", "2.0.0-rc.1") and the
range syntax plugin authors know from package manifests ("^1.0.0",
"~2.3", "1.x", ">=1.2.0 <2.0.0", "1.0.0 - 1.4.0", "^1.0.0 || ^2.0.0").

Versions are parsed and ordered with ``semver``, so precedence follows
SemVer 2.0.0: pre-release identifiers are compared one dot-separated field
at a time, numeric fields sort below alphanumeric ones, and build metadata
is ignored. A range is a union of comparator sets. A pre-release version
only matches a set that names a pre-release of the same major.minor.patch
("^1.0.0-rc.1" admits "1.0.0-rc.2" but not "1.1.0-beta").

Example:
    from plexus.plugins.versions import max_satisfying, satisfies

    satisfies("1.4.0", "^1.0.0")                     # True
    max_satisfying(["1.2.3", "4.5.6"], "^4.0.0")    # "4.5.6"
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable
import operator
import re

from semver import Version

_PARTIAL_RE = re.compile(
    r"^[vV=]?(\d+|[xX*])(?:\.(\d+|[xX*]))?(?:\.(\d+|[xX*]))?"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?(?:\+[0-9A-Za-z.-]+)?$"
)

_HYPHEN_RE = re.compile(r"^\s*(\S+)\s+-\s+(\S+)\s*$")

_OPERATOR_SPACE_RE = re.compile(r"(<=|>=|<|>|=|\^|~>?)\s+")

_COMPARATOR_RE = re.compile(r"^(<=|>=|<|>|=|\^|~>?)?(.*)$")

_OPERATORS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "=": operator.eq,
}

_ZERO = Version(0, 0, 0)


class InvalidVersion(ValueError):
    """Raised when a string is not a semantic version."""


class InvalidRangeError(ValueError):
    """Raised when a version range cannot be parsed."""


@lru_cache(maxsize=1024)
def parse_version(text: str) -> Version:
    """Parse a semantic version string.

    Raises:
        InvalidVersion: If *text* is not a valid semantic version.
    """
    if not isinstance(text, str):
        raise InvalidVersion(f"version must be a string, got {type(text).__name__}")
    try:
        return Version.parse(text.strip())
    except ValueError as e:
        raise InvalidVersion(f"'{text}' is not a semantic version") from e


def is_valid_version(text: object) -> bool:
    if not isinstance(text, str):
        return False
    try:
        parse_version(text)  # type: ignore[arg-type]
    except InvalidVersion:
        return False
    return True


def version_gt(left: str, right: str) -> bool:
    """Return True if *left* has higher precedence than *right*."""
    return parse_version(left).compare(parse_version(right)) > 0


def highest(versions: Iterable[str]) -> str | None:
    """Return the highest of *versions*, or None if empty."""
    best: str | None = None
    for candidate in versions:
        if best is None or version_gt(candidate, best):
            best = candidate
    return best


@dataclass(frozen=True)
class Comparator:
    """One ``<op> <version>`` clause of a comparator set."""

    op: str
    version: Version

    def test(self, version: Version) -> bool:
        return _OPERATORS[self.op](version.compare(self.version), 0)

    def __str__(self) -> str:
        return f"{self.op}{self.version}"


def _admits_prerelease(comparators: tuple[Comparator, ...], version: Version) -> bool:
    core = version.finalize_version()
    return any(
        c.version.prerelease and c.version.finalize_version().compare(core) == 0
        for c in comparators
    )


@dataclass(frozen=True)
class VersionRange:
    """A parsed range: a union of comparator sets."""

    raw: str
    alternatives: tuple[tuple[Comparator, ...], ...]

    def contains(self, version: str) -> bool:
        try:
            parsed = parse_version(version)
        except InvalidVersion:
            return False
        for comparators in self.alternatives:
            if not all(c.test(parsed) for c in comparators):
                continue
            if parsed.prerelease and not _admits_prerelease(comparators, parsed):
                continue
            return True
        return False

    def __str__(self) -> str:
        return self.raw


def _parse_partial(text: str) -> tuple[int | None, int | None, int | None, str | None]:
    match = _PARTIAL_RE.match(text)
    if not match:
        raise InvalidRangeError(f"'{text}' is not a version")
    parts: list[int | None] = []
    for group in match.groups()[:3]:
        if group is None or group in ("x", "X", "*"):
            parts.append(None)
        else:
            parts.append(int(group))
    major, minor, patch = parts
    # "1.x.3" is not meaningful
    if major is None and (minor is not None or patch is not None):
        raise InvalidRangeError(f"'{text}' has a wildcard before a number")
    if minor is None and patch is not None:
        raise InvalidRangeError(f"'{text}' has a wildcard before a number")
    return major, minor, patch, match.group(4)


def _fmt(major: int, minor: int = 0, patch: int = 0, pre: str | None = None) -> Version:
    text = f"{major}.{minor}.{patch}" + (f"-{pre}" if pre else "")
    try:
        return Version.parse(text)
    except ValueError as e:
        raise InvalidRangeError(f"'{text}' is not a semantic version") from e


def _comparator(token: str) -> list[Comparator]:
    """Translate one range token into primitive comparators."""
    op, operand = _COMPARATOR_RE.match(token).groups()  # type: ignore[union-attr]
    major, minor, patch, pre = _parse_partial(operand)

    if major is None:
        if op in ("<", ">"):
            # "<*" and ">*" match nothing
            return [Comparator("<", _ZERO), Comparator(">", _ZERO)]
        return []

    if op == "^":
        lower = _fmt(major, minor or 0, patch or 0, pre)
        if major > 0 or minor is None:
            upper = _fmt(major + 1)
        elif minor > 0 or patch is None:
            upper = _fmt(0, minor + 1)
        else:
            upper = _fmt(0, 0, patch + 1)
        return [Comparator(">=", lower), Comparator("<", upper)]

    if op in ("~", "~>"):
        lower = _fmt(major, minor or 0, patch or 0, pre)
        upper = _fmt(major + 1) if minor is None else _fmt(major, minor + 1)
        return [Comparator(">=", lower), Comparator("<", upper)]

    if op == ">":
        if minor is None:
            return [Comparator(">=", _fmt(major + 1))]
        if patch is None:
            return [Comparator(">=", _fmt(major, minor + 1))]
        return [Comparator(">", _fmt(major, minor, patch, pre))]

    if op == ">=":
        return [Comparator(">=", _fmt(major, minor or 0, patch or 0, pre))]

    if op == "<":
        return [Comparator("<", _fmt(major, minor or 0, patch or 0, pre))]

    if op == "<=":
        if minor is None:
            return [Comparator("<", _fmt(major + 1))]
        if patch is None:
            return [Comparator("<", _fmt(major, minor + 1))]
        return [Comparator("<=", _fmt(major, minor, patch, pre))]

    # bare or "=": exact when complete, x-range otherwise
    if minor is None:
        return [Comparator(">=", _fmt(major)), Comparator("<", _fmt(major + 1))]
    if patch is None:
        return [Comparator(">=", _fmt(major, minor)), Comparator("<", _fmt(major, minor + 1))]
    return [Comparator("=", _fmt(major, minor, patch, pre))]


def _comparator_set(text: str) -> tuple[Comparator, ...]:
    hyphen = _HYPHEN_RE.match(text)
    if hyphen:
        low, high = hyphen.groups()
        return tuple(_comparator(f">={low}") + _comparator(f"<={high}"))
    text = _OPERATOR_SPACE_RE.sub(r"\1", text.strip())
    comparators: list[Comparator] = []
    for token in text.split():
        comparators.extend(_comparator(token))
    return tuple(comparators)


@lru_cache(maxsize=1024)
def parse_range(text: str) -> VersionRange:
    """Parse an npm-style version range.

    Raises:
        InvalidRangeError: If *text* is not a valid range.
    """
    if not isinstance(text, str):
        raise InvalidRangeError(f"range must be a string, got {type(text).__name__}")
    alternatives = tuple(_comparator_set(part) for part in text.split("||"))
    return VersionRange(raw=text, alternatives=alternatives)


def is_valid_range(text: object) -> bool:
    if not isinstance(text, str):
        return False
    try:
        parse_range(text)  # type: ignore[arg-type]
    except InvalidRangeError:
        return False
    return True


def satisfies(version: str, range_text: str) -> bool:
    """Check whether *version* falls inside *range_text*."""
    try:
        return parse_range(range_text).contains(version)
    except InvalidRangeError:
        return False


def max_satisfying(versions: Iterable[str], range_text: str) -> str | None:
    """Return the highest version in *versions* inside the range, or None."""
    version_range = parse_range(range_text)
    return highest(v for v in versions if version_range.contains(v))
