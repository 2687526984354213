"""Semantic version parsing and range checks."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

_VERSION_PATTERN = re.compile(
    r"^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?(?:-(?P<pre>[0-9A-Za-z.-]+))?$"
)
_EMBEDDED_VERSION_PATTERN = re.compile(r"(?P<version>\d+\.\d+\.\d+(?:-[a-z0-9]+)?)")
_PRERELEASE_CHUNK = re.compile(r"\d+|\D+")

type PrereleaseKey = tuple[tuple[tuple[int, int, str], ...], ...]


@dataclass(frozen=True, slots=True, order=True)
class Version:
    """A ``major.minor.patch`` version; pre-releases sort before their release."""

    major: int
    minor: int
    patch: int
    release_rank: int = 1
    prerelease_key: PrereleaseKey = field(default=(), repr=False)
    prerelease: str = field(default="", compare=False)

    def __str__(self) -> str:
        core = f"{self.major}.{self.minor}.{self.patch}"
        return f"{core}-{self.prerelease}" if self.prerelease else core

    @property
    def attr_suffix(self) -> str:
        """Version rendered for attribute names, e.g. ``8_13_4``."""
        return str(self).replace(".", "_")


def _prerelease_key(prerelease: str) -> PrereleaseKey:
    """Order dot-separated identifiers with digit runs compared numerically.

    ``rc9`` sorts before ``rc10``; an identifier that is a prefix of another sorts first.
    """
    if not prerelease:
        return ()
    return tuple(
        tuple(
            (0, int(chunk), "") if chunk.isdigit() else (1, 0, chunk)
            for chunk in _PRERELEASE_CHUNK.findall(identifier)
        )
        for identifier in prerelease.split(".")
    )


def parse_version(value: str) -> Version:
    """Parse ``value`` or raise ``ValueError``."""
    match = _VERSION_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"invalid version {value!r}: expected major.minor.patch")
    prerelease = match.group("pre") or ""
    return Version(
        major=int(match.group("major")),
        minor=int(match.group("minor") or 0),
        patch=int(match.group("patch") or 0),
        release_rank=0 if prerelease else 1,
        prerelease_key=_prerelease_key(prerelease),
        prerelease=prerelease,
    )


def is_valid_version(value: str) -> bool:
    """Return ``True`` when ``value`` parses as a version."""
    return _VERSION_PATTERN.match(value.strip()) is not None


def extract_version_string(text: str) -> str | None:
    """Find a ``x.y.z`` version inside a tag or release name."""
    normalized = text.replace(".Beta", "-beta").replace(".RC", "-rc")
    matches = _EMBEDDED_VERSION_PATTERN.findall(normalized)
    if not matches:
        return None
    return matches[-1]


def version_in_range(
    version: Version,
    *,
    min_version: Version | None = None,
    before_version: Version | None = None,
) -> bool:
    """Check ``min_version <= version < before_version``; absent bounds always pass."""
    if min_version is not None and version < min_version:
        return False
    if before_version is not None and version >= before_version:
        return False
    return True
