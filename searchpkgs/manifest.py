"""Version manifest loading: package specs per target system."""

from __future__ import annotations

import json
import logging
import os
import platform
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from searchpkgs.errors import ManifestError
from searchpkgs.hashing import parse_hash
from searchpkgs.logging_utils import log_event
from searchpkgs.versions import is_valid_version, parse_version

logger = logging.getLogger(__name__)

MANIFEST_ENV = "SEARCHPKGS_MANIFEST"
SYSTEM_ENV = "SEARCHPKGS_SYSTEM"
DEFAULT_MANIFEST_FILENAME = "packages.json"
_MACHINE_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "aarch64",
}


class PackageSpec(BaseModel):
    """One distributable package version for one target system."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    name: str = Field(validation_alias=AliasChoices("name", "pname"))
    version: str
    url: str
    hash: str = Field(validation_alias=AliasChoices("hash", "sha256"))
    system: str | None = None

    @field_validator("name", "url")
    @classmethod
    def _validate_nonempty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized

    @field_validator("version")
    @classmethod
    def _validate_version(cls, value: str) -> str:
        normalized = value.strip()
        if not is_valid_version(normalized):
            raise ValueError(f"invalid version {value!r}")
        return normalized

    @field_validator("hash")
    @classmethod
    def _validate_hash(cls, value: str) -> str:
        normalized = value.strip()
        parse_hash(normalized)
        return normalized

    @property
    def digest(self) -> bytes:
        """Expected SHA-256 digest of the fetched artifact."""
        return parse_hash(self.hash)


def host_system() -> str:
    """Return the running platform as ``<arch>-<os>``, e.g. ``x86_64-linux``."""
    machine = platform.machine().lower()
    arch = _MACHINE_ALIASES.get(machine, machine)
    return f"{arch}-{platform.system().lower()}"


def resolve_system(system: str | None) -> str:
    """Resolve target system from argument or environment."""
    if system is not None and system.strip():
        return system.strip()
    env_value = os.environ.get(SYSTEM_ENV)
    if env_value and env_value.strip():
        return env_value.strip()
    return host_system()


def resolve_manifest_path(manifest: Path | None) -> Path:
    """Resolve manifest file from argument or environment."""
    if manifest is not None:
        return manifest
    env_value = os.environ.get(MANIFEST_ENV)
    if env_value:
        return Path(env_value)
    return Path.cwd() / DEFAULT_MANIFEST_FILENAME


class Manifest:
    """Immutable table of package specs keyed by family name and version."""

    def __init__(
        self,
        entries: Iterable[PackageSpec] = (),
        *,
        system: str | None = None,
        source: Path | None = None,
    ) -> None:
        self.system = system
        self.source = source
        table: dict[str, dict[str, PackageSpec]] = {}
        for spec in entries:
            versions = table.setdefault(spec.name, {})
            existing = versions.get(spec.version)
            if existing is not None and existing != spec:
                raise ManifestError(
                    f"conflicting manifest entries for {spec.name} {spec.version}"
                )
            versions[spec.version] = spec
        self._table: Mapping[str, Mapping[str, PackageSpec]] = MappingProxyType(
            {name: MappingProxyType(versions) for name, versions in table.items()}
        )

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._table.values())

    def __contains__(self, name: object) -> bool:
        return name in self._table

    def families(self) -> list[str]:
        """Return the package family names in sorted order."""
        return sorted(self._table)

    def versions(self, name: str) -> list[str]:
        """Return the versions of a family, oldest first."""
        versions = self._table.get(name, {})
        return sorted(versions, key=parse_version)

    def get(self, name: str, version: str) -> PackageSpec | None:
        """Return the spec for ``(name, version)`` if declared."""
        versions = self._table.get(name)
        if versions is None:
            return None
        spec = versions.get(version)
        if spec is not None or not is_valid_version(version):
            return spec
        wanted = parse_version(version)
        for candidate, candidate_spec in versions.items():
            if parse_version(candidate) == wanted:
                return candidate_spec
        return None

    def entries(self) -> list[PackageSpec]:
        """Return every spec ordered by family and version."""
        return [self._table[name][version] for name in self.families() for version in self.versions(name)]


def _parse_records(
    records: Iterable[tuple[str, Any]],
    *,
    path: Path,
    system: str | None,
) -> list[PackageSpec]:
    specs: list[PackageSpec] = []
    for label, record in records:
        if not isinstance(record, dict):
            raise ManifestError(f"{path} entry {label} must be a mapping")
        data = {str(key): value for key, value in record.items()}
        if system is not None:
            data.setdefault("system", system)
        try:
            specs.append(PackageSpec.model_validate(data))
        except ValidationError as exc:
            raise ManifestError(f"{path} entry {label} is invalid: {exc}") from exc
    return specs


def parse_manifest_data(raw: Any, *, path: Path, system: str) -> Manifest:
    """Build a manifest from decoded JSON data.

    Two shapes are accepted: a list of ``{name, version, url, hash}`` records,
    or the generated mapping ``{system: {attr: {pname, version, url, sha256}}}``
    from which only ``system`` is read.
    """
    if isinstance(raw, list):
        specs = _parse_records(
            ((str(index), record) for index, record in enumerate(raw)),
            path=path,
            system=None,
        )
        return Manifest(specs, system=system, source=path)

    if not isinstance(raw, dict):
        raise ManifestError(f"{path} must contain a JSON list or mapping")

    packages = raw.get(system)
    if packages is None:
        log_event(
            logger,
            logging.WARNING,
            "manifest.system_missing",
            manifest=str(path),
            system=system,
            available=sorted(str(key) for key in raw),
        )
        return Manifest(system=system, source=path)
    if not isinstance(packages, dict):
        raise ManifestError(f"{path} field '{system}' must be a mapping")

    specs = _parse_records(
        ((f"{system}.{attr}", record) for attr, record in sorted(packages.items())),
        path=path,
        system=system,
    )
    return Manifest(specs, system=system, source=path)


def load_manifest(path: Path, *, system: str | None = None) -> Manifest:
    """Load the manifest file once into an immutable table."""
    target_system = resolve_system(system)
    if not path.exists():
        raise ManifestError(f"manifest not found: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ManifestError(f"could not read manifest {path}: {exc}") from exc

    manifest = parse_manifest_data(raw, path=path, system=target_system)
    log_event(
        logger,
        logging.DEBUG,
        "manifest.loaded",
        manifest=str(path),
        system=target_system,
        package_count=len(manifest),
    )
    return manifest
