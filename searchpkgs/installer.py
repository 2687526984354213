"""Staged, content-addressed installation of resolved packages."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shlex
import tarfile
import tempfile
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from time import perf_counter
from typing import Protocol
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx

from searchpkgs.config import (
    OUT_PLACEHOLDER,
    DerivedArtifactConfig,
    LauncherConfig,
    RewriteStep,
    SubstituteStep,
)
from searchpkgs.errors import (
    ArtifactNotInstalled,
    FetchError,
    InstallError,
    IntegrityError,
    OperationTimeout,
    PatchApplicationError,
)
from searchpkgs.fsutil import REPRODUCIBLE_MTIME, Deadline, mark_executable, normalize_tree, remove_tree
from searchpkgs.hashing import file_digest, to_sri
from searchpkgs.logging_utils import log_event
from searchpkgs.manifest import PackageSpec
from searchpkgs.resolver import ResolvedRecipe

logger = logging.getLogger(__name__)

STORE_ENV = "SEARCHPKGS_STORE"
FETCH_TIMEOUT_ENV = "SEARCHPKGS_FETCH_TIMEOUT"
DEFAULT_STORE_DIR = Path.home() / ".searchpkgs" / "store"
DEFAULT_FETCH_TIMEOUT = 300.0
METADATA_DIR = ".searchpkgs"
METADATA_FILENAME = "artifact.json"
EXPORTS_FILENAME = "env"
_CHUNK_SIZE = 1024 * 1024


def default_store_dir() -> Path:
    """Return default artifact store path."""
    return DEFAULT_STORE_DIR


def resolve_store_dir(store_dir: Path | None) -> Path:
    """Resolve artifact store from argument or environment."""
    if store_dir is not None:
        return store_dir
    env_value = os.environ.get(STORE_ENV)
    if env_value:
        return Path(env_value)
    return default_store_dir()


def resolve_fetch_timeout(timeout: float | None) -> float:
    """Resolve the fetch timeout in seconds from argument or environment."""
    if timeout is not None:
        return timeout
    raw = os.environ.get(FETCH_TIMEOUT_ENV)
    if raw is None or not raw.strip():
        return DEFAULT_FETCH_TIMEOUT
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{FETCH_TIMEOUT_ENV} must be a number of seconds, got {raw!r}") from exc


@dataclass(frozen=True, slots=True)
class DerivedArtifact:
    """Secondary output published through an environment-style export."""

    name: str
    path: Path
    export: str


@dataclass(frozen=True, slots=True)
class InstalledArtifact:
    """A read-only installed tree in the store."""

    name: str
    version: str
    path: Path
    hash: str
    recipe_identity: str
    launcher: LauncherConfig
    derived: tuple[DerivedArtifact, ...] = ()

    @property
    def exports(self) -> dict[str, str]:
        """Environment exports published by derived artifacts."""
        return {item.export: str(item.path) for item in self.derived}


def load_artifact(path: Path) -> InstalledArtifact:
    """Read an installed artifact back from its metadata file."""
    metadata_path = path / METADATA_DIR / METADATA_FILENAME
    try:
        raw = json.loads(metadata_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ArtifactNotInstalled(f"no installed artifact at {path}", package=path.name) from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise ArtifactNotInstalled(f"unreadable artifact metadata at {metadata_path}: {exc}", package=path.name) from exc

    return InstalledArtifact(
        name=str(raw["name"]),
        version=str(raw["version"]),
        path=path,
        hash=str(raw["hash"]),
        recipe_identity=str(raw["recipe_identity"]),
        launcher=LauncherConfig.model_validate(raw["launcher"]),
        derived=tuple(
            DerivedArtifact(name=str(item["name"]), path=Path(item["path"]), export=str(item["export"]))
            for item in raw.get("derived", [])
        ),
    )


class Fetcher(Protocol):
    """Downloads an artifact URL to a local file."""

    def fetch(self, url: str, destination: Path, *, timeout: float | None) -> None: ...


class DefaultFetcher:
    """Fetch ``http(s)`` URLs with httpx; ``file://`` URLs and plain paths by copy."""

    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client

    def fetch(self, url: str, destination: Path, *, timeout: float | None) -> None:
        parsed = urlparse(url)
        if parsed.scheme in {"http", "https"}:
            self._fetch_http(url, destination, timeout=timeout)
        elif parsed.scheme == "file":
            self._copy_local(Path(url2pathname(parsed.path)), destination, timeout=timeout)
        elif parsed.scheme == "":
            self._copy_local(Path(url).expanduser(), destination, timeout=timeout)
        else:
            raise ValueError(f"unsupported URL scheme {parsed.scheme!r}")

    def _copy_local(self, source: Path, destination: Path, *, timeout: float | None) -> None:
        deadline = Deadline(timeout, package=str(source))
        with source.open("rb") as reader, destination.open("wb") as handle:
            while chunk := reader.read(_CHUNK_SIZE):
                if deadline.expired():
                    raise TimeoutError(f"copy exceeded {timeout}s")
                handle.write(chunk)

    def _fetch_http(self, url: str, destination: Path, *, timeout: float | None) -> None:
        deadline = Deadline(timeout, package=url)
        client = self._client or httpx.Client(follow_redirects=True)
        try:
            with client.stream("GET", url, timeout=timeout) as response:
                response.raise_for_status()
                with destination.open("wb") as handle:
                    for chunk in response.iter_bytes(_CHUNK_SIZE):
                        if deadline.expired():
                            raise TimeoutError(f"download exceeded {timeout}s")
                        handle.write(chunk)
        finally:
            if self._client is None:
                client.close()


def _tar_members(archive: tarfile.TarFile, deadline: Deadline) -> Iterator[tarfile.TarInfo]:
    for member in archive:
        deadline.check("unpack")
        yield member


class StagedInstaller:
    """Build read-only artifacts into a store keyed by package hash and recipe."""

    def __init__(
        self,
        store_dir: Path,
        *,
        fetcher: Fetcher | None = None,
        timeout: float | None = None,
        read_only: bool = True,
    ) -> None:
        self.store_dir = store_dir
        self.fetcher = fetcher or DefaultFetcher()
        self.timeout = timeout
        self.read_only = read_only

    def store_key(self, spec: PackageSpec, recipe: ResolvedRecipe) -> str:
        """Content address of the ``(spec, recipe)`` pair."""
        material = f"{spec.digest.hex()}:{recipe.identity}".encode("ascii")
        return hashlib.sha256(material).hexdigest()[:32]

    def artifact_path(self, spec: PackageSpec, recipe: ResolvedRecipe) -> Path:
        return self.store_dir / f"{self.store_key(spec, recipe)}-{spec.name}-{spec.version}"

    def derived_path(
        self,
        spec: PackageSpec,
        recipe: ResolvedRecipe,
        derived: DerivedArtifactConfig,
    ) -> Path:
        return self.store_dir / f"{self.store_key(spec, recipe)}-{spec.name}-{spec.version}-{derived.name}"

    def lookup(self, spec: PackageSpec, recipe: ResolvedRecipe) -> InstalledArtifact | None:
        """Return the cached artifact when it and its derived outputs exist."""
        path = self.artifact_path(spec, recipe)
        if not (path / METADATA_DIR / METADATA_FILENAME).is_file():
            return None
        for derived in recipe.derived:
            if not self.derived_path(spec, recipe, derived).is_dir():
                return None
        return load_artifact(path)

    def install(
        self,
        spec: PackageSpec,
        recipe: ResolvedRecipe,
        *,
        timeout: float | None = None,
    ) -> InstalledArtifact:
        """Fetch, verify, patch and publish ``spec`` using ``recipe``."""
        cached = self.lookup(spec, recipe)
        if cached is not None:
            log_event(
                logger,
                logging.INFO,
                "installer.cache_hit",
                package=spec.name,
                version=spec.version,
                artifact=str(cached.path),
            )
            return cached

        started = perf_counter()
        deadline = Deadline(
            timeout if timeout is not None else self.timeout,
            package=spec.name,
            version=spec.version,
        )
        final_path = self.artifact_path(spec, recipe)
        self.store_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(
            tempfile.mkdtemp(prefix=f".tmp-{self.store_key(spec, recipe)}-", dir=self.store_dir)
        )
        try:
            archive = self._fetch(spec, work_dir, deadline)
            self._verify(spec, archive)
            source_dir = self._unpack(spec, archive, work_dir / "source", deadline)
            self._apply_replacements(spec, recipe.substitutions(), source_dir, final_path)
            output = work_dir / "out"
            self._assemble(spec, recipe, source_dir, output)
            if recipe.layout.executable_dir is not None:
                executable_dir = output / recipe.layout.executable_dir
                if executable_dir.is_dir():
                    mark_executable(executable_dir)
            self._apply_exclusions(spec, recipe, output)
            self._apply_replacements(spec, recipe.rewrites(), output, final_path)
            derived = self._build_derived(spec, recipe, output, final_path, work_dir)
            self._write_metadata(spec, recipe, output, derived)

            for staged, _, _ in derived:
                normalize_tree(staged, mtime=REPRODUCIBLE_MTIME, read_only=self.read_only)
            normalize_tree(output, mtime=REPRODUCIBLE_MTIME, read_only=self.read_only)

            for staged, target, _ in derived:
                self._publish(spec, staged, target)
            self._publish(spec, output, final_path)
        finally:
            remove_tree(work_dir)

        log_event(
            logger,
            logging.INFO,
            "installer.installed",
            package=spec.name,
            version=spec.version,
            artifact=str(final_path),
            duration_ms=int((perf_counter() - started) * 1000),
        )
        return load_artifact(final_path)

    def _fetch(self, spec: PackageSpec, work_dir: Path, deadline: Deadline) -> Path:
        archive = work_dir / "artifact"
        log_event(
            logger,
            logging.INFO,
            "installer.fetch_started",
            package=spec.name,
            version=spec.version,
            url=spec.url,
        )
        try:
            self.fetcher.fetch(spec.url, archive, timeout=deadline.remaining())
        except (httpx.TimeoutException, TimeoutError) as exc:
            raise OperationTimeout(
                f"fetching {spec.url} timed out",
                package=spec.name,
                version=spec.version,
            ) from exc
        except (httpx.HTTPError, OSError, ValueError) as exc:
            raise FetchError(
                f"could not fetch {spec.url}: {exc}",
                package=spec.name,
                version=spec.version,
            ) from exc
        deadline.check("fetch")
        return archive

    def _verify(self, spec: PackageSpec, archive: Path) -> None:
        actual = file_digest(archive)
        if actual != spec.digest:
            log_event(
                logger,
                logging.ERROR,
                "installer.integrity_failed",
                package=spec.name,
                version=spec.version,
                expected=spec.hash,
                actual=to_sri(actual),
            )
            raise IntegrityError(
                f"hash mismatch for {spec.url}: expected {spec.hash}, got {to_sri(actual)}",
                package=spec.name,
                version=spec.version,
                expected=spec.hash,
                actual=to_sri(actual),
            )

    def _unpack(self, spec: PackageSpec, archive: Path, destination: Path, deadline: Deadline) -> Path:
        destination.mkdir()
        try:
            with tarfile.open(archive, mode="r:*") as tar:
                tar.extractall(destination, members=_tar_members(tar, deadline), filter="data")
        except (tarfile.TarError, OSError) as exc:
            raise InstallError(
                f"could not unpack {spec.url}: {exc}",
                package=spec.name,
                version=spec.version,
            ) from exc

        entries = list(destination.iterdir())
        if len(entries) == 1 and entries[0].is_dir() and not entries[0].is_symlink():
            return entries[0]
        return destination

    def _apply_replacements(
        self,
        spec: PackageSpec,
        steps: Sequence[SubstituteStep | RewriteStep],
        root: Path,
        final_path: Path,
    ) -> None:
        for step in steps:
            target = root / step.file
            if not target.is_file():
                if step.optional:
                    log_event(
                        logger,
                        logging.DEBUG,
                        "installer.step_skipped",
                        package=spec.name,
                        version=spec.version,
                        step=step.type,
                        file=step.file,
                        reason="file_missing",
                    )
                    continue
                raise PatchApplicationError(
                    f"{step.type} target file '{step.file}' not found",
                    package=spec.name,
                    version=spec.version,
                )

            content = target.read_bytes()
            pattern = step.find.encode("utf-8")
            if pattern not in content:
                if step.optional:
                    log_event(
                        logger,
                        logging.DEBUG,
                        "installer.step_skipped",
                        package=spec.name,
                        version=spec.version,
                        step=step.type,
                        file=step.file,
                        reason="pattern_missing",
                    )
                    continue
                raise PatchApplicationError(
                    f"{step.type} pattern {step.find!r} not found in '{step.file}'",
                    package=spec.name,
                    version=spec.version,
                )

            replacement = step.replace.replace(OUT_PLACEHOLDER, str(final_path)).encode("utf-8")
            target.write_bytes(content.replace(pattern, replacement))

    def _assemble(self, spec: PackageSpec, recipe: ResolvedRecipe, source_dir: Path, output: Path) -> None:
        layout = recipe.layout
        if layout.directories is None:
            source_dir.rename(output)
            return

        output.mkdir()
        for directory in layout.directories:
            source = source_dir / directory
            if not source.is_dir():
                raise PatchApplicationError(
                    f"expected directory '{directory}' missing from distribution",
                    package=spec.name,
                    version=spec.version,
                )
            source.rename(output / directory)
        for directory in layout.optional_directories:
            source = source_dir / directory
            if source.is_dir():
                source.rename(output / directory)

    def _apply_exclusions(self, spec: PackageSpec, recipe: ResolvedRecipe, output: Path) -> None:
        for step in recipe.exclusions():
            target = output / step.path
            if not target.exists() and not target.is_symlink():
                log_event(
                    logger,
                    logging.DEBUG,
                    "installer.exclusion_absent",
                    package=spec.name,
                    version=spec.version,
                    path=step.path,
                )
                continue
            remove_tree(target)
            log_event(
                logger,
                logging.DEBUG,
                "installer.excluded",
                package=spec.name,
                version=spec.version,
                path=step.path,
            )

    def _build_derived(
        self,
        spec: PackageSpec,
        recipe: ResolvedRecipe,
        output: Path,
        final_path: Path,
        work_dir: Path,
    ) -> list[tuple[Path, Path, DerivedArtifactConfig]]:
        built: list[tuple[Path, Path, DerivedArtifactConfig]] = []
        for config in recipe.derived:
            staged = work_dir / f"derived-{config.name}"
            staged.mkdir()
            target = self.derived_path(spec, recipe, config)
            source = output / config.source_dir
            matches = sorted(
                (path for path in source.rglob(config.pattern) if path.is_file() and not path.is_symlink()),
                key=lambda path: path.relative_to(output).as_posix(),
            ) if source.is_dir() else []
            for match in matches:
                link = staged / match.name
                if link.is_symlink():
                    log_event(
                        logger,
                        logging.DEBUG,
                        "installer.derived_collision",
                        package=spec.name,
                        version=spec.version,
                        derived=config.name,
                        file=match.relative_to(output).as_posix(),
                    )
                    continue
                os.symlink(final_path / match.relative_to(output), link)

            exports_dir = staged / METADATA_DIR
            exports_dir.mkdir()
            (exports_dir / EXPORTS_FILENAME).write_text(
                f"export {config.export}={shlex.quote(str(target))}\n",
                encoding="utf-8",
            )
            built.append((staged, target, config))
        return built

    def _write_metadata(
        self,
        spec: PackageSpec,
        recipe: ResolvedRecipe,
        output: Path,
        derived: list[tuple[Path, Path, DerivedArtifactConfig]],
    ) -> None:
        metadata = {
            "name": spec.name,
            "version": spec.version,
            "url": spec.url,
            "hash": spec.hash,
            "system": spec.system,
            "recipe_identity": recipe.identity,
            "launcher": recipe.launcher.model_dump(mode="json"),
            "derived": [
                {"name": config.name, "path": str(target), "export": config.export}
                for _, target, config in derived
            ],
        }
        metadata_dir = output / METADATA_DIR
        metadata_dir.mkdir(exist_ok=True)
        (metadata_dir / METADATA_FILENAME).write_text(
            json.dumps(metadata, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )

    def _publish(self, spec: PackageSpec, staged: Path, target: Path) -> None:
        # Directory renames are atomic; a tree that already exists is an
        # identical build from a concurrent installer.
        staged.chmod(0o755)
        try:
            staged.rename(target)
        except OSError:
            if not target.exists():
                raise
            log_event(
                logger,
                logging.INFO,
                "installer.publish_raced",
                package=spec.name,
                version=spec.version,
                artifact=str(target),
            )
            return
        os.utime(target, (REPRODUCIBLE_MTIME, REPRODUCIBLE_MTIME))
        if self.read_only:
            target.chmod(0o555)
