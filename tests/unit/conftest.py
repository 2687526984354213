"""Shared fixtures: synthetic distribution tarballs and resolved recipes."""

from __future__ import annotations

import hashlib
import io
import tarfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

import pytest

from searchpkgs.hashing import to_sri
from searchpkgs.manifest import PackageSpec
from searchpkgs.registry import BUNDLED_RECIPES_DIR, load_recipe_file
from searchpkgs.resolver import ResolvedRecipe, select_recipe

ES_VERSION = "8.13.4"

# path -> (content, mode); a ``None`` content marks a directory
ES_FILES: dict[str, tuple[bytes | None, int]] = {
    "bin/elasticsearch": (b"#!/bin/sh\nexec bin/elasticsearch-keystore has-passwd\n", 0o644),
    "bin/elasticsearch-env": (b'#!/bin/sh\nES_CLASSPATH="$ES_HOME/lib/*"\n', 0o644),
    "bin/elasticsearch-keystore": (b"#!/bin/sh\necho keystore\n", 0o644),
    "config/elasticsearch.yml": (b"cluster.name: fixture\n", 0o644),
    "config/jvm.options": (b"-Xms1g\n", 0o644),
    "lib/elasticsearch-8.13.4.jar": (b"core-jar", 0o644),
    "modules/transport/transport.jar": (b"transport-jar", 0o644),
    "modules/transport/NOTICE.txt": (b"notice", 0o644),
    "modules/x-pack-ml/x-pack-ml.jar": (b"ml-jar", 0o644),
    "modules/alpha/common.jar": (b"alpha-common", 0o644),
    "modules/beta/common.jar": (b"beta-common", 0o644),
    "plugins": (None, 0o755),
    "jdk/bin/java": (b"#!/bin/sh\necho java\n", 0o755),
    "logs": (None, 0o755),
    "NOTICE.txt": (b"top-level notice", 0o644),
}


@dataclass(frozen=True, slots=True)
class Distribution:
    """A tarball on disk plus the manifest values that describe it."""

    archive: Path
    hash: str

    @property
    def url(self) -> str:
        return self.archive.as_uri()

    def spec(self, name: str = "elasticsearch", version: str = ES_VERSION) -> PackageSpec:
        return PackageSpec(name=name, version=version, url=self.url, hash=self.hash, system="x86_64-linux")


def write_tarball(
    path: Path,
    files: Mapping[str, tuple[bytes | None, int]],
    *,
    top: str | None = "dist",
) -> Distribution:
    """Write a gzip tarball with fixed metadata and return it with its SRI hash."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode="w:gz") as tar:
        for relative, (content, mode) in sorted(files.items()):
            member_name = relative if top is None else f"{top}/{relative}"
            info = tarfile.TarInfo(member_name)
            info.mtime = 1_700_000_000
            info.mode = mode
            if content is None:
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            else:
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
    digest = hashlib.sha256(path.read_bytes()).digest()
    return Distribution(archive=path, hash=to_sri(digest))


@pytest.fixture
def make_distribution(tmp_path: Path) -> Callable[..., Distribution]:
    """Build a distribution from ``ES_FILES`` with optional overrides and removals."""

    def _make(
        *,
        name: str = "elasticsearch.tar.gz",
        extra: Mapping[str, tuple[bytes | None, int]] | None = None,
        without: tuple[str, ...] = (),
        files: Mapping[str, tuple[bytes | None, int]] | None = None,
        top: str | None = f"elasticsearch-{ES_VERSION}",
    ) -> Distribution:
        selected = dict(ES_FILES if files is None else files)
        for prefix in without:
            selected = {
                key: value
                for key, value in selected.items()
                if key != prefix and not key.startswith(f"{prefix}/")
            }
        selected.update(extra or {})
        return write_tarball(tmp_path / "dists" / name, selected, top=top)

    return _make


@pytest.fixture
def es_recipe() -> ResolvedRecipe:
    config = load_recipe_file(BUNDLED_RECIPES_DIR / "elasticsearch" / "recipe.yaml", folder_name="elasticsearch")
    return select_recipe(config, ES_VERSION)


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "store"

