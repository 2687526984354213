"""Generate ``packages.json`` from upstream release listings and artifact hashes."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from collections.abc import Callable, Iterable, Mapping
from itertools import product
from pathlib import Path
from typing import Any, Literal

import httpx

from searchpkgs.hashing import to_sri
from searchpkgs.logging_utils import log_event
from searchpkgs.versions import extract_version_string, is_valid_version, parse_version

logger = logging.getLogger(__name__)

Engine = Literal["elasticsearch", "opensearch", "quickwit"]
Arch = Literal["x86_64", "aarch64"]
OperatingSystem = Literal["linux", "darwin"]

ENGINES: tuple[Engine, ...] = ("elasticsearch", "opensearch", "quickwit")
ARCHES: tuple[Arch, ...] = ("x86_64", "aarch64")
OPERATING_SYSTEMS: tuple[OperatingSystem, ...] = ("linux", "darwin")

GITHUB_API_URL = "https://api.github.com"
GITHUB_TOKEN_ENV = "GITHUB_TOKEN"
DEFAULT_VERSIONS_FILENAME = "versions.json"
DEFAULT_CACHE_FILENAME = "manifest.json"
DEFAULT_PACKAGES_FILENAME = "packages.json"
_CHUNK_SIZE = 1024 * 1024
_PAGE_SIZE = 100

# (owner, repository, listing) per engine; tags carry Elasticsearch versions,
# release names carry the others.
_VERSION_SOURCES: dict[Engine, tuple[str, str, Literal["tags", "releases"]]] = {
    "elasticsearch": ("elastic", "elasticsearch", "tags"),
    "opensearch": ("opensearch-project", "OpenSearch", "releases"),
    "quickwit": ("quickwit-oss", "quickwit", "releases"),
}
_OPENSEARCH_ARCH = {"x86_64": "x64", "aarch64": "arm64"}
_QUICKWIT_OS = {"linux": "unknown-linux-gnu", "darwin": "apple-darwin"}

type EngineVersions = dict[str, list[str]]
type HashCache = dict[str, dict[str, dict[str, dict[str, dict[str, str]]]]]
type Hasher = Callable[[str, httpx.Client], str]


def build_download_url(engine: str, version: str, arch: str, os_name: str) -> str:
    """Return the upstream tarball URL for one engine build.

    OpenSearch only publishes linux ``-min`` tarballs; darwin systems are served
    the linux archive, whose launcher scripts and jars are platform independent.
    """
    if engine == "elasticsearch":
        base = "https://artifacts.elastic.co/downloads/elasticsearch"
        major = parse_version(version).major
        if major <= 1:
            return f"https://download.elastic.co/elasticsearch/elasticsearch/elasticsearch-{version}.tar.gz"
        if major <= 4:
            return (
                "https://download.elastic.co/elasticsearch/release/org/elasticsearch/distribution/tar/"
                f"elasticsearch/{version}/elasticsearch-{version}.tar.gz"
            )
        if major <= 6:
            return f"{base}/elasticsearch-{version}.tar.gz"
        if major == 7:
            return f"{base}/elasticsearch-{version}-{os_name}-x86_64.tar.gz"
        return f"{base}/elasticsearch-{version}-{os_name}-{arch}.tar.gz"

    if engine == "opensearch":
        return (
            f"https://artifacts.opensearch.org/releases/core/opensearch/{version}/"
            f"opensearch-min-{version}-linux-{_OPENSEARCH_ARCH[arch]}.tar.gz"
        )

    if engine == "quickwit":
        return (
            f"https://github.com/quickwit-oss/quickwit/releases/download/v{version}/"
            f"quickwit-v{version}-{arch}-{_QUICKWIT_OS[os_name]}.tar.gz"
        )

    raise ValueError(f"unknown engine {engine!r}")


def build_github_client(token: str | None = None) -> httpx.Client:
    """Create an HTTP client for the GitHub REST API."""
    resolved_token = token if token is not None else os.environ.get(GITHUB_TOKEN_ENV)
    headers = {
        "Accept": "application/vnd.github+json",
        "User-Agent": "searchpkgs",
    }
    if resolved_token:
        headers["Authorization"] = f"Bearer {resolved_token}"
    return httpx.Client(base_url=GITHUB_API_URL, headers=headers, follow_redirects=True, timeout=30.0)


def _iter_pages(client: httpx.Client, path: str) -> Iterable[Any]:
    url: str | None = path
    params: dict[str, int] | None = {"per_page": _PAGE_SIZE}
    while url is not None:
        response = client.get(url, params=params)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, list):
            raise ValueError(f"unexpected GitHub response for {path}: expected a list")
        yield from payload
        next_link = response.links.get("next")
        url = next_link.get("url") if next_link else None
        # the next link already carries the query string
        params = None


def fetch_engine_versions(engine: str, client: httpx.Client) -> list[str]:
    """List released versions of ``engine`` from GitHub, oldest first."""
    owner, repo, listing = _VERSION_SOURCES[engine]  # type: ignore[index]
    found: set[str] = set()
    for item in _iter_pages(client, f"/repos/{owner}/{repo}/{listing}"):
        if not isinstance(item, dict):
            continue
        label = item.get("name")
        if not isinstance(label, str) or not label:
            continue
        version = extract_version_string(label)
        if version is None or not is_valid_version(version):
            continue
        found.add(version)

    versions = sorted(found, key=parse_version)
    log_event(
        logger,
        logging.INFO,
        "manifest_builder.versions_fetched",
        engine=engine,
        listing=listing,
        version_count=len(versions),
    )
    return versions


def load_engine_versions(
    path: Path,
    *,
    refresh: bool = False,
    client: httpx.Client | None = None,
    engines: Iterable[str] = ENGINES,
) -> EngineVersions:
    """Read the version lists from ``path``, refreshing them from GitHub when needed."""
    selected = list(engines)
    if not refresh and path.exists():
        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"{path} must contain a JSON mapping of engine to versions")
        return {
            engine: [str(version) for version in raw.get(engine, [])]
            for engine in selected
        }

    if client is None:
        raise ValueError(f"{path} is missing and no GitHub client was given to refresh it")
    versions = {engine: fetch_engine_versions(engine, client) for engine in selected}

    merged: dict[str, Any] = {}
    if path.exists():
        existing = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(existing, dict):
            merged.update(existing)
    merged.update(versions)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(merged, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return versions


def compute_artifact_hash(url: str, client: httpx.Client) -> str:
    """Download ``url`` and return its SHA-256 in SRI form."""
    log_event(logger, logging.INFO, "manifest_builder.hash_started", url=url)
    digest = hashlib.sha256()
    with client.stream("GET", url) as response:
        response.raise_for_status()
        for chunk in response.iter_bytes(_CHUNK_SIZE):
            digest.update(chunk)
    return to_sri(digest.digest())


def load_hash_cache(path: Path) -> HashCache:
    """Load the resumable hash cache, or an empty one when absent."""
    if not path.exists():
        return {}
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a JSON mapping")
    return raw


def flush_hash_cache(path: Path, cache: Mapping[str, Any]) -> None:
    """Persist the hash cache; written after every new entry so runs can resume."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temporary = path.with_name(f".{path.name}.tmp")
    temporary.write_text(json.dumps(cache, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    temporary.replace(path)


def _cached_entry(cache: HashCache, engine: str, version: str, arch: str, os_name: str) -> dict[str, str] | None:
    return cache.get(engine, {}).get(version, {}).get(arch, {}).get(os_name)


def update_hash_cache(
    cache: HashCache,
    engine_versions: Mapping[str, Iterable[str]],
    *,
    client: httpx.Client,
    cache_path: Path | None = None,
    hasher: Hasher = compute_artifact_hash,
) -> int:
    """Hash every missing ``(engine, version, arch, os)`` artifact into ``cache``.

    Walks architectures and operating systems before versions so artifacts
    shared between systems are downloaded once. Returns the number of new
    entries.
    """
    added = 0
    for engine, versions in engine_versions.items():
        memo: dict[str, str] = {}
        for arch, os_name, version in product(ARCHES, OPERATING_SYSTEMS, list(versions)):
            if _cached_entry(cache, engine, version, arch, os_name) is not None:
                log_event(
                    logger,
                    logging.DEBUG,
                    "manifest_builder.entry_cached",
                    engine=engine,
                    version=version,
                    arch=arch,
                    os=os_name,
                )
                continue
            url = build_download_url(engine, version, arch, os_name)
            sri = memo.get(url)
            if sri is None:
                try:
                    sri = hasher(url, client)
                except httpx.HTTPError as exc:
                    log_event(
                        logger,
                        logging.WARNING,
                        "manifest_builder.hash_failed",
                        engine=engine,
                        version=version,
                        arch=arch,
                        os=os_name,
                        url=url,
                        error=str(exc),
                    )
                    continue
                memo[url] = sri

            cache.setdefault(engine, {}).setdefault(version, {}).setdefault(arch, {})[os_name] = {
                "sha256": sri,
                "url": url,
            }
            added += 1
            if cache_path is not None:
                flush_hash_cache(cache_path, cache)
    return added


def build_packages(cache: Mapping[str, Any]) -> dict[str, dict[str, dict[str, str]]]:
    """Project the hash cache into ``{system: {attr: {pname, version, url, sha256}}}``."""
    packages: dict[str, dict[str, dict[str, str]]] = {}
    for engine in sorted(cache):
        for version in sorted(cache[engine], key=parse_version):
            attr = f"{engine}_{parse_version(version).attr_suffix}"
            for arch, os_entries in sorted(cache[engine][version].items()):
                for os_name, details in sorted(os_entries.items()):
                    packages.setdefault(f"{arch}-{os_name}", {})[attr] = {
                        "pname": engine,
                        "version": version,
                        "url": details["url"],
                        "sha256": details["sha256"],
                    }
    return {system: packages[system] for system in sorted(packages)}


def write_packages(path: Path, packages: Mapping[str, Any]) -> None:
    """Write the generated manifest."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(packages, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    log_event(
        logger,
        logging.INFO,
        "manifest_builder.packages_written",
        output=str(path),
        system_count=len(packages),
    )
