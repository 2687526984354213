"""Unit tests for manifest generation from upstream releases."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path

import httpx
import pytest

from searchpkgs.hashing import to_sri
from searchpkgs.manifest import load_manifest
from searchpkgs.manifest_builder import (
    GITHUB_TOKEN_ENV,
    build_download_url,
    build_github_client,
    build_packages,
    compute_artifact_hash,
    fetch_engine_versions,
    load_engine_versions,
    load_hash_cache,
    update_hash_cache,
    write_packages,
)


@pytest.mark.parametrize(
    ("engine", "version", "arch", "os_name", "expected"),
    [
        (
            "elasticsearch",
            "0.90.13",
            "x86_64",
            "linux",
            "https://download.elastic.co/elasticsearch/elasticsearch/elasticsearch-0.90.13.tar.gz",
        ),
        (
            "elasticsearch",
            "2.4.6",
            "aarch64",
            "darwin",
            "https://download.elastic.co/elasticsearch/release/org/elasticsearch/distribution/tar/"
            "elasticsearch/2.4.6/elasticsearch-2.4.6.tar.gz",
        ),
        (
            "elasticsearch",
            "6.8.23",
            "x86_64",
            "linux",
            "https://artifacts.elastic.co/downloads/elasticsearch/elasticsearch-6.8.23.tar.gz",
        ),
        (
            "elasticsearch",
            "7.17.0",
            "aarch64",
            "darwin",
            "https://artifacts.elastic.co/downloads/elasticsearch/elasticsearch-7.17.0-darwin-x86_64.tar.gz",
        ),
        (
            "elasticsearch",
            "8.13.4",
            "aarch64",
            "linux",
            "https://artifacts.elastic.co/downloads/elasticsearch/elasticsearch-8.13.4-linux-aarch64.tar.gz",
        ),
        (
            "opensearch",
            "2.11.1",
            "aarch64",
            "linux",
            "https://artifacts.opensearch.org/releases/core/opensearch/2.11.1/opensearch-min-2.11.1-linux-arm64.tar.gz",
        ),
        (
            "opensearch",
            "2.11.1",
            "x86_64",
            "darwin",
            "https://artifacts.opensearch.org/releases/core/opensearch/2.11.1/opensearch-min-2.11.1-linux-x64.tar.gz",
        ),
        (
            "quickwit",
            "0.8.1",
            "aarch64",
            "darwin",
            "https://github.com/quickwit-oss/quickwit/releases/download/v0.8.1/quickwit-v0.8.1-aarch64-apple-darwin.tar.gz",
        ),
        (
            "quickwit",
            "0.8.1",
            "x86_64",
            "linux",
            "https://github.com/quickwit-oss/quickwit/releases/download/v0.8.1/quickwit-v0.8.1-x86_64-unknown-linux-gnu.tar.gz",
        ),
    ],
)
def test_build_download_url(engine: str, version: str, arch: str, os_name: str, expected: str) -> None:
    assert build_download_url(engine, version, arch, os_name) == expected


def test_build_download_url_rejects_unknown_engine() -> None:
    with pytest.raises(ValueError, match="unknown engine"):
        build_download_url("solr", "9.5.0", "x86_64", "linux")


def test_github_client_sends_token_when_available(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(GITHUB_TOKEN_ENV, raising=False)
    with build_github_client() as anonymous:
        assert "Authorization" not in anonymous.headers

    monkeypatch.setenv(GITHUB_TOKEN_ENV, "secret")
    with build_github_client() as authenticated:
        assert authenticated.headers["Authorization"] == "Bearer secret"
        assert str(authenticated.base_url).startswith("https://api.github.com")


def test_fetch_engine_versions_follows_pagination() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.params.get("page") == "2":
            return httpx.Response(200, json=[{"name": "v8.13.4"}, {"name": "v8.0.0"}])
        return httpx.Response(
            200,
            json=[{"name": "v8.0.0"}, {"name": "v7.17.0"}, {"name": "nightly"}, {"name": None}],
            headers={
                "Link": '<https://api.github.com/repos/elastic/elasticsearch/tags?per_page=100&page=2>; rel="next"'
            },
        )

    client = httpx.Client(base_url="https://api.github.com", transport=httpx.MockTransport(handler))

    versions = fetch_engine_versions("elasticsearch", client)

    assert versions == ["7.17.0", "8.0.0", "8.13.4"]
    assert seen == ["/repos/elastic/elasticsearch/tags", "/repos/elastic/elasticsearch/tags"]


def test_fetch_engine_versions_reads_release_names() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/quickwit-oss/quickwit/releases"
        return httpx.Response(200, json=[{"name": "Quickwit v0.8.1"}, {"name": "Quickwit 0.7.0.RC1"}])

    client = httpx.Client(base_url="https://api.github.com", transport=httpx.MockTransport(handler))

    assert fetch_engine_versions("quickwit", client) == ["0.7.0-rc1", "0.8.1"]


def test_load_engine_versions_uses_file_unless_refreshing(tmp_path: Path) -> None:
    path = tmp_path / "versions.json"
    path.write_text(json.dumps({"opensearch": ["2.11.1"], "quickwit": ["0.8.1"]}), encoding="utf-8")

    assert load_engine_versions(path, engines=["opensearch"]) == {"opensearch": ["2.11.1"]}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"name": "2.12.0"}])

    client = httpx.Client(base_url="https://api.github.com", transport=httpx.MockTransport(handler))
    refreshed = load_engine_versions(path, refresh=True, client=client, engines=["opensearch"])

    assert refreshed == {"opensearch": ["2.12.0"]}
    stored = json.loads(path.read_text(encoding="utf-8"))
    assert stored == {"opensearch": ["2.12.0"], "quickwit": ["0.8.1"]}


def test_load_engine_versions_requires_client_when_missing(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="no GitHub client"):
        load_engine_versions(tmp_path / "versions.json")


def test_compute_artifact_hash_streams_content() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"abc")))

    assert compute_artifact_hash("https://x.test/a.tar.gz", client) == to_sri(hashlib.sha256(b"abc").digest())


def _fake_hasher(calls: list[str]):
    def _hash(url: str, client: httpx.Client) -> str:
        calls.append(url)
        return to_sri(hashlib.sha256(url.encode("utf-8")).digest())

    return _hash


def test_update_hash_cache_memoizes_and_resumes(tmp_path: Path) -> None:
    cache_path = tmp_path / "manifest.json"
    calls: list[str] = []
    client = httpx.Client()
    versions = {"elasticsearch": ["6.8.23"], "opensearch": ["2.11.1"]}

    cache = load_hash_cache(cache_path)
    added = update_hash_cache(cache, versions, client=client, cache_path=cache_path, hasher=_fake_hasher(calls))

    # the pre-7.x tarball is shared by every system; OpenSearch darwin reuses the linux builds
    assert added == 8
    assert len(calls) == 3
    assert set(cache["elasticsearch"]["6.8.23"]) == {"x86_64", "aarch64"}
    assert set(cache["opensearch"]["2.11.1"]["aarch64"]) == {"linux", "darwin"}
    darwin = cache["opensearch"]["2.11.1"]["aarch64"]["darwin"]
    assert darwin == cache["opensearch"]["2.11.1"]["aarch64"]["linux"]
    assert darwin["url"].endswith("opensearch-min-2.11.1-linux-arm64.tar.gz")
    assert load_hash_cache(cache_path) == cache

    resumed = load_hash_cache(cache_path)
    again = update_hash_cache(resumed, versions, client=client, cache_path=cache_path, hasher=_fake_hasher(calls))
    assert again == 0
    assert len(calls) == 3


def test_update_hash_cache_skips_unreachable_artifacts() -> None:
    def _failing(url: str, client: httpx.Client) -> str:
        raise httpx.ConnectError("unreachable")

    cache: dict = {}
    added = update_hash_cache(cache, {"quickwit": ["0.8.1"]}, client=httpx.Client(), hasher=_failing)

    assert added == 0
    assert cache == {}


def test_generated_packages_load_as_manifest(tmp_path: Path) -> None:
    cache: dict = {}
    update_hash_cache(
        cache,
        {"elasticsearch": ["8.13.4"], "quickwit": ["0.8.1"]},
        client=httpx.Client(),
        hasher=_fake_hasher([]),
    )

    packages = build_packages(cache)
    output = tmp_path / "packages.json"
    write_packages(output, packages)

    assert sorted(packages) == ["aarch64-darwin", "aarch64-linux", "x86_64-darwin", "x86_64-linux"]
    entry = packages["x86_64-linux"]["elasticsearch_8_13_4"]
    assert entry["pname"] == "elasticsearch"
    assert entry["url"].endswith("elasticsearch-8.13.4-linux-x86_64.tar.gz")

    manifest = load_manifest(output, system="aarch64-darwin")
    assert manifest.families() == ["elasticsearch", "quickwit"]
    spec = manifest.get("quickwit", "0.8.1")
    assert spec is not None
    assert spec.url.endswith("quickwit-v0.8.1-aarch64-apple-darwin.tar.gz")
