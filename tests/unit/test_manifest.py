"""Unit tests for version manifest loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from searchpkgs.errors import ManifestError
from searchpkgs.manifest import (
    MANIFEST_ENV,
    SYSTEM_ENV,
    Manifest,
    PackageSpec,
    host_system,
    load_manifest,
    resolve_manifest_path,
    resolve_system,
)

HEX = "ab" * 32


def _record(name: str, version: str) -> dict[str, str]:
    return {
        "pname": name,
        "version": version,
        "url": f"https://example.test/{name}-{version}.tar.gz",
        "sha256": HEX,
    }


def _write(path: Path, data: object) -> Path:
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_generated_layout_is_read_for_one_system(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "packages.json",
        {
            "x86_64-linux": {
                "elasticsearch_8_13_4": _record("elasticsearch", "8.13.4"),
                "elasticsearch_7_17_0": _record("elasticsearch", "7.17.0"),
                "quickwit_0_8_1": _record("quickwit", "0.8.1"),
            },
            "aarch64-darwin": {
                "elasticsearch_8_0_0": _record("elasticsearch", "8.0.0"),
            },
        },
    )

    manifest = load_manifest(path, system="x86_64-linux")

    assert len(manifest) == 3
    assert manifest.families() == ["elasticsearch", "quickwit"]
    assert manifest.versions("elasticsearch") == ["7.17.0", "8.13.4"]
    spec = manifest.get("elasticsearch", "8.13.4")
    assert spec is not None
    assert spec.system == "x86_64-linux"
    assert spec.digest == bytes.fromhex(HEX)
    assert manifest.get("elasticsearch", "8.0.0") is None


def test_record_list_layout_is_accepted(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "packages.json",
        [{"name": "opensearch", "version": "2.11.1", "url": "https://example.test/os.tar.gz", "hash": HEX}],
    )

    manifest = load_manifest(path, system="x86_64-linux")

    assert [spec.name for spec in manifest.entries()] == ["opensearch"]


def test_get_matches_equivalent_version_spelling(tmp_path: Path) -> None:
    manifest = Manifest([PackageSpec.model_validate(_record("opensearch", "2.0.0"))])

    spec = manifest.get("opensearch", "2.0")
    assert spec is not None
    assert spec.version == "2.0.0"


def test_missing_system_yields_empty_manifest(tmp_path: Path) -> None:
    path = _write(tmp_path / "packages.json", {"x86_64-linux": {}})

    manifest = load_manifest(path, system="riscv64-linux")

    assert len(manifest) == 0
    assert "elasticsearch" not in manifest


def test_conflicting_duplicates_are_rejected() -> None:
    first = PackageSpec.model_validate(_record("elasticsearch", "8.13.4"))
    second = first.model_copy(update={"url": "https://mirror.test/other.tar.gz"})

    with pytest.raises(ManifestError, match="conflicting"):
        Manifest([first, second])


@pytest.mark.parametrize(
    "record",
    [
        {"pname": "elasticsearch", "version": "latest", "url": "https://x", "sha256": HEX},
        {"pname": "elasticsearch", "version": "8.13.4", "url": "https://x", "sha256": "nope"},
        {"pname": "elasticsearch", "version": "8.13.4", "url": "https://x"},
        {"pname": "elasticsearch", "version": "8.13.4", "url": "https://x", "sha256": HEX, "extra": 1},
    ],
)
def test_invalid_records_raise_manifest_error(tmp_path: Path, record: dict[str, object]) -> None:
    path = _write(tmp_path / "packages.json", {"x86_64-linux": {"entry": record}})

    with pytest.raises(ManifestError, match="invalid"):
        load_manifest(path, system="x86_64-linux")


def test_missing_or_unparseable_files_raise(tmp_path: Path) -> None:
    with pytest.raises(ManifestError, match="not found"):
        load_manifest(tmp_path / "missing.json", system="x86_64-linux")

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(ManifestError, match="could not read"):
        load_manifest(broken, system="x86_64-linux")


def test_resolvers_prefer_argument_then_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv(MANIFEST_ENV, raising=False)
    monkeypatch.delenv(SYSTEM_ENV, raising=False)
    monkeypatch.chdir(tmp_path)

    assert resolve_manifest_path(None) == tmp_path / "packages.json"
    assert resolve_system(None) == host_system()

    monkeypatch.setenv(MANIFEST_ENV, "/srv/packages.json")
    monkeypatch.setenv(SYSTEM_ENV, "aarch64-darwin")
    assert resolve_manifest_path(None) == Path("/srv/packages.json")
    assert resolve_system(None) == "aarch64-darwin"
    assert resolve_system("x86_64-linux") == "x86_64-linux"
    assert resolve_manifest_path(tmp_path / "m.json") == tmp_path / "m.json"


def test_host_system_uses_nix_style_names(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("searchpkgs.manifest.platform.machine", lambda: "arm64")
    monkeypatch.setattr("searchpkgs.manifest.platform.system", lambda: "Darwin")

    assert host_system() == "aarch64-darwin"
