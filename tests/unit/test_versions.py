"""Unit tests for version parsing and range checks."""

from __future__ import annotations

import pytest

from searchpkgs.versions import (
    Version,
    extract_version_string,
    is_valid_version,
    parse_version,
    version_in_range,
)


def test_parse_version_defaults_missing_components() -> None:
    assert parse_version("7") == Version(7, 0, 0)
    assert parse_version("v6.4") == Version(6, 4, 0)
    assert str(parse_version("8.13.4")) == "8.13.4"


def test_versions_compare_numerically() -> None:
    assert parse_version("6.10.0") > parse_version("6.9.9")
    assert parse_version("10.0.0") > parse_version("9.99.99")
    assert parse_version("7.0.0-beta1") < parse_version("7.0.0")
    assert sorted(["1.10.0", "1.2.0", "1.2.0-rc1"], key=parse_version) == ["1.2.0-rc1", "1.2.0", "1.10.0"]


def test_prerelease_numbers_compare_numerically() -> None:
    assert parse_version("7.0.0-rc9") < parse_version("7.0.0-rc10")
    assert parse_version("7.0.0-alpha.2") < parse_version("7.0.0-alpha.10")
    assert parse_version("7.0.0-alpha") < parse_version("7.0.0-alpha.1")
    assert parse_version("7.0.0-beta2") < parse_version("7.0.0-rc1")
    assert sorted(["7.0.0-rc10", "7.0.0", "7.0.0-rc9", "7.0.0-beta1"], key=parse_version) == [
        "7.0.0-beta1",
        "7.0.0-rc9",
        "7.0.0-rc10",
        "7.0.0",
    ]
    assert str(parse_version("7.0.0-rc10")) == "7.0.0-rc10"


@pytest.mark.parametrize("value", ["", "latest", "8.x", "8.13.4.1"])
def test_parse_version_rejects_invalid(value: str) -> None:
    assert is_valid_version(value) is False
    with pytest.raises(ValueError):
        parse_version(value)


def test_version_in_range_is_inclusive_below_and_exclusive_above() -> None:
    lower = parse_version("6.4.0")
    upper = parse_version("7.0.0")

    assert version_in_range(parse_version("6.4.0"), min_version=lower, before_version=upper)
    assert not version_in_range(parse_version("6.3.9"), min_version=lower, before_version=upper)
    assert not version_in_range(parse_version("7.0.0"), min_version=lower, before_version=upper)
    assert version_in_range(parse_version("0.1.0"))


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("v1.2.3", "1.2.3"),
        ("OpenSearch 2.11.1", "2.11.1"),
        ("Quickwit v0.8.0.RC1", "0.8.0-rc1"),
        ("v5.0.0.Beta1", "5.0.0-beta1"),
        ("v10.2.3", "10.2.3"),
        ("some-beta-prerelease-1", None),
    ],
)
def test_extract_version_string(text: str, expected: str | None) -> None:
    assert extract_version_string(text) == expected


def test_attr_suffix_replaces_dots() -> None:
    assert parse_version("8.13.4").attr_suffix == "8_13_4"
