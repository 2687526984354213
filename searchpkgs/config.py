"""Configuration models for declarative install recipes."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from searchpkgs.versions import Version, is_valid_version, parse_version, version_in_range

OUT_PLACEHOLDER = "{out}"
_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_FAMILY_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


def _validate_relative_path(value: str) -> str:
    if value.startswith("/"):
        raise ValueError(f"path {value!r} must be relative")
    normalized = value.strip().rstrip("/")
    if not normalized:
        raise ValueError("path must not be empty")
    if any(part in {"", ".", ".."} for part in normalized.split("/")):
        raise ValueError(f"path {value!r} must be relative and must not traverse upwards")
    return normalized


def _validate_env_name(value: str) -> str:
    if not _ENV_NAME_PATTERN.match(value):
        raise ValueError(f"environment variable names must match [A-Z_][A-Z0-9_]* (invalid: {value!r})")
    return value


class VersionRange(BaseModel):
    """Applicability predicate evaluated once at resolution time."""

    model_config = ConfigDict(extra="forbid")

    min_version: str | None = None
    before_version: str | None = None

    @field_validator("min_version", "before_version")
    @classmethod
    def _validate_bound(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not is_valid_version(normalized):
            raise ValueError("version bounds must use major.minor.patch format")
        return normalized

    @model_validator(mode="after")
    def validate_order(self) -> VersionRange:
        """Reject empty ranges."""
        if self.min_version is not None and self.before_version is not None:
            if parse_version(self.min_version) >= parse_version(self.before_version):
                raise ValueError("min_version must be lower than before_version")
        return self

    def includes(self, version: Version) -> bool:
        """Return ``True`` when ``version`` falls inside this range."""
        return version_in_range(
            version,
            min_version=parse_version(self.min_version) if self.min_version else None,
            before_version=parse_version(self.before_version) if self.before_version else None,
        )


class _StepBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    description: str | None = None
    when: VersionRange | None = None

    def applies_to(self, version: Version) -> bool:
        """Return ``True`` when the step is included for ``version``."""
        return self.when is None or self.when.includes(version)


class _ReplaceStep(_StepBase):
    file: str
    find: str = Field(min_length=1)
    replace: str
    optional: bool = False

    @field_validator("file")
    @classmethod
    def _validate_file(cls, value: str) -> str:
        return _validate_relative_path(value)


class SubstituteStep(_ReplaceStep):
    """Literal find-and-replace on the unpacked source before layout copy."""

    type: Literal["substitute"]


class RewriteStep(_ReplaceStep):
    """Literal find-and-replace on the assembled output tree."""

    type: Literal["rewrite"]


class ExcludeStep(_StepBase):
    """Remove a subpath from the output tree; absent paths are ignored."""

    type: Literal["exclude"]
    path: str

    @field_validator("path")
    @classmethod
    def _validate_path(cls, value: str) -> str:
        return _validate_relative_path(value)


RecipeStep = Annotated[
    SubstituteStep | RewriteStep | ExcludeStep,
    Field(discriminator="type"),
]


class LayoutConfig(BaseModel):
    """Directories copied from the distribution into the output tree."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    directories: list[str] | None = None
    optional_directories: list[str] = Field(default_factory=list)
    executable_dir: str | None = "bin"

    @field_validator("directories", "optional_directories", mode="after")
    @classmethod
    def _validate_directories(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        normalized: list[str] = []
        for raw in value:
            path = _validate_relative_path(raw)
            if path not in normalized:
                normalized.append(path)
        return normalized


class DerivedArtifactConfig(BaseModel):
    """Secondary output built from symlinks to selected files of the artifact."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(pattern=r"^[a-z0-9][a-z0-9_-]*$")
    source_dir: str
    pattern: str = "*"
    export: str

    @field_validator("source_dir")
    @classmethod
    def _validate_source_dir(cls, value: str) -> str:
        return _validate_relative_path(value)

    @field_validator("export")
    @classmethod
    def _validate_export(cls, value: str) -> str:
        return _validate_env_name(value)


class LauncherConfig(BaseModel):
    """How the runtime launcher starts the server from a staged home."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    binary: str
    env_prefix: str
    java: bool = True
    java_home_aliases: list[str] = Field(default_factory=list)
    bundled_jdk: list[str] = Field(default_factory=list)
    home_vars: list[str] = Field(default_factory=list)
    conf_vars: list[str] = Field(default_factory=list)
    java_opts_vars: list[str] = Field(default_factory=list)
    config_dir: str = "config"
    args: list[str] = Field(default_factory=list)

    @field_validator("binary", "config_dir")
    @classmethod
    def _validate_paths(cls, value: str) -> str:
        return _validate_relative_path(value)

    @field_validator("env_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        return _validate_env_name(value)

    @field_validator("java_home_aliases", "home_vars", "conf_vars", "java_opts_vars", mode="after")
    @classmethod
    def _validate_env_lists(cls, value: list[str]) -> list[str]:
        return [_validate_env_name(item) for item in value]

    @property
    def home_var(self) -> str:
        return f"{self.env_prefix}_HOME"

    @property
    def conf_var(self) -> str:
        return f"{self.env_prefix}_CONF_PATH"

    @property
    def java_opts_var(self) -> str:
        return f"{self.env_prefix}_JAVA_OPTS"


class RecipeConfig(BaseModel):
    """Top-level recipe configuration loaded from ``recipe.yaml``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    family: str
    description: str = ""
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    steps: list[RecipeStep] = Field(default_factory=list)
    derived: list[DerivedArtifactConfig] = Field(default_factory=list)
    launcher: LauncherConfig

    @field_validator("family")
    @classmethod
    def _validate_family(cls, value: str) -> str:
        if not _FAMILY_PATTERN.match(value):
            raise ValueError(f"invalid recipe family {value!r}")
        return value

    @model_validator(mode="after")
    def validate_unique_derived(self) -> RecipeConfig:
        """Derived artifact names and exports must be unique."""
        names = [item.name for item in self.derived]
        if len(set(names)) != len(names):
            raise ValueError("derived artifact names must not contain duplicates")
        exports = [item.export for item in self.derived]
        if len(set(exports)) != len(exports):
            raise ValueError("derived artifact exports must not contain duplicates")
        return self

    def assert_family_matches_folder(self, folder_name: str) -> None:
        """Raise if the recipe family does not match the folder name."""
        if self.family != folder_name:
            raise ValueError(
                f"recipe family '{self.family}' does not match folder name '{folder_name}'"
            )


def parse_recipe_config(data: Mapping[str, object], folder_name: str | None = None) -> RecipeConfig:
    """Validate recipe config data and optionally enforce folder/family matching."""
    config = RecipeConfig.model_validate(data)
    if folder_name is not None:
        config.assert_family_matches_folder(folder_name)
    return config
