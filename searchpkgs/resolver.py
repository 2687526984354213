"""Bind manifest entries to the recipe steps that apply to their version."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any

from searchpkgs.config import (
    DerivedArtifactConfig,
    ExcludeStep,
    LauncherConfig,
    LayoutConfig,
    RecipeConfig,
    RewriteStep,
    SubstituteStep,
)
from searchpkgs.errors import UnknownPackage, UnknownVersion
from searchpkgs.logging_utils import log_event
from searchpkgs.manifest import Manifest, PackageSpec
from searchpkgs.registry import RecipeRegistry
from searchpkgs.versions import parse_version

logger = logging.getLogger(__name__)

ResolvedStep = SubstituteStep | RewriteStep | ExcludeStep


@dataclass(frozen=True, slots=True)
class ResolvedRecipe:
    """A family recipe with its version predicates already applied."""

    family: str
    layout: LayoutConfig
    steps: tuple[ResolvedStep, ...]
    derived: tuple[DerivedArtifactConfig, ...]
    launcher: LauncherConfig

    def to_payload(self) -> dict[str, Any]:
        """Canonical JSON-ready form; predicates are dropped once applied."""
        return {
            "family": self.family,
            "layout": self.layout.model_dump(mode="json"),
            "steps": [step.model_dump(mode="json", exclude={"when", "description"}) for step in self.steps],
            "derived": [item.model_dump(mode="json") for item in self.derived],
            "launcher": self.launcher.model_dump(mode="json"),
        }

    @property
    def identity(self) -> str:
        """Stable SHA-256 over the canonical recipe payload."""
        canonical = json.dumps(self.to_payload(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def substitutions(self) -> list[SubstituteStep]:
        return [step for step in self.steps if isinstance(step, SubstituteStep)]

    def exclusions(self) -> list[ExcludeStep]:
        return [step for step in self.steps if isinstance(step, ExcludeStep)]

    def rewrites(self) -> list[RewriteStep]:
        return [step for step in self.steps if isinstance(step, RewriteStep)]


@dataclass(frozen=True, slots=True)
class ResolvedPackage:
    """A manifest entry paired with the recipe that installs it."""

    spec: PackageSpec
    recipe: ResolvedRecipe


def select_recipe(config: RecipeConfig, version: str) -> ResolvedRecipe:
    """Evaluate step predicates for ``version`` and keep the applicable steps."""
    parsed = parse_version(version)
    steps = tuple(step for step in config.steps if step.applies_to(parsed))
    return ResolvedRecipe(
        family=config.family,
        layout=config.layout,
        steps=steps,
        derived=tuple(config.derived),
        launcher=config.launcher,
    )


class PackageResolver:
    """Pure lookup from ``(name, version)`` to spec and recipe."""

    def __init__(self, manifest: Manifest, recipes: RecipeRegistry) -> None:
        self._manifest = manifest
        self._recipes = recipes

    def resolve(self, name: str, version: str) -> ResolvedPackage:
        """Return the spec and version-specific recipe for a package."""
        if name not in self._manifest:
            raise UnknownPackage("no manifest entry for this package", package=name, version=version)
        spec = self._manifest.get(name, version)
        if spec is None:
            known = ", ".join(self._manifest.versions(name)[-5:])
            raise UnknownVersion(
                f"version not in manifest (latest known: {known})",
                package=name,
                version=version,
            )
        recipe = self._recipes.get(name)
        if recipe is None:
            raise UnknownPackage("no install recipe for this package family", package=name, version=version)

        resolved = select_recipe(recipe.config, spec.version)
        log_event(
            logger,
            logging.DEBUG,
            "resolver.resolved",
            package=name,
            version=spec.version,
            recipe_identity=resolved.identity,
            step_count=len(resolved.steps),
        )
        return ResolvedPackage(spec=spec, recipe=resolved)
