"""Recipe discovery from per-family ``recipe.yaml`` folders."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from searchpkgs.config import RecipeConfig, parse_recipe_config
from searchpkgs.logging_utils import log_event

logger = logging.getLogger(__name__)

RECIPES_DIR_ENV = "SEARCHPKGS_RECIPES_DIR"
BUNDLED_RECIPES_DIR = Path(__file__).resolve().parent / "recipes"


@dataclass(frozen=True, slots=True)
class Recipe:
    """A discovered recipe with validated config."""

    config: RecipeConfig
    path: Path

    @property
    def family(self) -> str:
        return self.config.family


def default_recipes_dir() -> Path:
    """Return the recipes shipped with the package."""
    return BUNDLED_RECIPES_DIR


def resolve_recipes_dir(recipes_dir: Path | None) -> Path:
    """Resolve recipes directory from argument or environment."""
    if recipes_dir is not None:
        return recipes_dir
    env_value = os.environ.get(RECIPES_DIR_ENV)
    if env_value:
        return Path(env_value)
    return default_recipes_dir()


def load_recipe_file(recipe_config_path: Path, *, folder_name: str | None = None) -> RecipeConfig:
    """Read and validate one ``recipe.yaml`` file."""
    raw_data = yaml.safe_load(recipe_config_path.read_text(encoding="utf-8"))
    if raw_data is None:
        raise ValueError(f"{recipe_config_path} is empty")
    if not isinstance(raw_data, dict):
        raise ValueError(f"{recipe_config_path} must contain a YAML mapping")

    recipe_data = {str(key): value for key, value in raw_data.items()}
    return parse_recipe_config(recipe_data, folder_name=folder_name)


class RecipeRegistry:
    """Read-only table of recipes keyed by package family."""

    def __init__(self, recipes: list[Recipe] | None = None) -> None:
        self._recipes: dict[str, Recipe] = {}
        for recipe in recipes or []:
            self._recipes[recipe.family] = recipe

    @classmethod
    def discover(cls, recipes_dir: Path) -> RecipeRegistry:
        """Scan ``recipes_dir`` and build a registry from valid recipes."""
        if not recipes_dir.exists() or not recipes_dir.is_dir():
            log_event(
                logger,
                logging.WARNING,
                "registry.discover_skipped",
                recipes_dir=str(recipes_dir),
                reason="missing_or_not_directory",
            )
            return cls()

        log_event(logger, logging.DEBUG, "registry.discover_started", recipes_dir=str(recipes_dir))
        recipes: list[Recipe] = []
        for recipe_dir in sorted(path for path in recipes_dir.iterdir() if path.is_dir()):
            recipe_config_path = recipe_dir / "recipe.yaml"
            if not recipe_config_path.exists():
                continue
            try:
                config = load_recipe_file(recipe_config_path, folder_name=recipe_dir.name)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    logger,
                    logging.WARNING,
                    "registry.recipe_invalid",
                    recipe_dir=recipe_dir.name,
                    error=str(exc),
                )
                logger.warning("Skipping invalid recipe '%s': %s", recipe_dir.name, exc)
                continue
            recipes.append(Recipe(config=config, path=recipe_dir))

        registry = cls(recipes)
        log_event(
            logger,
            logging.DEBUG,
            "registry.discover_completed",
            recipe_count=registry.count,
        )
        return registry

    def get(self, family: str) -> Recipe | None:
        """Get a recipe by package family."""
        return self._recipes.get(family)

    def list_all(self) -> list[Recipe]:
        """List all recipes sorted by family."""
        return [self._recipes[family] for family in sorted(self._recipes)]

    @property
    def count(self) -> int:
        """Return the number of recipes."""
        return len(self._recipes)
