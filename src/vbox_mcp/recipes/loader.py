"""Recipe loading utilities."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from ..errors import InvalidArgumentError
from .models import Recipe, RecipeKind

_APT_PACKAGE = re.compile(r"^[a-z0-9][a-z0-9+.\-]*$")

BUILTIN_RECIPES: tuple[Recipe, ...] = (
    Recipe(
        id="node",
        kind=RecipeKind.RUNTIME,
        description="Node.js LTS from NodeSource",
        commands=[
            "curl -fsSL https://deb.nodesource.com/setup_lts.x | sudo -E bash -",
            "sudo apt-get install -y nodejs",
        ],
    ),
    Recipe(
        id="python",
        kind=RecipeKind.RUNTIME,
        description="Python 3 with pip and venv",
        commands=["sudo apt-get update", "sudo apt-get install -y python3 python3-pip python3-venv"],
    ),
    Recipe(
        id="go",
        kind=RecipeKind.RUNTIME,
        description="Go toolchain from the distribution archive",
        commands=["sudo apt-get update", "sudo apt-get install -y golang-go"],
    ),
    Recipe(
        id="docker",
        kind=RecipeKind.RUNTIME,
        description="Docker engine; adds the login user to the docker group",
        commands=["curl -fsSL https://get.docker.com | sh", 'sudo usermod -aG docker "$USER"'],
    ),
    Recipe(id="git", commands=["sudo apt-get install -y git"]),
    Recipe(id="curl", commands=["sudo apt-get install -y curl"]),
    Recipe(id="wget", commands=["sudo apt-get install -y wget"]),
    Recipe(id="jq", commands=["sudo apt-get install -y jq"]),
    Recipe(id="zip", commands=["sudo apt-get install -y zip unzip"]),
)


class RecipeLoadError(RuntimeError):
    """Raised when one or more recipe files cannot be parsed."""


class RecipeLoader:
    """Loads provisioning recipes from YAML files layered over the built-ins."""

    def __init__(
        self,
        search_paths: Iterable[Path] | None = None,
        *,
        include_builtins: bool = True,
    ) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._include_builtins = include_builtins

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, Recipe]:
        """Return recipes keyed by id; later search paths override earlier ones and built-ins."""

        recipes: dict[str, Recipe] = {}
        if self._include_builtins:
            recipes.update({recipe.id: recipe for recipe in BUILTIN_RECIPES})

        errors: list[str] = []
        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:  # pragma: no cover - library type
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                # a file may hold one recipe or a list of them
                entries = document if isinstance(document, list) else [document]
                for entry in entries:
                    try:
                        recipe = Recipe.model_validate(entry)
                    except ValidationError as exc:
                        errors.append(f"Recipe validation error in {path}: {exc}")
                        continue
                    recipes[recipe.id] = recipe

        if errors:
            raise RecipeLoadError("; ".join(errors))
        return recipes

    def runtime(self, name: str) -> Recipe | None:
        """Runtime recipe for ``name``; unknown runtimes return ``None`` and are skipped by callers."""

        recipe = self.load_all().get(name.strip().lower())
        if recipe is None or recipe.kind is not RecipeKind.RUNTIME:
            return None
        return recipe

    def tool(self, name: str) -> Recipe:
        """Tool recipe for ``name``, falling back to a plain apt-get install."""

        key = name.strip().lower()
        recipe = self.load_all().get(key)
        if recipe is not None:
            return recipe
        if not _APT_PACKAGE.match(key):
            raise InvalidArgumentError(f"'{name}' is not a valid package name")
        return Recipe(id=key, kind=RecipeKind.TOOL, commands=[f"sudo apt-get install -y {key}"])


def load_recipes(search_paths: Iterable[Path] | None = None) -> dict[str, Recipe]:
    """Convenience wrapper for loading recipes from the provided paths."""

    return RecipeLoader(search_paths).load_all()


__all__ = ["BUILTIN_RECIPES", "RecipeLoadError", "RecipeLoader", "load_recipes"]
