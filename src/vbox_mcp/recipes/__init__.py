"""Provisioning recipe models and loader exports."""

from .loader import BUILTIN_RECIPES, RecipeLoadError, RecipeLoader, load_recipes
from .models import Recipe, RecipeKind

__all__ = [
    "BUILTIN_RECIPES",
    "Recipe",
    "RecipeKind",
    "RecipeLoadError",
    "RecipeLoader",
    "load_recipes",
]
