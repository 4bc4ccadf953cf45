"""Agent council: run one prompt across several CLI agents and poll them from disk."""

__version__ = "0.1.0"
