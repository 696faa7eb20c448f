"""Dependency-aware migration of Metabase cards between databases."""

__version__ = "0.3.0"
