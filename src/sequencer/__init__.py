"""Dependency-aware deployment pipeline executor."""

__version__ = "0.1.0"
