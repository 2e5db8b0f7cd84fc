"""Dependency-aware task store and scheduler."""
