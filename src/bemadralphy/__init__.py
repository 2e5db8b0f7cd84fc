"""Resumable delivery pipeline orchestrator for CLI coding agents."""

__version__ = "0.4.0"
