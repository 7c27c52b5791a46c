"""Dependency-driven execution of agent subtask plans."""

__version__ = "0.1.0"
