"""Relay shell, file and coding-agent tasks to a machine without inbound connectivity."""

__version__ = "0.1.0"
