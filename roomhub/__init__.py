"""Workspace realtime messaging and presence hub."""

__version__ = "0.1.0"
