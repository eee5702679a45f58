"""Utility helpers shared across crawlstream."""

from .atomic import atomic_json_dump, read_json

__all__ = ["atomic_json_dump", "read_json"]
