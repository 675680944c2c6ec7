"""Database layer for Kindred."""

from .manager import DatabaseManager

__all__ = ["DatabaseManager"]
