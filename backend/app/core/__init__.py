"""Core utilities for the BaatKare backend."""

from .ids import new_ordered_id, utcnow

__all__ = ["new_ordered_id", "utcnow"]
