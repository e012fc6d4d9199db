"""Small shared helpers."""

from . import codes

__all__ = ["codes"]
