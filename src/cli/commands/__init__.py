"""CLI command modules."""

from .playbook import context, mark, similar, stale, top, undo
from .reflect import reflect

__all__ = [
    "reflect",
    "mark",
    "top",
    "stale",
    "context",
    "similar",
    "undo",
]
