from __future__ import annotations

from typing import Any


class PartitionError(Exception):
    """Base class for errors raised while building partitioned queries."""


class UnknownRelationship(PartitionError, LookupError):
    """The relationship is not defined on the owner (or on an intermediate hop)."""

    def __init__(self, owner: Any, name: str) -> None:
        self.owner = owner
        self.name = name
        owner_name = getattr(owner, "__name__", None) or getattr(owner, "name", repr(owner))
        super().__init__(f"No relationship {name!r} on {owner_name}")


class ChainTooDeep(PartitionError, ValueError):
    """The resolved join chain needs more aliases than the fixed pool provides."""

    def __init__(self, depth: int, limit: int) -> None:
        self.depth = depth
        self.limit = limit
        super().__init__(f"Join chain of {depth} link steps exceeds the limit of {limit}")
