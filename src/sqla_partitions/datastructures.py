from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping, Set
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Read-only, hashable mapping.

    Backs the relationship registry (one frozendict of descriptors per owner)
    and the ``args`` of a :class:`~sqla_partitions.batch.BatchKey`, where the
    mapping must be usable as part of a dictionary key.

    Example:
        >>> fd = frozendict({"limit": 10})
        >>> fd.copy(offset=5)
        <frozendict {'limit': 10, 'offset': 5}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged over this one."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        # Computed lazily: values only need to be hashable once the mapping is hashed.
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


def freeze(value: Any) -> Any:
    """Recursively convert *value* into a hashable equivalent.

    Mappings become :class:`frozendict`, sets become ``frozenset`` and other
    non-string sequences become tuples. Anything else is returned unchanged.

    Example:
        >>> freeze({"where": {"tags": ["a", "b"]}})
        <frozendict {'where': <frozendict {'tags': ('a', 'b')}>}>
    """
    if isinstance(value, Mapping):
        return frozendict({k: freeze(v) for k, v in value.items()})

    if isinstance(value, Set):
        return frozenset(freeze(v) for v in value)

    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)

    return value
