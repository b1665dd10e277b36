from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.orm.exc import UnmappedColumnError

from .datastructures import frozendict, freeze
from .descriptors import Cardinality, RelationshipDescriptor
from .registry import Registry


BatchKind = Literal["partitioned", "count", "exists", "direct"]


@dataclass(slots=True, frozen=True)
class BatchKey:
    """Identifies per-parent load requests that can share one batched query.

    Requests for the same relationship with the same arguments produce equal
    keys, whichever parent they come from, so a batching scheduler can
    bucket them by key and issue a single :meth:`Partitioner.load
    <sqla_partitions.core.Partitioner.load>` per bucket using
    :meth:`partition_value` of each parent as the batch ids.
    """

    field: str
    args: frozendict[str, Any]
    owner: type[Any]
    partition_key: str
    cardinality: Cardinality
    kind: BatchKind = "partitioned"
    runner: Any = field(default=None, compare=False)

    @classmethod
    def new(
        cls,
        registry: Registry,
        parent: Any,
        field: str,
        args: Mapping[str, Any] | None = None,
        *,
        runner: Any = None,
        kind: BatchKind = "partitioned",
    ) -> BatchKey:
        """Build the key for loading *field* of *parent*.

        Raises:
            UnknownRelationship: If ``type(parent)`` has no relationship *field*.
        """
        owner = type(parent)
        descriptor = registry.lookup(owner, field)

        return cls(
            field=field,
            args=freeze(args or {}),
            owner=owner,
            partition_key=descriptor.owner_key,
            cardinality=descriptor.cardinality,
            kind=kind,
            runner=runner,
        )

    def partition_value(self, parent: Any) -> Any:
        """Value of the partition key on *parent*; ``None`` when absent."""
        return _read(parent, self.partition_key)


def partition_value(source: RelationshipDescriptor | BatchKey, parent: Any) -> Any:
    """Read the value that correlates *parent* with its partition group.

    This is the value a parent contributes to the ``parent_ids`` of a
    batched load, read straight off the in-memory record without a query.
    *parent* may be a mapped instance, a mapping or a result row.

    Never raises and never queries: a missing or unloaded attribute, or a
    ``NULL`` foreign key, yields ``None``, meaning the parent has no related
    records. Expired instances still yield their primary-key values.
    """
    key = source.partition_key if isinstance(source, BatchKey) else source.owner_key
    return _read(parent, key)


def _read(parent: Any, key: str) -> Any:
    if parent is None:
        return None

    if isinstance(parent, Mapping):
        return parent.get(key)

    if isinstance(parent, sa.Row):
        return parent._mapping.get(key)  # noqa: SLF001

    state = sa.inspect(parent, raiseerr=False)
    if isinstance(state, orm.InstanceState):
        return _read_state(state, key)

    return getattr(parent, key, None)


def _read_state(state: orm.InstanceState[Any], key: str) -> Any:
    """Read *key* from loaded state only; expired or detached instances never refresh."""
    mapper = state.mapper
    column = mapper.local_table.c.get(key)
    if column is None:
        return state.dict.get(key)

    try:
        name = mapper.get_property_by_column(column).key
    except UnmappedColumnError:
        name = key

    if name in state.dict:
        return state.dict[name]

    # expired attributes: primary-key values survive in the identity key
    if state.key is not None:
        for pk, value in zip(mapper.primary_key, state.key[1]):
            if pk is column:
                return value

    return None
