"""Relationship metadata consumed by the join-chain builder.

A relationship is described by exactly one of three frozen variants:

* :class:`Direct`: one side holds the foreign key (many-to-one, one-to-many,
  one-to-one, self-referential).
* :class:`ManyToMany`: linked through an association table.
* :class:`MultiHop`: a named sequence of other relationships ("through").

``RelationshipDescriptor`` is the union of the three; code dispatching on it
uses ``match`` with a trailing ``assert_never``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal, Union

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.sql.util import ClauseAdapter

from .tools import resolve_column


Cardinality = Literal["one", "many"]
Entity = Union[type[orm.DeclarativeBase], sa.Table]


@dataclass(slots=True, frozen=True)
class Not:
    """Negated constraint value: ``field != value`` (``IS NOT NULL`` for ``None``)."""

    value: Any


@dataclass(slots=True, frozen=True)
class Constraint:
    """A fixed condition that always holds on one side of a link step."""

    field: str
    value: Any

    def predicate(self, column: sa.ColumnElement[Any]) -> sa.ColumnElement[bool]:
        """Render the constraint against *column*."""
        if self.value is None:
            return column.is_(None)

        if isinstance(self.value, Not):
            if self.value.value is None:
                return column.is_not(None)

            return column != self.value.value

        return column == self.value

    def bind(self, scope: Any) -> sa.ColumnElement[bool]:
        return self.predicate(resolve_column(scope, self.field))


@dataclass(slots=True, frozen=True, eq=False)
class Condition:
    """A fixed relationship condition kept as SQL, over the columns of one table.

    Covers the terms a :class:`Constraint` cannot express, such as
    ``posts.views > 10`` or ``posts.status IN (...)``. :meth:`bind`
    re-targets the clause onto whichever alias stands for ``table``.
    """

    table: sa.Table
    clause: sa.ColumnElement[bool]

    def bind(self, scope: Any) -> sa.ColumnElement[bool]:
        selectable = scope if isinstance(scope, sa.FromClause) else sa.inspect(scope).selectable
        if selectable is self.table:
            return self.clause

        return ClauseAdapter(selectable).traverse(self.clause)


Predicate = Union[Constraint, Condition]


def constraints_from(
    entries: Mapping[str, Any] | Sequence[tuple[str, Any]] | Sequence[Constraint] | None,
) -> tuple[Constraint, ...]:
    """Normalize ``{"field": value}`` / ``[("field", value)]`` into constraints."""
    if not entries:
        return ()

    items = entries.items() if isinstance(entries, Mapping) else entries
    return tuple(
        item if isinstance(item, Constraint) else Constraint(item[0], item[1])
        for item in items
    )


@dataclass(slots=True, frozen=True)
class Direct:
    owner: type[orm.DeclarativeBase]
    related: type[orm.DeclarativeBase]
    name: str
    cardinality: Cardinality
    owner_key: str
    related_key: str
    constraints: tuple[Predicate, ...] = ()


@dataclass(slots=True, frozen=True)
class ManyToMany:
    """Owner and related rows linked through ``join_through``.

    ``owner_key`` on the owner matches ``owner_join_key`` on the association
    table; ``related_join_key`` on the association table matches
    ``related_key`` on the related entity. ``constraints`` bind to the
    related entity, ``join_constraints`` to the association table.
    """

    owner: type[orm.DeclarativeBase]
    related: type[orm.DeclarativeBase]
    name: str
    join_through: sa.Table
    owner_key: str
    owner_join_key: str
    related_join_key: str
    related_key: str
    cardinality: Cardinality = "many"
    constraints: tuple[Predicate, ...] = ()
    join_constraints: tuple[Predicate, ...] = ()


@dataclass(slots=True, frozen=True)
class MultiHop:
    """A relationship defined as a path of other relationships.

    ``owner_key`` is the owner-side key of the first hop, i.e. the attribute
    whose value identifies a parent's partition.
    """

    owner: type[orm.DeclarativeBase]
    related: type[orm.DeclarativeBase]
    name: str
    hops: tuple[str, ...]
    owner_key: str
    cardinality: Cardinality = "many"

    def __post_init__(self) -> None:
        if not self.hops:
            raise ValueError(f"MultiHop relationship {self.name!r} needs at least one hop")


RelationshipDescriptor = Union[Direct, ManyToMany, MultiHop]


@dataclass(slots=True, frozen=True)
class LinkStep:
    """One hop of a join chain, oriented from ``owner`` towards ``related``.

    ``owner_key`` is a column of ``owner`` and ``related_key`` a column of
    ``related``; ``constraints`` (see :data:`Predicate`) bind to ``related``.
    """

    owner: Entity
    related: Entity
    owner_key: str
    related_key: str
    constraints: tuple[Predicate, ...] = ()
