from __future__ import annotations

import warnings
from collections.abc import Iterator, Mapping, Sequence
from typing import Any, final

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.sql import operators
from sqlalchemy.sql.elements import (
    BinaryExpression,
    BindParameter,
    BooleanClauseList,
    False_,
    Grouping,
    Null,
    True_,
)
from sqlalchemy.sql.elements import _find_columns as find_columns

from .datastructures import frozendict
from .descriptors import (
    Cardinality,
    Condition,
    Constraint,
    Direct,
    ManyToMany,
    MultiHop,
    Not,
    Predicate,
    RelationshipDescriptor,
    constraints_from,
)
from .errors import UnknownRelationship


_Relationships = Mapping[type[orm.DeclarativeBase], Mapping[str, RelationshipDescriptor]]
_Through = Mapping[type[orm.DeclarativeBase], Mapping[str, Sequence[str]]]

_MISSING = object()


@final
class Registry:
    """Immutable lookup table of relationship descriptors, keyed by owner.

    Built once at startup (usually through :func:`get_registry`) and passed
    to a :class:`~sqla_partitions.core.Partitioner`. Registries are plain
    values: several of them, over different declarative bases, can coexist
    in one process.
    """

    __slots__ = ("_relationships",)

    def __init__(self, relationships: _Relationships | None = None) -> None:
        self._relationships: frozendict[
            type[orm.DeclarativeBase], frozendict[str, RelationshipDescriptor]
        ] = frozendict({
            owner: frozendict(descriptors) for owner, descriptors in (relationships or {}).items()
        })

    @classmethod
    def from_descriptors(cls, *descriptors: RelationshipDescriptor) -> Registry:
        """Build a registry from loose descriptors (owner and name are read off each)."""
        return cls().add(*descriptors)

    def add(self, *descriptors: RelationshipDescriptor) -> Registry:
        """Return a new registry with *descriptors* added or replaced."""
        merged: dict[type[orm.DeclarativeBase], dict[str, RelationshipDescriptor]] = {
            owner: dict(items) for owner, items in self._relationships.items()
        }
        for descriptor in descriptors:
            merged.setdefault(descriptor.owner, {})[descriptor.name] = descriptor

        return Registry(merged)

    def lookup(self, owner: Any, name: str) -> RelationshipDescriptor:
        """Return the descriptor of relationship *name* on *owner*.

        Raises:
            UnknownRelationship: If *owner* has no relationship called *name*.
        """
        descriptor = self._relationships.get(owner, frozendict()).get(name)
        if descriptor is None:
            raise UnknownRelationship(owner, name)

        return descriptor

    def get(self, owner: Any) -> Mapping[str, RelationshipDescriptor]:
        """Relationships of *owner* by name; empty when the owner is unknown."""
        return self._relationships.get(owner, frozendict())

    def __getitem__(self, owner: Any) -> Mapping[str, RelationshipDescriptor]:
        """Look up relationships of *owner*, raising ``KeyError`` if not found."""
        return self._relationships[owner]

    def __contains__(self, owner: object) -> bool:
        return owner in self._relationships

    def __iter__(self) -> Iterator[type[orm.DeclarativeBase]]:
        return iter(self._relationships)

    def __len__(self) -> int:
        return len(self._relationships)

    def __repr__(self) -> str:
        owners = ", ".join(owner.__name__ for owner in self._relationships)
        return f"<Registry [{owners}]>"

    @property
    def relationships(self) -> Mapping[type[orm.DeclarativeBase], Mapping[str, RelationshipDescriptor]]:
        """The underlying owner-to-descriptors mapping (read-only)."""
        return self._relationships


def get_registry(
    base: type[orm.DeclarativeBase],
    through: _Through | None = None,
) -> Registry:
    """Describe every relationship mapped on a SQLAlchemy declarative base.

    Args:
        base: SQLAlchemy declarative base class.
        through: Multi-hop relationships to declare on top of the mapped ones,
            as ``{Owner: {"name": ("hop", "hop", ...)}}``. Hops are resolved
            eagerly, in declaration order, so a multi-hop relationship may
            use one declared before it.

    Returns:
        Registry with one descriptor per relationship.

    Raises:
        AssertionError: If base is not a subclass of orm.DeclarativeBase.
        UnknownRelationship: If a declared hop does not exist.

    Example:
        >>> registry = get_registry(Base, through={User: {"comments": ("posts", "comments")}})
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )
    base.registry.configure()

    relationships: dict[type[orm.DeclarativeBase], dict[str, RelationshipDescriptor]] = {
        mapper.class_: {
            rel.key: describe_relationship(rel) for rel in mapper.relationships.values()
        }
        for mapper in base.registry.mappers
    }
    registry = Registry(relationships)

    for owner, declared in (through or {}).items():
        for name, hops in declared.items():
            registry = registry.add(describe_through(registry, owner, name, hops))

    return registry


def describe_through(
    registry: Registry,
    owner: type[orm.DeclarativeBase],
    name: str,
    hops: Sequence[str],
) -> MultiHop:
    """Resolve *hops* from *owner* and describe them as one multi-hop relationship.

    Raises:
        UnknownRelationship: If a hop is undefined on the type reached so far.
    """
    current: type[orm.DeclarativeBase] = owner
    cardinality: Cardinality = "one"
    owner_key = ""
    for index, hop in enumerate(hops):
        descriptor = registry.lookup(current, hop)
        if index == 0:
            owner_key = descriptor.owner_key
        if descriptor.cardinality == "many":
            cardinality = "many"
        current = descriptor.related

    return MultiHop(
        owner=owner,
        related=current,
        name=name,
        hops=tuple(hops),
        owner_key=owner_key,
        cardinality=cardinality,
    )


def describe_relationship(
    relationship: orm.RelationshipProperty[Any],
) -> Direct | ManyToMany:
    """Translate a configured ``RelationshipProperty`` into a descriptor.

    Keys come from the relationship's column pairs. Every other term of
    ``primaryjoin``/``secondaryjoin`` on the related or association table
    becomes a fixed condition, as do the entries of
    ``relationship(info={"where": ..., "join_where": ...})``.
    """
    owner = relationship.parent.class_
    related = relationship.mapper.class_
    related_table = relationship.mapper.local_table
    cardinality: Cardinality = "many" if relationship.uselist else "one"
    info = relationship.info

    if relationship.secondary is not None:
        secondary = relationship.secondary
        assert isinstance(secondary, sa.Table), "secondary must be a Table"
        owner_col, owner_join_col = _first_pair(relationship, relationship.synchronize_pairs)
        related_col, related_join_col = _first_pair(
            relationship, relationship.secondary_synchronize_pairs
        )
        where: list[Predicate] = []
        join_where: list[Predicate] = []
        for clause in (relationship.primaryjoin, relationship.secondaryjoin):
            for table, predicate in _fixed_conditions(relationship, clause):
                if table is secondary:
                    join_where.append(predicate)
                elif table is related_table:
                    where.append(predicate)
                else:
                    _warn_ignored(relationship, predicate)

        return ManyToMany(
            owner=owner,
            related=related,
            name=relationship.key,
            join_through=secondary,
            owner_key=owner_col.key,
            owner_join_key=owner_join_col.key,
            related_join_key=related_join_col.key,
            related_key=related_col.key,
            cardinality=cardinality,
            constraints=(*where, *constraints_from(info.get("where"))),
            join_constraints=(*join_where, *constraints_from(info.get("join_where"))),
        )

    local_col, remote_col = _first_pair(relationship, relationship.local_remote_pairs)
    where = []
    for table, predicate in _fixed_conditions(relationship, relationship.primaryjoin):
        if table is related_table:
            where.append(predicate)
        else:
            _warn_ignored(relationship, predicate)

    return Direct(
        owner=owner,
        related=related,
        name=relationship.key,
        cardinality=cardinality,
        owner_key=local_col.key,
        related_key=remote_col.key,
        constraints=(*where, *constraints_from(info.get("where"))),
    )


def _first_pair(
    relationship: orm.RelationshipProperty[Any],
    pairs: Sequence[tuple[sa.ColumnElement[Any], sa.ColumnElement[Any]]] | None,
) -> tuple[sa.ColumnElement[Any], sa.ColumnElement[Any]]:
    if not pairs:
        raise ValueError(f"Cannot determine linking columns for relationship {relationship}")

    if len(pairs) > 1:
        warnings.warn(
            f"Relationship {relationship} links on {len(pairs)} column pairs; "
            f"only {pairs[0][0]} -> {pairs[0][1]} is used for partitioning.",
            stacklevel=3,
        )

    return pairs[0]


def _warn_ignored(relationship: orm.RelationshipProperty[Any], predicate: Predicate | str) -> None:
    match predicate:
        case Constraint(field=field):
            subject = f"on {field!r}"
        case Condition(clause=clause):
            subject = f"{str(clause)!r}"
        case _:
            subject = repr(predicate)

    warnings.warn(
        f"Ignoring condition {subject} in {relationship}: "
        "only conditions on the related or association table can be partitioned.",
        stacklevel=3,
    )


def _fixed_conditions(
    relationship: orm.RelationshipProperty[Any],
    clause: sa.ColumnElement[Any] | None,
) -> Iterator[tuple[sa.FromClause, Predicate]]:
    """Yield ``(table, predicate)`` for each term of *clause* besides the link columns.

    ``column <op> literal`` equality terms become :class:`Constraint`; any
    other term over a single table is kept as a :class:`Condition`. Terms
    spanning several tables are reported and skipped.
    """
    if clause is None:
        return

    links = _link_pairs(relationship)
    for term in _conjuncts(clause):
        if isinstance(term, True_) or _is_link(term, links):
            continue

        if (literal := _literal_constraint(term)) is not None:
            yield literal
            continue

        tables = {column.table for column in find_columns(term) if isinstance(column, sa.Column)}
        if len(tables) == 1:
            table = tables.pop()
            yield table, Condition(table, term)
        else:
            _warn_ignored(relationship, str(term))


def _link_pairs(relationship: orm.RelationshipProperty[Any]) -> set[frozenset[tuple[Any, str]]]:
    pairs = (
        *(relationship.local_remote_pairs or ()),
        *(relationship.synchronize_pairs or ()),
        *(relationship.secondary_synchronize_pairs or ()),
    )
    return {frozenset((_column_id(left), _column_id(right))) for left, right in pairs}


def _column_id(column: sa.ColumnElement[Any]) -> tuple[Any, str]:
    return getattr(column, "table", None), column.key


def _is_link(term: sa.ColumnElement[Any], links: set[frozenset[tuple[Any, str]]]) -> bool:
    return (
        isinstance(term, BinaryExpression)
        and term.operator is operators.eq
        and isinstance(term.left, sa.Column)
        and isinstance(term.right, sa.Column)
        and frozenset((_column_id(term.left), _column_id(term.right))) in links
    )


def _literal_constraint(term: sa.ColumnElement[Any]) -> tuple[sa.FromClause, Constraint] | None:
    if not isinstance(term, BinaryExpression):
        return None

    column, value = term.left, term.right
    if not isinstance(column, sa.Column):
        column, value = value, column
    if not isinstance(column, sa.Column) or column.table is None:
        return None

    literal = _literal_value(value)
    if literal is _MISSING:
        return None

    if term.operator in (operators.eq, operators.is_):
        return column.table, Constraint(column.key, literal)
    if term.operator in (operators.ne, operators.is_not):
        return column.table, Constraint(column.key, Not(literal))

    return None


def _conjuncts(clause: sa.ColumnElement[Any]) -> Iterator[sa.ColumnElement[Any]]:
    if isinstance(clause, Grouping):
        yield from _conjuncts(clause.element)
    elif isinstance(clause, BooleanClauseList) and clause.operator is operators.and_:
        for inner in clause.clauses:
            yield from _conjuncts(inner)
    else:
        yield clause


def _literal_value(element: Any) -> Any:
    if isinstance(element, BindParameter):
        return element.effective_value
    if isinstance(element, Null):
        return None
    if isinstance(element, True_):
        return True
    if isinstance(element, False_):
        return False

    return _MISSING
