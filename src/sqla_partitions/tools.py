from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import lru_cache
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.sql.elements import ClauseElement


T = TypeVar("T", bound=orm.DeclarativeBase)


@lru_cache
def _get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Return the first primary-key column element for *model* (cached)."""
    return next(iter(model.__table__.primary_key))


@lru_cache
def _get_table_name(model: type[T]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(
        model,
        "__tablename__",
        model.__table__.description,
    )
    if not result:
        raise ValueError(f"Cannot determine tablename for {model}")

    return result


def get_table_name(model: type[T] | sa.Table) -> str:
    """Get the table name for a mapped class or a ``Table``.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    if isinstance(model, sa.Table):
        return model.name

    return _get_table_name(model)


def get_primary_key(model: type[T]) -> sa.ColumnElement[Any]:
    """Get the primary key column for a SQLAlchemy model."""
    return _get_primary_key(model)


def get_table_names(query: sa.Select[Any]) -> Sequence[str]:
    """Extract the names of every table and alias in the FROM clause of *query*.

    Joins are walked on both sides, so for an inverted query this lists the
    related table followed by each ``_join_N`` alias.
    """
    seen: set[str] = set()
    out: list[str] = []

    def add(name: str | None) -> None:
        if name and name not in seen:
            seen.add(name)
            out.append(name)

    for root in query.get_final_froms():
        stack: list[Any] = [root]
        while stack:
            node = stack.pop()

            if isinstance(node, sa.Table):
                add(node.name)
                continue

            if isinstance(node, sa.Join):
                stack.extend([node.right, node.left])
                continue

            add(getattr(node, "name", None))
            if hasattr(node, "element"):
                stack.append(node.element)

    return out


def resolve_column(target: Any, key: str) -> sa.ColumnElement[Any]:
    """Return the column named *key* on *target*.

    *target* may be a mapped class, an ``orm.aliased`` entity, a ``Table`` or
    any other ``FromClause`` (e.g. a table alias). *key* is the column key,
    which can differ from the mapped attribute name.

    Raises:
        KeyError: If *target* has no such column.
    """
    if isinstance(target, sa.FromClause):
        return target.c[key]

    return sa.inspect(target).selectable.c[key]


def inject_conditions(
    *conditions: Callable[[Any], sa.ColumnExpressionArgument[bool]] | sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[Any], Any, str], sa.Select[Any]]:
    """Create a ``custom_inject`` hook that adds WHERE conditions.

    Plain expressions are added as-is. Callables receive the correlation
    column (the linking column of the last joined alias) and return an
    expression, which lets a condition refer to the join chain.

    Example:
        >>> hook = inject_conditions(
        ...     Post.status == "published",
        ...     lambda owner_col: owner_col != 0,
        ... )
        >>> partition = Partition(..., custom_inject=hook)
    """

    def _inject(query: sa.Select[Any], correlation_alias: Any, correlation_key: str) -> sa.Select[Any]:
        clauses = []
        for condition in conditions:
            if callable(condition) and not isinstance(condition, ClauseElement):
                target = correlation_alias
                if target is None:
                    target = query.column_descriptions[0]["entity"]

                condition = condition(resolve_column(target, correlation_key))  # noqa: PLW2901
            clauses.append(condition)

        return query.where(*clauses)

    return _inject
