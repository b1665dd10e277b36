from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, NamedTuple, Protocol, Union, final

import sqlalchemy as sa
from sqlalchemy import orm

from .chain import MAX_CHAIN_DEPTH, build_chain
from .descriptors import Cardinality, Entity, LinkStep, Predicate
from .registry import Registry
from .tools import get_table_names, resolve_column


logger = logging.getLogger(__name__)

PARTITION_KEY: Final[str] = "partition_id_"
PARTITION_ROW: Final[str] = "partition_row_"
PARTITION_COUNT: Final[str] = "partition_count_"

# One alias per join; a chain of N steps needs N - 1 of them.
JOIN_ALIASES: Final[tuple[str, ...]] = tuple(f"_join_{i}" for i in range(MAX_CHAIN_DEPTH - 1))


class QueryRunner(Protocol):
    """Anything with ``execute(statement)``: ``Session``, ``Connection`` and friends."""

    def execute(self, statement: Any, /) -> Any: ...


CustomInject = Callable[[sa.Select[Any], Any, str], sa.Select[Any]]
SortClause = Union[str, sa.ColumnElement[Any], orm.InstrumentedAttribute[Any]]


class PartitionedRecord(NamedTuple):
    """A result row detached from its partition key column."""

    partition_key: Any
    record: Any


PostProcess = Callable[[list[PartitionedRecord]], list[PartitionedRecord]]


@dataclass(slots=True, frozen=True)
class Pagination:
    """Limit and offset applied to a partitioned load.

    Without windowing they apply to the joined result as a whole; with
    ``Partition(windowed=True)`` they apply within each parent's group.
    """

    limit: int | None = None
    offset: int | None = None

    def __post_init__(self) -> None:
        for name in ("limit", "offset"):
            value = getattr(self, name)
            if value is not None and (
                isinstance(value, bool) or not isinstance(value, int) or value < 0
            ):
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")

    @classmethod
    def from_args(cls, args: Mapping[str, Any] | None) -> Pagination:
        """Read ``limit`` (or ``first``) and ``offset`` from connection-style arguments."""
        args = args or {}
        limit = args.get("limit")
        if limit is None:
            limit = args.get("first")

        return cls(limit=limit, offset=args.get("offset"))


@dataclass(slots=True, frozen=True)
class Partition:
    """One batched relationship load, immutable once built.

    Args:
        query: Base SELECT over ``related``; may already carry filters.
        owner: Parent mapped class.
        related: Related mapped class.
        field: Relationship name on ``owner``.
        runner: Default execution handle used by ``load``/``aload``.
        sort: ORDER BY clauses. Strings name attributes of ``related``
            (``"-name"`` for descending).
        pagination: Limit and offset.
        windowed: Paginate per parent through ``row_number()`` instead of
            over the whole result.
        custom_inject: ``(query, correlation_alias, correlation_key) -> query``,
            run after the parent constraint and before the partition key
            is projected.
        post_process: Transform over the flat list of
            :class:`PartitionedRecord` before grouping.
    """

    query: sa.Select[Any]
    owner: type[orm.DeclarativeBase]
    related: type[orm.DeclarativeBase]
    field: str
    runner: Any = None
    sort: tuple[SortClause, ...] = ()
    pagination: Pagination = field(default_factory=Pagination)
    windowed: bool = False
    custom_inject: CustomInject | None = None
    post_process: PostProcess | None = None


@dataclass(slots=True, frozen=True)
class InvertedQuery:
    """Result of inverting a partition for one batch of parent ids.

    ``correlation_alias`` is the alias of the last joined entity, or ``None``
    when the chain needed no join and everything binds to the base entity.
    ``correlation_key`` is the linking column on it.
    """

    query: sa.Select[Any]
    correlation_alias: Any
    correlation_key: str
    chain: tuple[LinkStep, ...]
    partition: Partition


@dataclass(slots=True)
class _AttachedChain:
    query: sa.Select[Any]
    alias: Any
    scope: Any
    key: str
    chain: tuple[LinkStep, ...]

    @property
    def column(self) -> sa.ColumnElement[Any]:
        return resolve_column(self.scope, self.key)


@final
class Partitioner:
    """Builds and runs partitioned queries over the relationships of a registry.

    Stateless apart from the registry it is constructed with; one instance
    can serve any number of concurrent requests.

    Example:
        >>> partitioner = Partitioner(get_registry(Base))
        >>> partition = partitioner.partition(User, "posts", sort=("-id",))
        >>> posts_by_author = await partitioner.aload(partition, [1, 2, 3], session)
    """

    __slots__ = ("registry",)

    def __init__(self, registry: Registry) -> None:
        self.registry = registry

    def partition(
        self,
        owner: type[orm.DeclarativeBase],
        field: str,
        query: sa.Select[Any] | None = None,
        **options: Any,
    ) -> Partition:
        """Construct a :class:`Partition`, resolving the related entity from the registry.

        Args:
            owner: Parent mapped class.
            field: Relationship name on *owner*.
            query: Base SELECT over the related entity. Defaults to
                ``select(related)``.
            **options: Remaining :class:`Partition` fields. ``pagination``
                also accepts a mapping of connection arguments.

        Raises:
            UnknownRelationship: If *owner* has no relationship *field*.
        """
        related = self.registry.lookup(owner, field).related
        if (pagination := options.get("pagination")) is not None and not isinstance(
            pagination, Pagination
        ):
            options["pagination"] = Pagination.from_args(pagination)
        if "sort" in options:
            options["sort"] = tuple(options["sort"])

        return Partition(
            query=sa.select(related) if query is None else query,
            owner=owner,
            related=related,
            field=field,
            **options,
        )

    def build_chain(self, owner: Any, name: str) -> tuple[LinkStep, ...]:
        """Join chain of relationship *name* on *owner*; see :func:`~sqla_partitions.chain.build_chain`."""
        return build_chain(self.registry, owner, name)

    def owner_key(self, partition: Partition) -> str:
        """Key on the owner whose value identifies a parent's partition."""
        return self.registry.lookup(partition.owner, partition.field).owner_key

    def related_key(self, partition: Partition) -> str:
        """Key on the related entity matched by the owner key.

        For multi-hop and many-to-many relationships this is the key on the
        first intermediate entity, since that is where the owner's value is
        matched.
        """
        return self.build_chain(partition.owner, partition.field)[0].related_key

    def cardinality(self, partition: Partition) -> Cardinality:
        return self.registry.lookup(partition.owner, partition.field).cardinality

    # Query inversion

    def invert(self, partition: Partition, parent_ids: Iterable[Any]) -> InvertedQuery:
        """Attach the join chain to the partition's base query for a batch of parents.

        The final joined alias's linking column is constrained with a single
        ``IN (parent_ids)`` and projected as ``partition_id_``.

        Raises:
            UnknownRelationship: If the relationship is not defined.
            ChainTooDeep: If the chain is longer than ``MAX_CHAIN_DEPTH`` steps.
        """
        attached = self._attach(partition)
        query = attached.query.where(attached.column.in_(list(parent_ids)))
        if partition.custom_inject is not None:
            query = partition.custom_inject(query, attached.alias, attached.key)
        query = query.add_columns(attached.column.label(PARTITION_KEY))

        return InvertedQuery(
            query=query,
            correlation_alias=attached.alias,
            correlation_key=attached.key,
            chain=attached.chain,
            partition=partition,
        )

    def existence_query(
        self,
        partition: Partition,
        parent_alias: Any,
        owner_key: str | None = None,
    ) -> sa.Select[Any]:
        """Correlated ``SELECT 1`` over the partition's join chain.

        The final alias's linking column is matched against
        ``parent_alias.<owner_key>`` of the enclosing query instead of a
        list of parent ids.

        Args:
            partition: Partition whose base query holds the related-side filters.
            parent_alias: Owner entity (or ``orm.aliased`` owner) of the
                enclosing query.
            owner_key: Column key on *parent_alias*. Defaults to the
                relationship's owner key.
        """
        attached = self._attach(partition)
        owner_key = owner_key or attached.chain[0].owner_key
        return (
            attached.query.where(resolve_column(parent_alias, owner_key) == attached.column)
            .with_only_columns(sa.literal(1), maintain_column_froms=True)
            .correlate(parent_alias)
        )

    def existence_subquery(
        self,
        partition: Partition,
        parent_alias: Any,
        owner_key: str | None = None,
    ) -> sa.Exists:
        """``EXISTS (...)`` form of :meth:`existence_query`."""
        return self.existence_query(partition, parent_alias, owner_key).exists()

    def filter_related(
        self,
        query: sa.Select[Any],
        partition: Partition,
        parent_alias: Any = None,
        *,
        negate: bool = False,
    ) -> sa.Select[Any]:
        """Keep the rows of *query* that have (or, with *negate*, lack) a related record.

        Related records are those matched by the partition's base query, so
        ``partition.query`` doubles as the nested filter.

        Example:
            >>> published = partitioner.partition(
            ...     User, "posts", sa.select(Post).where(Post.status == "published")
            ... )
            >>> query = partitioner.filter_related(sa.select(User), published)
        """
        exists = self.existence_subquery(
            partition, partition.owner if parent_alias is None else parent_alias
        )
        return query.where(~exists if negate else exists)

    def partitioned_query(self, partition: Partition, parent_ids: Iterable[Any]) -> sa.Select[Any]:
        """The inverted query with sorting and pagination applied, ready to execute.

        Without an explicit ``sort`` rows come in primary-key order of the
        related entity, then by partition key.
        """
        inverted = self.invert(partition, parent_ids)
        if partition.windowed:
            return self._windowed(inverted)

        correlation = resolve_column(
            partition.related if inverted.correlation_alias is None else inverted.correlation_alias,
            inverted.correlation_key,
        )
        query = inverted.query.order_by(
            *(self._sort_clauses(partition) or [*_primary_key(partition), correlation])
        )
        if partition.pagination.limit is not None:
            query = query.limit(partition.pagination.limit)
        if partition.pagination.offset:
            query = query.offset(partition.pagination.offset)

        return query

    def count_query(self, partition: Partition, parent_ids: Iterable[Any]) -> sa.Select[Any]:
        """``SELECT partition_id_, count(*) ... GROUP BY partition_id_`` for a batch."""
        attached = self._attach(partition)
        column = attached.column
        query = attached.query.where(column.in_(list(parent_ids)))
        if partition.custom_inject is not None:
            query = partition.custom_inject(query, attached.alias, attached.key)

        return query.with_only_columns(
            column.label(PARTITION_KEY),
            sa.func.count().label(PARTITION_COUNT),
            maintain_column_froms=True,
        ).group_by(column)

    # Execution

    def load(
        self,
        partition: Partition,
        parent_ids: Iterable[Any],
        runner: QueryRunner | None = None,
    ) -> dict[Any, list[Any]]:
        """Load related records for every parent in one query.

        Args:
            partition: What to load.
            parent_ids: Partition values of the parents (see
                :func:`~sqla_partitions.batch.partition_value`). ``None``
                values are skipped.
            runner: ``Session``/``Connection``; defaults to ``partition.runner``.

        Returns:
            ``{parent_id: [record, ...]}``. Parents without related records
            are absent.
        """
        ids = _batch_ids(parent_ids)
        if not ids:
            return {}

        runner = _resolve_runner(partition, runner)
        query = self.partitioned_query(partition, ids)
        self._log_load(partition, ids, query)
        result = runner.execute(query)

        return self._group(partition, result.all())

    async def aload(
        self,
        partition: Partition,
        parent_ids: Iterable[Any],
        runner: Any = None,
    ) -> dict[Any, list[Any]]:
        """Async :meth:`load` for ``AsyncSession``/``AsyncConnection`` runners."""
        ids = _batch_ids(parent_ids)
        if not ids:
            return {}

        runner = _resolve_runner(partition, runner)
        query = self.partitioned_query(partition, ids)
        self._log_load(partition, ids, query)
        result = await runner.execute(query)

        return self._group(partition, result.all())

    def load_counts(
        self,
        partition: Partition,
        parent_ids: Iterable[Any],
        runner: QueryRunner | None = None,
    ) -> dict[Any, int]:
        """Count related records per parent in one query; parents with none are absent."""
        ids = _batch_ids(parent_ids)
        if not ids:
            return {}

        runner = _resolve_runner(partition, runner)
        query = self.count_query(partition, ids)
        self._log_load(partition, ids, query)
        result = runner.execute(query)

        return {row[0]: row[1] for row in result.all()}

    async def aload_counts(
        self,
        partition: Partition,
        parent_ids: Iterable[Any],
        runner: Any = None,
    ) -> dict[Any, int]:
        """Async :meth:`load_counts`."""
        ids = _batch_ids(parent_ids)
        if not ids:
            return {}

        runner = _resolve_runner(partition, runner)
        query = self.count_query(partition, ids)
        self._log_load(partition, ids, query)
        result = await runner.execute(query)

        return {row[0]: row[1] for row in result.all()}

    # Internals

    def _attach(self, partition: Partition) -> _AttachedChain:
        """Join the chain onto the base query, walking from the related end.

        Each step's constraints bind to the alias of its related side, which
        is the current alias when the step is reached. Every step but the
        first then joins its owner under the next free alias.
        """
        chain = self.build_chain(partition.owner, partition.field)
        query = partition.query
        alias: Any = None
        scope: Any = partition.related

        for depth, step in enumerate(reversed(chain)):
            query = _apply_constraints(query, scope, step.constraints)
            if depth == len(chain) - 1:
                break

            joined = _join_alias(step.owner, depth)
            query = query.join_from(
                scope,
                joined,
                resolve_column(joined, step.owner_key) == resolve_column(scope, step.related_key),
            )
            alias = scope = joined

        return _AttachedChain(
            query=query,
            alias=alias,
            scope=scope,
            key=chain[0].related_key,
            chain=chain,
        )

    def _sort_clauses(self, partition: Partition) -> list[sa.ColumnElement[Any]]:
        clauses: list[sa.ColumnElement[Any]] = []
        for clause in partition.sort:
            if isinstance(clause, str):
                descending = clause.startswith("-")
                attribute = getattr(partition.related, clause.lstrip("-"))
                clauses.append(attribute.desc() if descending else attribute.asc())
            else:
                clauses.append(clause)

        return clauses

    def _windowed(self, inverted: InvertedQuery) -> sa.Select[Any]:
        """Number rows per partition and keep ``offset < row <= offset + limit``."""
        partition = inverted.partition
        query = inverted.query
        key_column = query.selected_columns[PARTITION_KEY]
        order = self._sort_clauses(partition) or _primary_key(partition)
        row_number = (
            sa.func.row_number().over(partition_by=key_column, order_by=order).label(PARTITION_ROW)
        )
        inner = query.add_columns(row_number).subquery("partitioned")

        description = query.column_descriptions[0]
        if len(query.column_descriptions) == 2 and description["expr"] is partition.related:  # noqa: PLR2004
            outer = sa.select(orm.aliased(partition.related, inner), inner.c[PARTITION_KEY])
        else:
            outer = sa.select(*(column for column in inner.c if column.key != PARTITION_ROW))

        pagination = partition.pagination
        offset = pagination.offset or 0
        if offset:
            outer = outer.where(inner.c[PARTITION_ROW] > offset)
        if pagination.limit is not None:
            outer = outer.where(inner.c[PARTITION_ROW] <= offset + pagination.limit)

        return outer.order_by(inner.c[PARTITION_KEY], inner.c[PARTITION_ROW])

    def _group(self, partition: Partition, rows: Sequence[sa.Row[Any]]) -> dict[Any, list[Any]]:
        records = [_partitioned_record(row) for row in rows]
        if partition.post_process is not None:
            records = partition.post_process(records)

        grouped: dict[Any, list[Any]] = {}
        for item in records:
            grouped.setdefault(item.partition_key, []).append(item.record)

        return grouped

    def _log_load(self, partition: Partition, ids: Sequence[Any], query: sa.Select[Any]) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Partitioned load %s.%s for %d parents over %s",
                partition.owner.__name__,
                partition.field,
                len(ids),
                ", ".join(get_table_names(query)),
            )


def _join_alias(entity: Entity, depth: int) -> Any:
    name = JOIN_ALIASES[depth]
    if isinstance(entity, sa.FromClause):
        return entity.alias(name)

    return orm.aliased(entity, name=name)


def _primary_key(partition: Partition) -> list[sa.ColumnElement[Any]]:
    return list(sa.inspect(partition.related).primary_key)


def _apply_constraints(
    query: sa.Select[Any],
    scope: Any,
    constraints: tuple[Predicate, ...],
) -> sa.Select[Any]:
    if not constraints:
        return query

    return query.where(*(c.bind(scope) for c in constraints))


def _partitioned_record(row: sa.Row[Any]) -> PartitionedRecord:
    values = tuple(row)[:-1]
    return PartitionedRecord(
        partition_key=row._mapping[PARTITION_KEY],  # noqa: SLF001
        record=values[0] if len(values) == 1 else values,
    )


def _batch_ids(parent_ids: Iterable[Any]) -> list[Hashable]:
    """Drop ``None`` and duplicates, keeping first-seen order."""
    return list(dict.fromkeys(pid for pid in parent_ids if pid is not None))


def _resolve_runner(partition: Partition, runner: Any) -> Any:
    runner = runner if runner is not None else partition.runner
    if runner is None:
        raise ValueError(
            f"No query runner for {partition.owner.__name__}.{partition.field}: "
            "pass one to load() or set Partition.runner"
        )

    return runner
