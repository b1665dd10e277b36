"""Partitioned relationship loading for SQLAlchemy.

sqla_partitions turns per-parent relationship lookups into one query per
batch. Build a ``Registry`` from your declarative base at startup, wrap it in
a ``Partitioner``, then call ``partitioner.load(partition, parent_ids,
session)`` to get ``{parent_id: [related, ...]}`` for the whole batch:
direct, many-to-many and multi-hop relationships alike, with fixed
relationship conditions, sorting, per-parent pagination and correlated
``EXISTS`` filters built from the same join chain.
"""

from ._version import __version__, __version_tuple__
from .batch import BatchKey, partition_value
from .chain import MAX_CHAIN_DEPTH, build_chain
from .core import (
    JOIN_ALIASES,
    PARTITION_KEY,
    InvertedQuery,
    Pagination,
    Partition,
    PartitionedRecord,
    Partitioner,
)
from .datastructures import freeze, frozendict
from .descriptors import (
    Condition,
    Constraint,
    Direct,
    LinkStep,
    ManyToMany,
    MultiHop,
    Not,
    RelationshipDescriptor,
)
from .errors import ChainTooDeep, PartitionError, UnknownRelationship
from .registry import Registry, describe_relationship, get_registry
from .tools import (
    get_primary_key,
    get_table_name,
    get_table_names,
    inject_conditions,
    resolve_column,
)


__all__ = (
    "JOIN_ALIASES",
    "MAX_CHAIN_DEPTH",
    "PARTITION_KEY",
    "BatchKey",
    "ChainTooDeep",
    "Condition",
    "Constraint",
    "Direct",
    "InvertedQuery",
    "LinkStep",
    "ManyToMany",
    "MultiHop",
    "Not",
    "Pagination",
    "Partition",
    "PartitionError",
    "PartitionedRecord",
    "Partitioner",
    "Registry",
    "RelationshipDescriptor",
    "UnknownRelationship",
    "__version__",
    "__version_tuple__",
    "build_chain",
    "describe_relationship",
    "freeze",
    "frozendict",
    "get_primary_key",
    "get_registry",
    "get_table_name",
    "get_table_names",
    "inject_conditions",
    "partition_value",
    "resolve_column",
)
