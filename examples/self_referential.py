"""Self-referential relationship loading example.

Demonstrates loading parents, children and grandchildren on the same model
(Category), and filtering categories by whether they have children.
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.ext.asyncio import AsyncSession

from sqla_partitions import Partitioner, get_registry, partition_value

from .models import THROUGH, Base, Category


partitioner = Partitioner(get_registry(Base, through=THROUGH))


async def children_of(session: AsyncSession, category_ids: list[int]) -> dict[int, list[Category]]:
    return await partitioner.aload(partitioner.partition(Category, "children"), category_ids, session)


async def grandchildren_of(session: AsyncSession, category_ids: list[int]) -> dict[int, list[Category]]:
    # joins categories to itself under the _join_0 alias
    return await partitioner.aload(partitioner.partition(Category, "grandchildren"), category_ids, session)


async def parents_of(session: AsyncSession, categories: list[Category]) -> dict[int, list[Category]]:
    # roots have no parent_id and are skipped
    descriptor = partitioner.registry.lookup(Category, "parent")
    ids = [partition_value(descriptor, category) for category in categories]
    return await partitioner.aload(partitioner.partition(Category, "parent"), ids, session)


async def leaf_categories(session: AsyncSession) -> list[Category]:
    # the enclosing query must use an alias, otherwise it would correlate with itself
    parent = orm.aliased(Category, name="parent")
    query = partitioner.filter_related(
        sa.select(parent),
        partitioner.partition(Category, "children"),
        parent,
        negate=True,
    )
    result = await session.execute(query)
    return list(result.scalars().all())
