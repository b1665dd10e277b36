"""Basic sqla-partitions usage examples.

Demonstrates registry setup, batched loads for every relationship kind,
sorting and pagination, counts, EXISTS filters and batch keys.

NOTE: This file is illustrative; it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from sqla_partitions import (
    BatchKey,
    Pagination,
    Partitioner,
    get_registry,
    inject_conditions,
    partition_value,
)

from .models import THROUGH, Base, Post, Role, User


# ── 1. Build the registry once at startup ───────────────────────────

engine = create_async_engine("sqlite+aiosqlite:///:memory:")
partitioner = Partitioner(get_registry(Base, through=THROUGH))


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ── 2. One query for the whole batch ────────────────────────────────


async def posts_by_author(session: AsyncSession, users: list[User]) -> dict[int, list[Post]]:
    partition = partitioner.partition(User, "posts")
    return await partitioner.aload(partition, [user.id for user in users], session)


async def roles_by_user(session: AsyncSession, user_ids: list[int]) -> dict[int, list[Role]]:
    # many-to-many: joins through memberships, skipping revoked ones
    return await partitioner.aload(partitioner.partition(User, "roles"), user_ids, session)


async def reactions_by_user(session: AsyncSession, user_ids: list[int]) -> dict[int, list[Any]]:
    # multi-hop: users -> posts -> comments -> reactions
    return await partitioner.aload(partitioner.partition(User, "reactions"), user_ids, session)


async def authors_of(session: AsyncSession, posts: list[Post]) -> dict[int, list[User]]:
    # belongs-to: the partition value is the foreign key on each post
    descriptor = partitioner.registry.lookup(Post, "author")
    ids = [partition_value(descriptor, post) for post in posts]
    return await partitioner.aload(partitioner.partition(Post, "author"), ids, session)


# ── 3. Filters, sort and pagination ─────────────────────────────────


async def latest_published_posts(session: AsyncSession, user_ids: list[int]) -> dict[int, list[Post]]:
    # three newest published posts per user
    partition = partitioner.partition(
        User,
        "published_posts",
        sort=("-id",),
        pagination=Pagination(limit=3),
        windowed=True,
    )
    return await partitioner.aload(partition, user_ids, session)


async def senior_roles(session: AsyncSession, user_ids: list[int]) -> dict[int, list[Role]]:
    partition = partitioner.partition(
        User,
        "roles",
        sa.select(Role).where(Role.level > 3),  # noqa: PLR2004
        custom_inject=inject_conditions(Role.name != "guest"),
    )
    return await partitioner.aload(partition, user_ids, session)


# ── 4. Counts ────────────────────────────────────────────────────────


async def post_counts(session: AsyncSession, user_ids: list[int]) -> dict[int, int]:
    return await partitioner.aload_counts(partitioner.partition(User, "posts"), user_ids, session)


# ── 5. EXISTS filters ────────────────────────────────────────────────


async def users_without_posts(session: AsyncSession) -> list[User]:
    query = partitioner.filter_related(sa.select(User), partitioner.partition(User, "posts"), negate=True)
    result = await session.execute(query)
    return list(result.scalars().all())


# ── 6. Batch keys ────────────────────────────────────────────────────


async def load_requests(
    session: AsyncSession, requests: list[tuple[Any, str, dict[str, Any]]]
) -> dict[BatchKey, dict[Any, list[Any]]]:
    """Coalesce ``(parent, field, args)`` requests into one load per batch key."""
    registry = partitioner.registry
    buckets: defaultdict[BatchKey, list[Any]] = defaultdict(list)
    for parent, field, args in requests:
        key = BatchKey.new(registry, parent, field, args)
        buckets[key].append(key.partition_value(parent))

    loaded: dict[BatchKey, dict[Any, list[Any]]] = {}
    for key, ids in buckets.items():
        partition = partitioner.partition(key.owner, key.field, pagination=dict(key.args), windowed=True)
        loaded[key] = await partitioner.aload(partition, ids, session)

    return loaded
