"""Async execution benchmarks: one partitioned query vs one query per parent.

Measures actual query execution time (not just query building).
Run with: pytest tests/benchmarks/ -v -s
Skip with: pytest tests/ -m "not benchmark"
"""
from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any, Final

import pytest
import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.ext.asyncio import AsyncSession

from sqla_partitions import Pagination, Partitioner

from ..models import Comment, Post, Reaction, Role, User, user_roles

pytestmark = [pytest.mark.anyio, pytest.mark.benchmark]


N: Final[int] = 20
USERS: Final[int] = 50


@pytest.fixture
async def seed_bench(session: AsyncSession) -> list[int]:
    """Seed 50 users, 10 posts/user, 5 comments/post, 2 reactions/comment and 2-3 roles/user."""
    users = [User(id=i, name=f"user_{i}", active=True) for i in range(1, USERS + 1)]
    session.add_all(users)
    await session.flush()

    posts = [
        Post(id=(user.id - 1) * 10 + j, title=f"Post {j} by {user.name}", body="x", author_id=user.id)
        for user in users
        for j in range(1, 11)
    ]
    session.add_all(posts)
    await session.flush()

    comments = [
        Comment(id=(post.id - 1) * 5 + j, text=f"Comment {j}", post_id=post.id)
        for post in posts
        for j in range(1, 6)
    ]
    session.add_all(comments)
    await session.flush()

    reactions = [
        Reaction(id=(comment.id - 1) * 2 + j, emoji="\U0001f44d", comment_ref=comment.id)
        for comment in comments
        for j in range(1, 3)
    ]
    session.add_all(reactions)
    await session.flush()

    session.add_all([Role(id=i, name=f"role_{i}", level=i) for i in range(1, 6)])
    await session.flush()
    await session.execute(
        user_roles.insert().values([
            {"user_id": user.id, "role_id": role_id, "kind": "member"}
            for user in users
            for role_id in ([1, 2] if user.id % 2 == 0 else [1, 2, 3])
        ])
    )
    await session.flush()

    session.expunge_all()
    return [user.id for user in users]


async def _measure(session: AsyncSession, fn: Callable[[], Awaitable[Any]], n: int = N) -> float:
    # Warm up
    await fn()
    session.expunge_all()

    start = time.perf_counter()
    for _ in range(n):
        await fn()
        session.expunge_all()

    return time.perf_counter() - start


def _fmt(label: str, elapsed: float, n: int = N) -> str:
    return f"    {label:<30s} {elapsed:.3f}s ({n} batches, {elapsed / n * 1000:.1f}ms/batch)"


class TestExecutionBenchmarks:
    async def test_o2m_posts(
        self, partitioner: Partitioner, session: AsyncSession, seed_bench: list[int]
    ) -> None:
        partition = partitioner.partition(User, "posts")

        async def per_parent() -> None:
            for user_id in seed_bench:
                await session.execute(sa.select(Post).where(Post.author_id == user_id))

        async def selectin() -> None:
            await session.execute(sa.select(User).options(orm.selectinload(User.posts)))

        t_part = await _measure(session, lambda: partitioner.aload(partition, seed_bench, session))
        t_each = await _measure(session, per_parent)
        t_sel = await _measure(session, selectin)

        print(f"\n  O2M posts ({len(seed_bench)} parents):")
        print(_fmt("partitioned:", t_part))
        print(_fmt("query per parent:", t_each))
        print(_fmt("selectinload:", t_sel))
        print(f"    ratio (per parent/partitioned): {t_each / t_part:.2f}x")

    async def test_m2m_roles(
        self, partitioner: Partitioner, session: AsyncSession, seed_bench: list[int]
    ) -> None:
        partition = partitioner.partition(User, "roles")

        async def per_parent() -> None:
            for user_id in seed_bench:
                await session.execute(
                    sa.select(Role).join(user_roles, user_roles.c.role_id == Role.id)
                    .where(user_roles.c.user_id == user_id)
                )

        t_part = await _measure(session, lambda: partitioner.aload(partition, seed_bench, session))
        t_each = await _measure(session, per_parent)

        print(f"\n  M2M roles ({len(seed_bench)} parents):")
        print(_fmt("partitioned:", t_part))
        print(_fmt("query per parent:", t_each))
        print(f"    ratio (per parent/partitioned): {t_each / t_part:.2f}x")

    async def test_multi_hop_reactions(
        self, partitioner: Partitioner, session: AsyncSession, seed_bench: list[int]
    ) -> None:
        partition = partitioner.partition(User, "reactions")

        async def per_parent() -> None:
            for user_id in seed_bench:
                await session.execute(
                    sa.select(Reaction)
                    .join(Comment, Comment.id == Reaction.comment_ref)
                    .join(Post, Post.id == Comment.post_id)
                    .where(Post.author_id == user_id)
                )

        t_part = await _measure(session, lambda: partitioner.aload(partition, seed_bench, session))
        t_each = await _measure(session, per_parent)
        result = await partitioner.aload(partition, seed_bench, session)

        print(f"\n  Multi-hop reactions ({len(seed_bench)} parents):")
        print(_fmt("partitioned:", t_part))
        print(_fmt("query per parent:", t_each))
        print(f"    ratio (per parent/partitioned): {t_each / t_part:.2f}x")

        assert all(len(reactions) == 100 for reactions in result.values())

    async def test_windowed_vs_global(
        self, partitioner: Partitioner, session: AsyncSession, seed_bench: list[int]
    ) -> None:
        windowed = partitioner.partition(
            User, "comments", sort=("-id",), pagination=Pagination(limit=3), windowed=True
        )
        unpaginated = partitioner.partition(User, "comments", sort=("-id",))

        t_win = await _measure(session, lambda: partitioner.aload(windowed, seed_bench, session))
        t_all = await _measure(session, lambda: partitioner.aload(unpaginated, seed_bench, session))
        result = await partitioner.aload(windowed, seed_bench, session)

        print(f"\n  Comments, 3 per parent ({len(seed_bench)} parents):")
        print(_fmt("windowed row_number:", t_win))
        print(_fmt("everything:", t_all))

        assert all(len(comments) == 3 for comments in result.values())
