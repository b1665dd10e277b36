"""Blog schema used by the examples.

Covers each relationship shape the partitioner understands: has-many,
belongs-to, many-to-many filtered on the association table, a relationship
filtered with a non-literal condition, a self-referential tree and the
multi-hop paths declared in ``THROUGH``.
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import orm


class Base(orm.DeclarativeBase):
    pass


memberships = sa.Table(
    "memberships",
    Base.metadata,
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), primary_key=True),
    sa.Column("role_id", sa.Integer, sa.ForeignKey("roles.id"), primary_key=True),
    sa.Column("revoked", sa.Boolean, nullable=False, default=False),
)


class User(Base):
    __tablename__ = "users"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    posts: orm.Mapped[list[Post]] = orm.relationship(back_populates="author", lazy="noload")
    # kept as SQL and applied to every partitioned load
    published_posts: orm.Mapped[list[Post]] = orm.relationship(
        primaryjoin="and_(User.id == foreign(Post.author_id), Post.status.in_(['published', 'pinned']))",
        viewonly=True,
        lazy="noload",
    )
    # revoked memberships never partition
    roles: orm.Mapped[list[Role]] = orm.relationship(
        secondary=memberships,
        primaryjoin="and_(User.id == memberships.c.user_id, memberships.c.revoked.is_(False))",
        secondaryjoin="Role.id == memberships.c.role_id",
        viewonly=True,
        lazy="noload",
    )


class Post(Base):
    __tablename__ = "posts"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))
    status: orm.Mapped[str] = orm.mapped_column(sa.String(20), default="draft")
    author_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("users.id"))

    author: orm.Mapped[User] = orm.relationship(back_populates="posts", lazy="noload")
    comments: orm.Mapped[list[Comment]] = orm.relationship(back_populates="post", lazy="noload")


class Comment(Base):
    __tablename__ = "comments"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    body: orm.Mapped[str] = orm.mapped_column(sa.Text)
    post_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("posts.id"))

    post: orm.Mapped[Post] = orm.relationship(back_populates="comments", lazy="noload")
    reactions: orm.Mapped[list[Reaction]] = orm.relationship(lazy="noload")


class Reaction(Base):
    __tablename__ = "reactions"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    emoji: orm.Mapped[str] = orm.mapped_column(sa.String(10))
    comment_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("comments.id"))


class Role(Base):
    __tablename__ = "roles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(50), unique=True)
    level: orm.Mapped[int] = orm.mapped_column(default=0)


class Category(Base):
    __tablename__ = "categories"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    slug: orm.Mapped[str] = orm.mapped_column(sa.String(100), unique=True)
    parent_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("categories.id"))

    parent: orm.Mapped[Category | None] = orm.relationship(
        back_populates="children", remote_side=[id], lazy="noload"
    )
    children: orm.Mapped[list[Category]] = orm.relationship(back_populates="parent", lazy="noload")


THROUGH = {
    User: {
        "comments": ("posts", "comments"),
        "reactions": ("comments", "reactions"),
    },
    Category: {
        "grandchildren": ("children", "children"),
    },
}
