"""Bookmark model for storing user bookmarks."""
from sqlalchemy import CheckConstraint, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, CreatedAtMixin, UUIDv7Mixin


class Bookmark(Base, UUIDv7Mixin, CreatedAtMixin):
    """
    Bookmark model - a saved link owned by one user.

    Rows are never updated: a bookmark is created and later deleted, nothing
    else. `owner_id` is the identity provider's user id and the only
    access-scoping key; every query filters on it.
    """

    __tablename__ = "bookmarks"
    __table_args__ = (
        CheckConstraint("owner_id <> ''", name="ck_bookmarks_owner_id_not_empty"),
        CheckConstraint("title <> ''", name="ck_bookmarks_title_not_empty"),
        CheckConstraint("url <> ''", name="ck_bookmarks_url_not_empty"),
        # Listing is always "this owner's rows, newest first"
        Index("ix_bookmarks_owner_id_created_at", "owner_id", "created_at"),
    )

    # id provided by UUIDv7Mixin
    owner_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Identity provider user id - set once at creation",
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
