"""SQLAlchemy models."""
from models.base import Base, CreatedAtMixin, UUIDv7Mixin
from models.bookmark import Bookmark

__all__ = [
    "Base",
    "Bookmark",
    "CreatedAtMixin",
    "UUIDv7Mixin",
]
