"""Shared exceptions for service layer operations."""


class BookmarkNotFoundError(Exception):
    """
    Raised when a bookmark does not exist for the requesting owner.

    Covers both "never existed / already deleted" and "belongs to someone
    else" - callers cannot tell the two apart.
    """

    def __init__(self, bookmark_id: object) -> None:
        self.bookmark_id = bookmark_id
        super().__init__(f"Bookmark not found: {bookmark_id}")


class BookmarkValidationError(Exception):
    """Raised when a write is rejected before reaching the store."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
