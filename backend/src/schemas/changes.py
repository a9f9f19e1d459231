"""
Change events carried on the bookmark change feed.

Wire format (JSON):
    {"type": "INSERT", "table": "bookmarks", "record": {...bookmark...}}
    {"type": "DELETE", "table": "bookmarks", "old_record": {"id": "..."}}

Payloads are validated into a tagged variant before anything downstream
touches them; a payload that does not match either shape is rejected here.
"""
import json
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from schemas.bookmark import BookmarkResponse

BOOKMARKS_TABLE = "bookmarks"


class DeletedRecord(BaseModel):
    """The part of a deleted row that the feed carries."""

    model_config = ConfigDict(frozen=True)

    id: UUID


class BookmarkInserted(BaseModel):
    """A bookmark was created."""

    model_config = ConfigDict(frozen=True)

    type: Literal["INSERT"] = "INSERT"
    table: Literal["bookmarks"] = BOOKMARKS_TABLE
    record: BookmarkResponse


class BookmarkDeleted(BaseModel):
    """A bookmark was deleted."""

    model_config = ConfigDict(frozen=True)

    type: Literal["DELETE"] = "DELETE"
    table: Literal["bookmarks"] = BOOKMARKS_TABLE
    old_record: DeletedRecord
    # Deletes carry the owner so feeds can route them without the full row
    owner_id: str


BookmarkChange = Annotated[BookmarkInserted | BookmarkDeleted, Field(discriminator="type")]

_change_adapter: TypeAdapter[BookmarkChange] = TypeAdapter(BookmarkChange)


def parse_change(payload: str | bytes | dict[str, Any]) -> BookmarkInserted | BookmarkDeleted:
    """
    Validate a raw feed payload.

    Raises:
        pydantic.ValidationError: If the payload matches neither event shape.
        ValueError: If a string payload is not JSON.
    """
    if isinstance(payload, str | bytes):
        payload = json.loads(payload)
    return _change_adapter.validate_python(payload)


def change_owner(change: BookmarkInserted | BookmarkDeleted) -> str:
    """Owner whose channel an event belongs to."""
    if isinstance(change, BookmarkInserted):
        return change.record.owner_id
    return change.owner_id
