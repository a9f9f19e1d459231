"""Pydantic schemas for bookmark endpoints."""
from datetime import UTC, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator

from schemas.validators import validate_and_normalize_url, validate_title


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    title: str
    url: str

    @field_validator("title")
    @classmethod
    def check_title(cls, v: str) -> str:
        """Trim and require a title."""
        return validate_title(v)

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        """Add a missing scheme and require a parseable URL."""
        return validate_and_normalize_url(v)


class BookmarkResponse(BaseModel):
    """A stored bookmark. Immutable - the same value flows through the live list."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    owner_id: str
    title: str
    url: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Treat naive timestamps (SQLite) as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class BookmarkListResponse(BaseModel):
    """Schema for the bookmark list response."""

    items: list[BookmarkResponse]
    total: int
