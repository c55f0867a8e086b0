"""Frontmatter schemas for book summaries."""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import FieldError


class CoverImage(BaseModel):
    url: str = Field(min_length=1)
    alt: str | None = None


def _as_datetime(value: Any) -> Any:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return value


class SummaryFrontmatter(BaseModel):
    """Frontmatter of a published summary, as the site's content collection expects it."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    book_title: str = Field(alias="bookTitle", validation_alias=AliasChoices("bookTitle", "title"), min_length=1)
    book_authors: list[str] = Field(
        alias="bookAuthors", validation_alias=AliasChoices("bookAuthors", "authors"), min_length=1
    )
    tags: list[str]
    summary: str = Field(min_length=1)
    published_year: int | None = Field(default=None, alias="publishedYear")
    contributor: str | None = None
    last_modification: datetime | None = Field(default=None, alias="lastModification")
    image: CoverImage | None = None
    quotes: list[str] = Field(default_factory=list)

    @field_validator("last_modification", mode="before")
    @classmethod
    def normalize_last_modification(cls, value: Any) -> Any:
        return _as_datetime(value)

    def to_frontmatter(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PreliminaryFrontmatter(BaseModel):
    """Looser schema used by the silent upload: only the title and summary are mandatory."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    book_title: str = Field(alias="bookTitle", validation_alias=AliasChoices("bookTitle", "title"), min_length=1)
    summary: str = Field(min_length=10)
    book_authors: list[str] | None = Field(
        default=None, alias="bookAuthors", validation_alias=AliasChoices("bookAuthors", "authors")
    )
    tags: list[str] | None = None
    published_year: int | None = Field(default=None, alias="publishedYear")
    contributor: str | None = None
    last_modification: datetime | None = Field(default=None, alias="lastModification")
    image: CoverImage | None = None
    quotes: list[str] | None = None

    @field_validator("last_modification", mode="before")
    @classmethod
    def normalize_last_modification(cls, value: Any) -> Any:
        return _as_datetime(value)


def field_errors(exc: ValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    for detail in exc.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "frontmatter"
        errors.append(FieldError(location, detail["msg"]))
    return errors
