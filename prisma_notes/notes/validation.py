from __future__ import annotations

import mimetypes
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any

from pydantic import ValidationError

from ..errors import FieldError, ValidationFailure
from .images import ImageUrlChecker, extract_image_urls, validate_image_alt
from .markdown import parse_note
from .schema import PreliminaryFrontmatter, SummaryFrontmatter, field_errors

MAX_NOTE_SIZE = 5 * 1024 * 1024
MAX_COVER_SIZE = 2 * 1024 * 1024
NOTE_EXTENSIONS = (".md", ".mdx")
COVER_CONTENT_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
NOTE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+\.(md|mdx)$", re.IGNORECASE)


@dataclass
class UploadedFile:
    name: str
    data: bytes
    content_type: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return PurePosixPath(self.name).suffix.lower()


@dataclass
class ValidatedNote:
    frontmatter: SummaryFrontmatter
    body: str
    file_name: str

    @property
    def extension(self) -> str:
        return PurePosixPath(self.file_name).suffix.lower()


@dataclass
class PrevalidationResult:
    frontmatter: dict[str, Any]
    frontmatter_errors: list[str] = field(default_factory=list)
    image_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.frontmatter_errors and not self.image_errors

    def summary_errors(self) -> list[str]:
        errors: list[str] = []
        if self.frontmatter_errors:
            errors.append("Problems in the metadata:")
            errors.extend(self.frontmatter_errors)
        if self.image_errors:
            errors.append("Problems with the images:")
            errors.extend(self.image_errors)
        return errors


def has_note_extension(name: str) -> bool:
    return PurePosixPath(name).suffix.lower() in NOTE_EXTENSIONS


def check_note_file_name(name: str) -> list[FieldError]:
    errors: list[FieldError] = []
    if not has_note_extension(name):
        errors.append(FieldError("fileName", f"The file extension must be {' or '.join(NOTE_EXTENSIONS)}"))
    if not NOTE_NAME_PATTERN.match(name):
        errors.append(FieldError("fileName", "The file name may only contain letters, digits, dashes and underscores"))
    return errors


def check_note_file_size(size: int) -> list[FieldError]:
    if size > MAX_NOTE_SIZE:
        return [FieldError("fileSize", f"The file must not exceed {MAX_NOTE_SIZE // (1024 * 1024)} MB")]
    return []


def cover_content_type(cover: UploadedFile) -> str | None:
    if cover.content_type and cover.content_type != "application/octet-stream":
        return cover.content_type.split(";", 1)[0].strip().lower()
    guessed, _ = mimetypes.guess_type(cover.name)
    return guessed


def check_cover(cover: UploadedFile | None) -> list[FieldError]:
    if cover is None or not cover.name:
        return [FieldError("cover", "Please select a cover image")]
    errors: list[FieldError] = []
    if cover_content_type(cover) not in COVER_CONTENT_TYPES:
        errors.append(FieldError("cover", "Unsupported image format. Use JPG, PNG, GIF or WebP"))
    if cover.size > MAX_COVER_SIZE:
        errors.append(FieldError("cover", f"The image must not exceed {MAX_COVER_SIZE // (1024 * 1024)} MB"))
    if cover.size == 0:
        errors.append(FieldError("cover", "The cover image is empty"))
    return errors


def decode_note(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationFailure.single("file", "The note must be UTF-8 encoded text") from exc


def validate_note(
    note: UploadedFile,
    contributor: str | None,
    checker: ImageUrlChecker,
    now: datetime | None = None,
) -> ValidatedNote:
    errors = check_note_file_name(note.name)
    if errors:
        raise ValidationFailure(errors)
    errors = check_note_file_size(note.size)
    if errors:
        raise ValidationFailure(errors)

    try:
        attributes, body = parse_note(decode_note(note.data))
    except ValueError as exc:
        raise ValidationFailure.single("frontmatter", str(exc)) from exc
    if not attributes:
        raise ValidationFailure.single("frontmatter", "The frontmatter contains no data")

    contributor = (contributor or "").strip()
    if contributor:
        attributes["contributor"] = contributor
    elif not attributes.get("contributor"):
        errors.append(FieldError("contributor", "A contributor name is required"))
    if not attributes.get("lastModification"):
        attributes["lastModification"] = now or datetime.now(timezone.utc)

    validated: SummaryFrontmatter | None = None
    try:
        validated = SummaryFrontmatter.model_validate(attributes)
    except ValidationError as exc:
        errors.extend(field_errors(exc))

    errors.extend(FieldError("images", message) for message in validate_image_alt(body))
    if not errors:
        errors.extend(FieldError("images", message) for message in checker.check(extract_image_urls(body)))

    if errors or validated is None:
        raise ValidationFailure(errors)
    return ValidatedNote(frontmatter=validated, body=body, file_name=note.name)


def prevalidate_note(text: str, checker: ImageUrlChecker) -> PrevalidationResult:
    try:
        attributes, body = parse_note(text)
    except ValueError as exc:
        return PrevalidationResult(frontmatter={}, frontmatter_errors=[str(exc)])

    result = PrevalidationResult(frontmatter=attributes)
    try:
        PreliminaryFrontmatter.model_validate(attributes)
    except ValidationError as exc:
        result.frontmatter_errors = [str(error) for error in field_errors(exc)]

    result.image_errors.extend(validate_image_alt(body))
    urls = extract_image_urls(body)
    if urls:
        result.image_errors.extend(checker.check(urls))
    return result
