"""Contributor-side state of one note submission."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..errors import FieldError
from ..notes.validation import (
    UploadedFile,
    check_cover,
    check_note_file_name,
    check_note_file_size,
    has_note_extension,
)

IDLE = "idle"
FILE_SELECTED = "file_selected"
PREVALIDATING = "prevalidating"
PREVALIDATED = "prevalidated"
INVALID = "invalid"
READY = "ready"
SUBMITTING = "submitting"
COMPLETED = "completed"
FAILED = "failed"

TRANSITIONS = {
    IDLE: {FILE_SELECTED},
    FILE_SELECTED: {PREVALIDATING, FILE_SELECTED, IDLE},
    PREVALIDATING: {PREVALIDATED, INVALID},
    PREVALIDATED: {READY, FILE_SELECTED, IDLE},
    INVALID: {FILE_SELECTED, IDLE},
    READY: {SUBMITTING, READY, FILE_SELECTED, IDLE},
    SUBMITTING: {COMPLETED, FAILED},
    COMPLETED: {IDLE},
    FAILED: {READY, FILE_SELECTED, IDLE},
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class UploadSession:
    state: str = IDLE
    note: UploadedFile | None = None
    cover: UploadedFile | None = None
    note_id: str | None = None
    frontmatter: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    final_url: str | None = None

    def _move(self, target: str) -> None:
        if target not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot go from {self.state} to {target}")
        self.state = target

    def select_note(self, note: UploadedFile) -> list[FieldError]:
        """Run the local checks; the session only moves on when they pass."""

        errors = check_note_file_name(note.name) + check_note_file_size(note.size)
        if errors:
            self.errors = [str(error) for error in errors]
            return errors
        self._move(FILE_SELECTED)
        self.note = note
        self.note_id = None
        self.frontmatter = {}
        self.errors = []
        return []

    def start_prevalidation(self) -> None:
        if self.note is None or not has_note_extension(self.note.name):
            raise InvalidTransition("No note selected")
        self._move(PREVALIDATING)

    def finish_prevalidation(self, payload: dict[str, Any]) -> bool:
        self.note_id = payload.get("id")
        self.frontmatter = payload.get("frontmatter") or {}
        if payload.get("success"):
            self._move(PREVALIDATED)
            self.errors = []
            return True
        self._move(INVALID)
        self.errors = list(payload.get("errors") or ["The note could not be validated"])
        return False

    def bind_cover(self, cover: UploadedFile) -> list[FieldError]:
        errors = check_cover(cover)
        if errors:
            self.errors = [str(error) for error in errors]
            return errors
        self._move(READY)
        self.cover = cover
        self.errors = []
        return []

    def start_submission(self) -> None:
        self._move(SUBMITTING)

    def finish_submission(self, succeeded: bool, final_url: str | None = None, errors: list[str] | None = None) -> None:
        self._move(COMPLETED if succeeded else FAILED)
        self.final_url = final_url
        self.errors = list(errors or [])

    def reset(self) -> None:
        if self.state == SUBMITTING:
            raise InvalidTransition("Cannot reset while a submission is running")
        self.state = IDLE
        self.note = None
        self.cover = None
        self.note_id = None
        self.frontmatter = {}
        self.errors = []
        self.final_url = None
