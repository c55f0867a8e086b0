from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path

from .notes.validation import has_note_extension

logger = logging.getLogger(__name__)


def _parse_id(file_id: str) -> str:
    try:
        return str(uuid.UUID(file_id))
    except (ValueError, AttributeError, TypeError) as exc:
        raise ValueError(f"Invalid temporary file id: {file_id!r}") from exc


class TempStore:
    """Keeps silently uploaded notes until the contributor confirms the submission."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def save(self, name: str, text: str) -> str:
        extension = Path(name).suffix.lower()
        if not has_note_extension(name):
            raise ValueError(f"Unsupported note extension: {extension or name}")
        self.directory.mkdir(parents=True, exist_ok=True)
        file_id = str(uuid.uuid4())
        (self.directory / f"{file_id}{extension}").write_text(text, encoding="utf-8")
        return file_id

    def path_for(self, file_id: str) -> Path:
        normalized = _parse_id(file_id)
        if self.directory.is_dir():
            for candidate in self.directory.glob(f"{normalized}.*"):
                if has_note_extension(candidate.name):
                    return candidate
        raise KeyError(normalized)

    def load(self, file_id: str) -> tuple[str, str]:
        path = self.path_for(file_id)
        return path.name, path.read_text(encoding="utf-8")

    def delete(self, file_id: str) -> None:
        try:
            self.path_for(file_id).unlink()
        except (KeyError, FileNotFoundError):
            return

    def purge(self, max_age_seconds: float, now: float | None = None) -> int:
        if not self.directory.is_dir():
            return 0
        cutoff = (now if now is not None else time.time()) - max_age_seconds
        removed = 0
        for path in self.directory.iterdir():
            if path.is_file() and has_note_extension(path.name) and path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        if removed:
            logger.info("Purged %d stale temporary uploads from %s", removed, self.directory)
        return removed
