from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from ..config import Settings
from ..text import truncate_text

NOTES_DIR = "src/summaries"
COVERS_DIR = "public/img"
COVERS_URL_PREFIX = "/img"


@dataclass
class NoteMetadata:
    title: str
    contributor: str
    last_modification: datetime | None = None
    summary: str = ""

    def as_lines(self) -> list[str]:
        values = {
            "title": self.title,
            "contributor": self.contributor,
            "lastModification": self.last_modification.isoformat() if self.last_modification else "",
            "summary": truncate_text(self.summary, 200),
        }
        return [f"- {key}: {value}" for key, value in values.items()]


@dataclass
class PublishReceipt:
    message: str
    url: str | None = None


class StorageBackend(Protocol):
    name: str

    def upload_cover(self, file_name: str, data: bytes) -> str: ...

    def upload_note(self, file_name: str, text: str) -> str: ...

    def finish(self, metadata: NoteMetadata) -> PublishReceipt: ...

    def close(self) -> None: ...


def build_backends(settings: Settings, draft: bool = False) -> list[StorageBackend]:
    backends: list[StorageBackend] = []
    for mode in settings.upload_modes:
        if mode == "local":
            from .local import LocalBackend

            backends.append(LocalBackend(settings.local_content_root))
        elif mode == "sftp":
            from .sftp import SftpBackend

            backends.append(SftpBackend(settings.sftp, settings.environment, settings.cover_image_url or ""))
        elif mode == "github":
            from .github import GitHubBackend, GitHubRepository

            backends.append(GitHubBackend(GitHubRepository.from_settings(settings.github), settings.environment, draft))
    return backends
