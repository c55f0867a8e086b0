from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from prisma_notes.config import NetlifySettings, Settings, SftpSettings
from prisma_notes.notes.images import ImageUrlChecker
from prisma_notes.notes.validation import UploadedFile
from prisma_notes.storage import NoteMetadata, PublishReceipt
from prisma_notes.storage.sftp import SftpConnection

VALID_NOTE = """---
bookTitle: Le Petit Prince
bookAuthors:
  - Antoine de Saint-Exupéry
tags:
  - classique
  - conte
summary: Un aviateur tombé dans le désert rencontre un petit prince venu d'une autre planète.
publishedYear: 1943
---

Le récit commence dans le désert du Sahara.
"""

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class StaticChecker(ImageUrlChecker):
    """Answers reachability without touching the network."""

    def __init__(self, reachable: bool = True, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.reachable = reachable
        self.probed: list[str] = []

    def is_reachable(self, url: str) -> bool:
        self.probed.append(url)
        return self.reachable


class RecordingBackend:
    def __init__(self, name: str = "fake", receipt_url: str | None = "https://github.com/prisma/site/pull/7") -> None:
        self.name = name
        self.receipt_url = receipt_url
        self.covers: dict[str, bytes] = {}
        self.notes: dict[str, str] = {}
        self.finished: list[NoteMetadata] = []
        self.closed = False

    def upload_cover(self, file_name: str, data: bytes) -> str:
        self.covers[file_name] = data
        return f"/img/{file_name}"

    def upload_note(self, file_name: str, text: str) -> str:
        self.notes[file_name] = text
        return f"src/summaries/{file_name}"

    def finish(self, metadata: NoteMetadata) -> PublishReceipt:
        self.finished.append(metadata)
        return PublishReceipt(message="Pull request created", url=self.receipt_url)

    def close(self) -> None:
        self.closed = True


class FakeSftp:
    def __init__(self, existing: set[str] | None = None) -> None:
        self.existing = set(existing or ())
        self.files: dict[str, bytes] = {}
        self.created: list[str] = []
        self.closed = False

    def stat(self, path: str) -> object:
        if path not in self.existing and path not in self.files:
            raise FileNotFoundError(path)
        return object()

    def mkdir(self, path: str) -> None:
        self.existing.add(path)
        self.created.append(path)

    def putfo(self, handle: Any, path: str) -> None:
        self.files[path] = handle.read()

    def close(self) -> None:
        self.closed = True


class FakeSsh:
    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


def fake_connector(sftp: FakeSftp):
    def connect(settings: SftpSettings) -> SftpConnection:
        return SftpConnection(FakeSsh(), sftp)

    return connect


def make_note(text: str = VALID_NOTE, name: str = "le-petit-prince.md") -> UploadedFile:
    return UploadedFile(name=name, data=text.encode("utf-8"), content_type="text/markdown")


def make_cover(name: str = "cover.png", data: bytes = PNG_BYTES, content_type: str | None = "image/png") -> UploadedFile:
    return UploadedFile(name=name, data=data, content_type=content_type)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        upload_modes=("local",),
        local_content_root=tmp_path / "site",
        temp_upload_dir=tmp_path / "temp-uploads",
        session_secret="test-secret",
        session_cookie_secure=False,
        sftp=SftpSettings(host="sftp.example.org", username="prisma", password="hunter2"),
        netlify=NetlifySettings(build_hook="https://api.netlify.com/build_hooks/abc123"),
    )
