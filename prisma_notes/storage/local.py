from __future__ import annotations

import logging
from pathlib import Path

from . import COVERS_DIR, COVERS_URL_PREFIX, NOTES_DIR, NoteMetadata, PublishReceipt

logger = logging.getLogger(__name__)


def _safe_name(file_name: str) -> str:
    name = Path(file_name).name
    if not name or name != file_name or name in {".", ".."}:
        raise ValueError(f"Invalid file name: {file_name!r}")
    return name


class LocalBackend:
    name = "local"

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.written: list[Path] = []

    def _write(self, relative_dir: str, file_name: str, data: bytes) -> Path:
        destination = self.root / relative_dir / _safe_name(file_name)
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(data)
        self.written.append(destination)
        logger.info("Wrote %s", destination)
        return destination

    def upload_cover(self, file_name: str, data: bytes) -> str:
        self._write(COVERS_DIR, file_name, data)
        return f"{COVERS_URL_PREFIX}/{file_name}"

    def upload_note(self, file_name: str, text: str) -> str:
        return str(self._write(NOTES_DIR, file_name, text.encode("utf-8")))

    def finish(self, metadata: NoteMetadata) -> PublishReceipt:
        return PublishReceipt(message=f"Saved {len(self.written)} files under {self.root}")

    def close(self) -> None:
        return None
