from __future__ import annotations

import logging
from typing import Any, Callable

import requests

from .. import progress
from ..errors import TransportError
from ..notes.validation import UploadedFile
from ..progress import ProgressEvent

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://localhost:8000"
REQUEST_TIMEOUT = 30
# The submission stays open while the deploy is polled.
STREAM_TIMEOUT = (10, 900)


def _file_part(upload: UploadedFile, default_type: str) -> tuple[str, bytes, str]:
    return upload.name, upload.data, upload.content_type or default_type


class UploadClient:
    def __init__(self, base_url: str = DEFAULT_SERVER_URL, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self._csrf_token: str | None = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def csrf_token(self) -> str:
        if self._csrf_token is None:
            try:
                resp = self.session.get(self._url("/api/csrf-token"), timeout=REQUEST_TIMEOUT)
                resp.raise_for_status()
            except requests.exceptions.RequestException as exc:
                raise TransportError(f"Unable to fetch a CSRF token: {exc}") from exc
            self._csrf_token = resp.json()["csrfToken"]
        return self._csrf_token

    def _headers(self) -> dict[str, str]:
        return {"X-CSRFToken": self.csrf_token()}

    def silent_upload(self, note: UploadedFile) -> dict[str, Any]:
        """Send the note for pre-validation; the payload carries the temp id and any errors."""

        try:
            resp = self.session.post(
                self._url("/api/upload-temp"),
                files={"file": _file_part(note, "text/markdown")},
                headers=self._headers(),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Silent upload failed: {exc}") from exc
        if resp.status_code >= 500:
            raise TransportError(f"Silent upload failed with {resp.status_code}", status=resp.status_code)
        return resp.json()

    def temp_file_info(self, file_id: str) -> dict[str, Any]:
        try:
            resp = self.session.get(self._url("/api/upload-temp"), params={"id": file_id}, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Unable to fetch the temporary note: {exc}") from exc
        if resp.status_code >= 500:
            raise TransportError(f"Temporary note lookup failed with {resp.status_code}", status=resp.status_code)
        return resp.json()

    def submit(
        self,
        cover: UploadedFile,
        contributor: str,
        note: UploadedFile | None = None,
        note_id: str | None = None,
        draft: bool = False,
        on_event: Callable[[ProgressEvent], None] | None = None,
    ) -> bool:
        """Stream a submission, handing every event to ``on_event``.

        Returns True when the stream ended without any error event.
        """

        def emit(event: ProgressEvent) -> None:
            if on_event:
                on_event(event)

        files: dict[str, tuple[str, bytes, str]] = {"cover-image": _file_part(cover, "application/octet-stream")}
        data = {"contributor": contributor, "is_draft": "true" if draft else "false"}
        if note is not None:
            files["new-note"] = _file_part(note, "text/markdown")
        elif note_id:
            data["note-id"] = note_id

        ok = True
        try:
            with self.session.post(
                self._url("/api/submit-note"),
                files=files,
                data=data,
                headers=self._headers(),
                stream=True,
                timeout=STREAM_TIMEOUT,
            ) as resp:
                if resp.status_code != 200:
                    emit(progress.error(progress.STEP_ERROR, _error_message(resp)))
                    return False
                for event in progress.decode_stream(resp.iter_lines()):
                    ok = ok and not event.is_error
                    emit(event)
        except (requests.exceptions.RequestException, TransportError) as exc:
            logger.error("Submission failed: %s", exc)
            emit(progress.error(progress.STEP_ERROR, f"Connection error: {exc}"))
            return False
        return ok


def _error_message(resp: requests.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return f"Server answered with HTTP {resp.status_code}"
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if errors:
        return "; ".join(str(error) for error in errors)
    return f"Server answered with HTTP {resp.status_code}"
