"""The publish pipeline behind ``POST /api/submit-note``.

``NotePublisher.publish`` is a generator of progress events: validation, upload to
every configured storage backend, build trigger and deploy tracking, then a final
``complete`` event carrying the URL where the note can be seen.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator

from . import progress
from .config import Settings
from .deploy import NetlifyDeployTracker, baseline_deploy_id, trigger_build
from .errors import TransportError, ValidationFailure
from .notes.images import ImageUrlChecker
from .notes.markdown import render_note
from .notes.schema import CoverImage
from .notes.validation import UploadedFile, ValidatedNote, check_cover, validate_note
from .progress import ProgressEvent
from .storage import NoteMetadata, StorageBackend
from .text import pluralize, slugify

logger = logging.getLogger(__name__)


@dataclass
class NoteSubmission:
    note: UploadedFile | None
    cover: UploadedFile | None
    contributor: str | None = None
    draft: bool = False


def note_file_name(note: ValidatedNote) -> str:
    slug = slugify(note.frontmatter.book_title) or "note"
    return f"{slug}{note.extension}"


def cover_file_name(note: ValidatedNote, cover: UploadedFile) -> str:
    slug = slugify(note.frontmatter.book_title) or "cover"
    extension = cover.extension or ".jpg"
    return f"{slug}-{uuid.uuid4().hex[:12]}{extension}"


class NotePublisher:
    def __init__(
        self,
        settings: Settings,
        backends: list[StorageBackend],
        checker: ImageUrlChecker | None = None,
        tracker: NetlifyDeployTracker | None = None,
        trigger: Callable[[str | None, str | None], None] = trigger_build,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings
        self.backends = backends
        self.checker = checker or ImageUrlChecker(settings.allowed_image_domains, settings.blocked_image_domains)
        self.tracker = tracker
        self.trigger = trigger
        self.clock = clock

    def publish(self, submission: NoteSubmission) -> Iterator[ProgressEvent]:
        step = progress.STEP_START
        try:
            yield progress.info(step, "Processing started...")

            step = progress.STEP_VALIDATION
            note = yield from self._validate(submission)
            if note is None:
                return

            step = progress.STEP_UPLOAD
            receipt_url = yield from self._upload(note, submission.cover)

            step = progress.STEP_BUILD
            deploy_url = yield from self._build(note)

            final_url = deploy_url or self._page_url(note) or receipt_url
            message = "Processing completed successfully"
            if final_url:
                message = f"{message}: {final_url}"
            yield progress.success(progress.STEP_COMPLETE, message, url=final_url)
        except TransportError as exc:
            logger.error("Publishing failed during %s: %s", step, exc)
            yield progress.error(step, str(exc))
        except Exception:
            logger.exception("Unexpected error while publishing a note")
            yield progress.error(progress.STEP_ERROR, "An unexpected error occurred")
        finally:
            for backend in self.backends:
                backend.close()

    def _validate(self, submission: NoteSubmission) -> Iterator[ProgressEvent]:
        step = progress.STEP_VALIDATION
        if submission.note is None:
            yield progress.error(step, "Missing note file")
            return None
        if submission.cover is None:
            yield progress.error(step, "Missing cover image")
            return None

        yield progress.info(step, "Validating files...")
        try:
            cover_errors = check_cover(submission.cover)
            if cover_errors:
                raise ValidationFailure(cover_errors)
            note = validate_note(submission.note, submission.contributor, self.checker, now=self.clock())
        except ValidationFailure as failure:
            yield progress.error(step, "Validation failed")
            for field_error in failure.errors:
                yield progress.error(step, str(field_error))
            return None

        yield progress.success(step, "Files validated")
        return note

    def _upload(self, note: ValidatedNote, cover: UploadedFile) -> Iterator[ProgressEvent]:
        step = progress.STEP_UPLOAD
        frontmatter = note.frontmatter
        cover_name = cover_file_name(note, cover)
        note_name = note_file_name(note)
        metadata = NoteMetadata(
            title=frontmatter.book_title,
            contributor=frontmatter.contributor or "",
            last_modification=frontmatter.last_modification,
            summary=frontmatter.summary,
        )
        alt = frontmatter.image.alt if frontmatter.image and frontmatter.image.alt else f"Cover of {frontmatter.book_title}"

        receipt_url = None
        for backend in self.backends:
            yield progress.info(step, f"Uploading the cover to {backend.name}...")
            cover_url = backend.upload_cover(cover_name, cover.data)
            yield progress.success(step, f"Cover uploaded to {backend.name}")

            frontmatter.image = CoverImage(url=cover_url, alt=alt)
            text = render_note(note.body, frontmatter.to_frontmatter())

            yield progress.info(step, f"Uploading the note to {backend.name}...")
            backend.upload_note(note_name, text)
            receipt = backend.finish(metadata)
            yield progress.success(step, receipt.message, url=receipt.url)
            receipt_url = receipt_url or receipt.url

        count = len(self.backends)
        logger.info("Published %s to %d %s", note_name, count, pluralize(count, "target"))
        return receipt_url

    def _build(self, note: ValidatedNote) -> Iterator[ProgressEvent]:
        step = progress.STEP_BUILD
        netlify = self.settings.netlify
        if not netlify.can_trigger:
            yield progress.warning(step, "No build hook configured, skipping the deploy")
            return None

        yield progress.info(step, "Triggering the build...")
        previous_deploy_id = baseline_deploy_id(self.tracker)
        triggered_at = self.clock()
        try:
            self.trigger(netlify.build_hook, f"New note: {note.frontmatter.book_title}")
        except TransportError as exc:
            # The note is already published, only the rebuild is missing.
            logger.warning("Build hook failed: %s", exc)
            yield progress.warning(step, f"The build could not be triggered: {exc}")
            return None
        yield progress.success(step, "Build triggered")

        if self.tracker is None:
            return None

        deploy_url = None
        for update in self.tracker.watch(triggered_at, previous_deploy_id):
            if update.is_ready:
                deploy_url = update.url
                yield progress.success(step, "Deployment finished", url=deploy_url)
            else:
                yield progress.info(step, update.message)
        return deploy_url

    def _page_url(self, note: ValidatedNote) -> str | None:
        if not self.settings.site_url:
            return None
        return f"{self.settings.site_url}/summaries/{slugify(note.frontmatter.book_title)}/"
