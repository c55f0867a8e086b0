from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterator

import pytest

from conftest import RecordingBackend, StaticChecker, make_cover, make_note
from prisma_notes.config import NetlifySettings, Settings
from prisma_notes.deploy import DeployUpdate
from prisma_notes.errors import TransportError
from prisma_notes.notes.markdown import parse_note
from prisma_notes.workflow import NotePublisher, NoteSubmission

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
DEPLOY_URL = "https://d1--prisma.netlify.app"


class FakeTracker:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.watched: list[tuple[datetime, str | None]] = []

    def latest_deploy_id(self) -> str | None:
        return "d0"

    def watch(self, triggered_at: datetime, previous_deploy_id: str | None = None) -> Iterator[DeployUpdate]:
        self.watched.append((triggered_at, previous_deploy_id))
        yield DeployUpdate("building", "Deploy d1: building", 50, deploy_id="d1")
        if self.fail:
            raise TransportError("Netlify deploy d1 failed: error")
        yield DeployUpdate("ready", "Deploy is live", 100, deploy_id="d1", url=DEPLOY_URL)


class RecordingTrigger:
    def __init__(self) -> None:
        self.calls: list[tuple[str | None, str | None]] = []

    def __call__(self, hook_url: str | None, title: str | None = None) -> None:
        self.calls.append((hook_url, title))


def _publisher(settings: Settings, backend: RecordingBackend, tracker: FakeTracker | None = None, **kwargs):
    trigger = kwargs.pop("trigger", RecordingTrigger())
    return NotePublisher(
        settings,
        [backend],
        checker=StaticChecker(),
        tracker=tracker,
        trigger=trigger,
        clock=lambda: NOW,
        **kwargs,
    )


def _submission(**overrides) -> NoteSubmission:
    values = {"note": make_note(), "cover": make_cover(), "contributor": "Camille"}
    values.update(overrides)
    return NoteSubmission(**values)


def test_successful_publish_ends_with_complete_event_and_deploy_url(settings: Settings) -> None:
    backend = RecordingBackend()
    trigger = RecordingTrigger()
    tracker = FakeTracker()

    events = list(_publisher(settings, backend, tracker, trigger=trigger).publish(_submission()))

    assert events[0].step == "start"
    assert [event.step for event in events if event.type == "success"][:1] == ["validation"]
    assert not any(event.is_error for event in events)
    last = events[-1]
    assert (last.step, last.type, last.url) == ("complete", "success", DEPLOY_URL)
    assert DEPLOY_URL in last.message
    assert trigger.calls == [("https://api.netlify.com/build_hooks/abc123", "New note: Le Petit Prince")]
    assert tracker.watched == [(NOW, "d0")]
    assert backend.closed


def test_cover_url_and_alt_are_written_into_the_note(settings: Settings) -> None:
    backend = RecordingBackend()

    list(_publisher(settings, backend).publish(_submission()))

    [cover_name] = backend.covers
    assert cover_name.startswith("le-petit-prince-")
    assert cover_name.endswith(".png")
    attributes, body = parse_note(backend.notes["le-petit-prince.md"])
    assert attributes["image"] == {"url": f"/img/{cover_name}", "alt": "Cover of Le Petit Prince"}
    assert attributes["contributor"] == "Camille"
    assert attributes["bookTitle"] == "Le Petit Prince"
    assert body.startswith("Le récit commence")
    assert backend.finished[0].title == "Le Petit Prince"


def test_final_url_falls_back_to_site_page_then_pull_request(settings: Settings) -> None:
    settings.site_url = "https://prisma.example.org"
    events = list(_publisher(settings, RecordingBackend()).publish(_submission()))
    assert events[-1].url == "https://prisma.example.org/summaries/le-petit-prince/"

    settings.site_url = None
    events = list(_publisher(settings, RecordingBackend()).publish(_submission()))
    assert events[-1].url == "https://github.com/prisma/site/pull/7"


def test_missing_build_hook_is_a_warning(settings: Settings) -> None:
    settings.netlify = NetlifySettings()
    trigger = RecordingTrigger()

    events = list(_publisher(settings, RecordingBackend(), trigger=trigger).publish(_submission()))

    assert any(event.type == "warning" and event.step == "build" for event in events)
    assert trigger.calls == []
    assert events[-1].step == "complete"


def test_failing_build_hook_still_completes_with_the_pull_request(settings: Settings) -> None:
    backend = RecordingBackend()
    tracker = FakeTracker()

    def unavailable_hook(hook_url: str | None, title: str | None = None) -> None:
        raise TransportError("POST hook failed with 503: unavailable", status=503)

    events = list(_publisher(settings, backend, tracker, trigger=unavailable_hook).publish(_submission()))

    build_events = [event for event in events if event.step == "build"]
    assert build_events[-1].type == "warning"
    assert "503" in build_events[-1].message
    assert not any(event.is_error for event in events)
    assert (events[-1].step, events[-1].type, events[-1].url) == ("complete", "success", "https://github.com/prisma/site/pull/7")
    assert "le-petit-prince.md" in backend.notes
    assert tracker.watched == []


def test_every_target_gets_its_own_cover_url(settings: Settings) -> None:
    class CdnBackend(RecordingBackend):
        def upload_cover(self, file_name: str, data: bytes) -> str:
            self.covers[file_name] = data
            return f"https://cdn.example.org/covers/{file_name}"

    github = RecordingBackend("github")
    sftp = CdnBackend("sftp", receipt_url=None)
    publisher = NotePublisher(settings, [github, sftp], checker=StaticChecker(), trigger=RecordingTrigger(), clock=lambda: NOW)

    events = list(publisher.publish(_submission()))

    [cover_name] = github.covers
    assert parse_note(github.notes["le-petit-prince.md"])[0]["image"]["url"] == f"/img/{cover_name}"
    assert parse_note(sftp.notes["le-petit-prince.md"])[0]["image"]["url"] == f"https://cdn.example.org/covers/{cover_name}"
    assert events[-1].url == "https://github.com/prisma/site/pull/7"


def test_failure_on_a_later_target_is_an_upload_error(settings: Settings) -> None:
    class FailingBackend(RecordingBackend):
        def upload_note(self, file_name: str, text: str) -> str:
            raise TransportError("SFTP upload failed: connection reset")

    github = RecordingBackend("github")
    sftp = FailingBackend("sftp")
    trigger = RecordingTrigger()
    publisher = NotePublisher(settings, [github, sftp], checker=StaticChecker(), trigger=trigger, clock=lambda: NOW)

    events = list(publisher.publish(_submission()))

    assert (events[-1].step, events[-1].type) == ("upload", "error")
    assert "connection reset" in events[-1].message
    assert "le-petit-prince.md" in github.notes
    assert trigger.calls == []
    assert github.closed and sftp.closed


def test_validation_errors_are_streamed_per_field(settings: Settings) -> None:
    backend = RecordingBackend()
    note = make_note(make_note().data.decode("utf-8").replace("summary:", "resume:"))

    events = list(_publisher(settings, backend).publish(_submission(note=note)))

    errors = [event for event in events if event.is_error]
    assert [event.message for event in errors] == ["Validation failed", "summary: Field required"]
    assert all(event.step == "validation" for event in errors)
    assert backend.covers == {}
    assert backend.closed


def test_missing_cover_stops_before_upload(settings: Settings) -> None:
    backend = RecordingBackend()

    events = list(_publisher(settings, backend).publish(_submission(cover=None)))

    assert events[-1].is_error
    assert events[-1].message == "Missing cover image"
    assert backend.notes == {}


def test_transport_error_is_reported_on_the_current_step(settings: Settings) -> None:
    backend = RecordingBackend()

    events = list(_publisher(settings, backend, FakeTracker(fail=True)).publish(_submission()))

    assert events[-1].is_error
    assert events[-1].step == "build"
    assert "failed" in events[-1].message
    assert not any(event.step == "complete" for event in events)
    assert backend.closed


def test_unexpected_errors_become_a_generic_error_event(settings: Settings, caplog: pytest.LogCaptureFixture) -> None:
    class ExplodingBackend(RecordingBackend):
        def upload_note(self, file_name: str, text: str) -> str:
            raise RuntimeError("disk full")

    backend = ExplodingBackend()

    events = list(_publisher(settings, backend).publish(_submission()))

    assert (events[-1].step, events[-1].type) == ("error", "error")
    assert "disk full" not in events[-1].message
    assert "Unexpected error" in caplog.text
    assert backend.closed
