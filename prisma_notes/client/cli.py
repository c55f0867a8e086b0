"""Command line client for submitting a note to a running upload server."""

from __future__ import annotations

import argparse
import logging
import mimetypes
import os
import sys
from pathlib import Path
from typing import Iterable

from ..errors import TransportError
from ..notes.validation import UploadedFile
from ..progress import ProgressEvent
from .api import DEFAULT_SERVER_URL, UploadClient
from .session import COMPLETED, UploadSession
from .tracker import FAILED, ProgressTracker

EVENT_PREFIXES = {"info": "  ", "success": "✓ ", "warning": "! ", "error": "✗ "}


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="prisma-upload", description="Submit a book summary note and its cover")
    parser.add_argument("note", type=Path, help="Markdown note (.md or .mdx)")
    parser.add_argument("cover", type=Path, help="Cover image (JPG, PNG, GIF or WebP)")
    parser.add_argument("--contributor", required=True, help="Name shown as the note's contributor")
    parser.add_argument(
        "--server",
        default=os.environ.get("PRISMA_SERVER_URL", DEFAULT_SERVER_URL),
        help="Base URL of the upload server",
    )
    parser.add_argument("--draft", action="store_true", help="Open the pull request as a draft")
    parser.add_argument("--check-only", dest="check_only", action="store_true", help="Stop after the silent upload")
    parser.add_argument("--verbose", action="store_true", help="Show debug logs")
    return parser.parse_args(list(argv) if argv is not None else None)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


def _read_upload(path: Path) -> UploadedFile:
    content_type, _ = mimetypes.guess_type(path.name)
    return UploadedFile(name=path.name, data=path.read_bytes(), content_type=content_type)


def _print_errors(errors: Iterable[object]) -> None:
    for error in errors:
        print(f"✗ {error}", file=sys.stderr)


def _print_event(event: ProgressEvent) -> None:
    print(f"{EVENT_PREFIXES.get(event.type, '  ')}[{event.step}] {event.message}")


def run(args: argparse.Namespace, client: UploadClient | None = None) -> int:
    for path in (args.note, args.cover):
        if not path.is_file():
            print(f"✗ File not found: {path}", file=sys.stderr)
            return 2

    session = UploadSession()
    note_errors = session.select_note(_read_upload(args.note))
    if note_errors:
        _print_errors(note_errors)
        return 1
    cover = _read_upload(args.cover)

    client = client or UploadClient(args.server)
    try:
        session.start_prevalidation()
        prevalidated = session.finish_prevalidation(client.silent_upload(session.note))
    except TransportError as exc:
        print(f"✗ {exc}", file=sys.stderr)
        return 1
    if not prevalidated:
        _print_errors(session.errors)
        return 1
    print(f"✓ Note pre-validated: {session.frontmatter.get('bookTitle') or session.frontmatter.get('title') or args.note.name}")
    if args.check_only:
        return 0

    cover_errors = session.bind_cover(cover)
    if cover_errors:
        _print_errors(cover_errors)
        return 1

    tracker = ProgressTracker()

    def on_event(event: ProgressEvent) -> None:
        tracker.apply(event)
        _print_event(event)

    session.start_submission()
    # The server already holds the pre-validated note under its id.
    ok = client.submit(
        session.cover,
        args.contributor,
        note=None if session.note_id else session.note,
        note_id=session.note_id,
        draft=args.draft,
        on_event=on_event,
    )
    failures = [state.message for state in tracker.steps.values() if state.status == FAILED]
    session.finish_submission(ok and tracker.finished, tracker.final_url, failures)
    if session.state != COMPLETED:
        return 1
    if session.final_url:
        print(f"Published: {session.final_url}")
    return 0


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    raise SystemExit(run(args))


if __name__ == "__main__":
    main()
