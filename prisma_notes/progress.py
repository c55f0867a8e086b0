"""Newline-delimited JSON progress events streamed during a note submission."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

EVENT_TYPES = ("info", "success", "error", "warning")

STEP_START = "start"
STEP_VALIDATION = "validation"
STEP_UPLOAD = "upload"
STEP_BUILD = "build"
STEP_COMPLETE = "complete"
STEP_ERROR = "error"

NDJSON_MIMETYPE = "application/x-ndjson"


@dataclass(frozen=True)
class ProgressEvent:
    type: str
    message: str
    step: str
    url: str | None = None

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown progress event type: {self.type!r}")

    @property
    def is_error(self) -> bool:
        return self.type == "error"

    def to_dict(self) -> dict[str, str]:
        payload = {"type": self.type, "message": self.message, "step": self.step}
        if self.url:
            payload["url"] = self.url
        return payload

    def encode(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False) + "\n"

    @classmethod
    def from_dict(cls, payload: dict) -> ProgressEvent:
        return cls(
            type=str(payload["type"]),
            message=str(payload.get("message", "")),
            step=str(payload.get("step", "")),
            url=payload.get("url") or None,
        )


def info(step: str, message: str) -> ProgressEvent:
    return ProgressEvent("info", message, step)


def success(step: str, message: str, url: str | None = None) -> ProgressEvent:
    return ProgressEvent("success", message, step, url)


def warning(step: str, message: str) -> ProgressEvent:
    return ProgressEvent("warning", message, step)


def error(step: str, message: str) -> ProgressEvent:
    return ProgressEvent("error", message, step)


def encode_stream(events: Iterable[ProgressEvent]) -> Iterator[str]:
    for event in events:
        yield event.encode()


def decode_stream(lines: Iterable[str | bytes]) -> Iterator[ProgressEvent]:
    for raw_line in lines:
        line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
        line = line.strip()
        if not line:
            continue
        try:
            yield ProgressEvent.from_dict(json.loads(line))
        except (ValueError, KeyError, TypeError):
            logger.warning("Skipping malformed progress line: %r", line[:200])
