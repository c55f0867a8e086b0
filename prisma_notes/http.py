"""Small urllib helpers shared by the GitHub, Netlify and image checks."""

from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


@dataclass
class JsonResponse:
    status: int
    body: Any


def _is_retryable_error(exception: BaseException) -> bool:
    if isinstance(exception, TransportError):
        # status None means the connection itself failed.
        return exception.status is None or exception.status in RETRYABLE_STATUSES
    return False


RETRY_CONFIG = {
    "stop": stop_after_attempt(4),
    "wait": wait_exponential(multiplier=1, min=1, max=20),
    "retry": retry_if_exception(_is_retryable_error),
    "reraise": True,
    "before_sleep": before_sleep_log(logger, logging.WARNING),
}


def _error_detail(error: HTTPError) -> str:
    try:
        raw = error.read().decode("utf-8", errors="replace")
    except OSError:
        return error.reason if isinstance(error.reason, str) else ""
    try:
        payload = json.loads(raw)
    except ValueError:
        return raw[:300]
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return raw[:300]


def send_json(
    method: str,
    url: str,
    payload: Any = None,
    headers: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> JsonResponse:
    data = None
    request_headers = {"Accept": "application/json"}
    if headers:
        request_headers.update(headers)
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
        request_headers["Content-Type"] = "application/json"

    outgoing_request = Request(url, data=data, headers=request_headers, method=method)
    try:
        with urlopen(outgoing_request, timeout=timeout) as response:
            raw = response.read()
            status = response.status
    except HTTPError as exc:
        raise TransportError(f"{method} {url} failed with {exc.code}: {_error_detail(exc)}", status=exc.code) from exc
    except (URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
        raise TransportError(f"{method} {url} failed: {exc}") from exc

    if not raw:
        return JsonResponse(status=status, body=None)
    try:
        return JsonResponse(status=status, body=json.loads(raw))
    except ValueError:
        return JsonResponse(status=status, body=raw.decode("utf-8", errors="replace"))


@retry(**RETRY_CONFIG)
def request_json(
    method: str,
    url: str,
    payload: Any = None,
    headers: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> JsonResponse:
    """``send_json`` retried on connection failures, 429 and 5xx answers."""

    return send_json(method, url, payload=payload, headers=headers, timeout=timeout)
