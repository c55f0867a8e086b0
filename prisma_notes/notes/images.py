"""Checks for images embedded in a note body."""

from __future__ import annotations

import logging
import re
import socket
from typing import Iterable
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

IMAGE_PATTERN = re.compile(r"!\[(.*?)\]\((.*?)\)|<img[^>]+src=\"([^\">]+)\"")
MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[(.*?)\]\((.*?)\)")
IMAGE_CHECK_TIMEOUT = 5
USER_AGENT = "prisma-notes-image-check/1.0"


def extract_image_urls(body: str) -> list[str]:
    urls: list[str] = []
    for match in IMAGE_PATTERN.finditer(body):
        url = match.group(2) or match.group(3)
        if url:
            urls.append(url.strip())
    return urls


def validate_image_alt(body: str) -> list[str]:
    errors: list[str] = []
    for match in MARKDOWN_IMAGE_PATTERN.finditer(body):
        alt_text, image_path = match.group(1), match.group(2)
        if not alt_text.strip():
            errors.append(f"Image without alternative text: {image_path}")
    return errors


def _matches_domain(hostname: str, domains: Iterable[str]) -> bool:
    return any(domain and domain in hostname for domain in domains)


class ImageUrlChecker:
    def __init__(
        self,
        allowed_domains: Iterable[str] = (),
        blocked_domains: Iterable[str] = (),
        timeout: float = IMAGE_CHECK_TIMEOUT,
    ) -> None:
        self.allowed_domains = tuple(allowed_domains)
        self.blocked_domains = tuple(blocked_domains)
        self.timeout = timeout

    def check(self, urls: Iterable[str]) -> list[str]:
        errors: list[str] = []
        for url in urls:
            problem = self.check_one(url)
            if problem:
                errors.append(problem)
        return errors

    def check_one(self, url: str) -> str | None:
        if not url.startswith(("http://", "https://")):
            return f'Image "{url}" must use an absolute URL (starting with http:// or https://)'

        hostname = urlparse(url).hostname
        if not hostname:
            return f'Image URL "{url}" is not valid'

        if self.blocked_domains and _matches_domain(hostname, self.blocked_domains):
            return f'The domain of image "{url}" is blocked'

        if self.allowed_domains and not _matches_domain(hostname, self.allowed_domains):
            return f'The domain of image "{url}" is not in the list of allowed domains'

        if not self.is_reachable(url):
            return f'Image "{url}" is not reachable or the server took too long to respond'
        return None

    def is_reachable(self, url: str) -> bool:
        try:
            status = self._probe(url, "HEAD")
        except HTTPError as exc:
            if exc.code != 405:
                logger.info("Image %s answered HEAD with %s", url, exc.code)
                return False
        except (URLError, socket.timeout, TimeoutError, ConnectionError, ValueError):
            pass
        else:
            return 200 <= status < 300

        try:
            status = self._probe(url, "GET")
        except HTTPError as exc:
            logger.info("Image %s answered GET with %s", url, exc.code)
            return False
        except (URLError, socket.timeout, TimeoutError, ConnectionError, ValueError) as exc:
            logger.info("Image %s is unreachable: %s", url, exc)
            return False
        return 200 <= status < 300

    def _probe(self, url: str, method: str) -> int:
        outgoing_request = Request(url, headers={"User-Agent": USER_AGENT}, method=method)
        with urlopen(outgoing_request, timeout=self.timeout) as response:
            return response.status
