from __future__ import annotations

import re
import unicodedata


def slugify(value: str) -> str:
    normalized = unicodedata.normalize("NFD", value.lower())
    without_accents = "".join(char for char in normalized if unicodedata.category(char) != "Mn")
    slug = re.sub(r"[^a-z0-9]+", "-", without_accents)
    return re.sub(r"-+", "-", slug).strip("-")


def truncate_text(text: str, max_length: int = 250) -> str:
    if not text or len(text) <= max_length:
        return text
    cut = text[:max_length]
    last_space = cut.rfind(" ")
    if last_space > 0:
        cut = cut[:last_space]
    return cut + "..."


def pluralize(count: int, word: str, plural: str | None = None) -> str:
    if count in (-1, 1):
        return word
    return plural or f"{word}s"
