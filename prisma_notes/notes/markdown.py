from __future__ import annotations

from typing import Any

import frontmatter
import yaml


def parse_note(text: str) -> tuple[dict[str, Any], str]:
    try:
        post = frontmatter.loads(text)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML frontmatter: {exc}") from exc
    return dict(post.metadata), post.content


def render_note(body: str, attributes: dict[str, Any]) -> str:
    post = frontmatter.Post(body)
    post.metadata.update(attributes)
    return frontmatter.dumps(post, sort_keys=False, allow_unicode=True) + "\n"
