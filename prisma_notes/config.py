from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .errors import ConfigurationError

UPLOAD_MODES = ("github", "sftp", "local")
DEFAULT_TEMP_DIR = Path.cwd() / "temp-uploads"
DEFAULT_GITHUB_API_URL = "https://api.github.com"


def _is_truthy(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(chunk.strip() for chunk in value.split(",") if chunk.strip())


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


@dataclass
class GitHubSettings:
    token: str | None = None
    owner: str | None = None
    repo: str | None = None
    api_url: str = DEFAULT_GITHUB_API_URL

    def missing(self) -> list[str]:
        names = {"GITHUB_TOKEN": self.token, "GITHUB_OWNER": self.owner, "GITHUB_REPO": self.repo}
        return [name for name, value in names.items() if not value]


@dataclass
class SftpSettings:
    host: str | None = None
    port: int = 22
    username: str | None = None
    password: str | None = None
    private_key_path: str | None = None
    base_path: str = "/prisma"
    notes_dir: str = "notes"
    covers_dir: str = "covers"
    strict_host_keys: bool = False

    def missing(self) -> list[str]:
        missing = [name for name, value in {"SFTP_HOST": self.host, "SFTP_USERNAME": self.username}.items() if not value]
        if not self.password and not self.private_key_path:
            missing.append("SFTP_PASSWORD or SFTP_PRIVATE_KEY_PATH")
        return missing


@dataclass
class NetlifySettings:
    build_hook: str | None = None
    site_id: str | None = None
    api_token: str | None = None
    poll_interval: float = 5.0
    poll_timeout: float = 600.0

    @property
    def can_trigger(self) -> bool:
        return bool(self.build_hook)

    @property
    def can_track(self) -> bool:
        return bool(self.site_id and self.api_token)


@dataclass
class Settings:
    upload_modes: tuple[str, ...] = ("github",)
    environment: str = "development"
    site_url: str | None = None
    cover_image_url: str | None = None
    local_content_root: Path = field(default_factory=Path.cwd)
    temp_upload_dir: Path = DEFAULT_TEMP_DIR
    allowed_image_domains: tuple[str, ...] = ()
    blocked_image_domains: tuple[str, ...] = ()
    api_key_hashes: tuple[str, ...] = ()
    session_secret: str | None = None
    session_cookie_secure: bool = True
    github: GitHubSettings = field(default_factory=GitHubSettings)
    sftp: SftpSettings = field(default_factory=SftpSettings)
    netlify: NetlifySettings = field(default_factory=NetlifySettings)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if env is None else env
        modes = tuple(mode.lower() for mode in _split_list(env.get("UPLOAD_MODE"))) or ("github",)
        unknown = [mode for mode in modes if mode not in UPLOAD_MODES]
        if unknown:
            raise ConfigurationError(
                f"Unknown UPLOAD_MODE value(s): {', '.join(unknown)} (expected {', '.join(UPLOAD_MODES)})"
            )

        return cls(
            upload_modes=modes,
            environment=(env.get("ENVIRONMENT") or env.get("NODE_ENV") or "development").strip().lower(),
            site_url=(env.get("SITE_URL") or "").rstrip("/") or None,
            cover_image_url=(env.get("COVER_IMAGE_URL") or "").rstrip("/") or None,
            local_content_root=Path(env.get("LOCAL_CONTENT_ROOT") or Path.cwd()),
            temp_upload_dir=Path(env.get("TEMP_UPLOAD_DIR") or DEFAULT_TEMP_DIR),
            allowed_image_domains=_split_list(env.get("ALLOWED_IMAGE_DOMAINS")),
            blocked_image_domains=_split_list(env.get("BLOCKED_IMAGE_DOMAINS")),
            # argon2 hashes contain commas, so keys are whitespace separated.
            api_key_hashes=tuple((env.get("API_KEY_HASHES") or "").split()),
            session_secret=env.get("SESSION_SECRET"),
            session_cookie_secure=_is_truthy(env.get("SESSION_COOKIE_SECURE"), default=True),
            github=GitHubSettings(
                token=env.get("GITHUB_TOKEN"),
                owner=env.get("GITHUB_OWNER"),
                repo=env.get("GITHUB_REPO"),
                api_url=(env.get("GITHUB_API_URL") or DEFAULT_GITHUB_API_URL).rstrip("/"),
            ),
            sftp=SftpSettings(
                host=env.get("SFTP_HOST"),
                port=_int_env(env, "SFTP_PORT", 22),
                username=env.get("SFTP_USERNAME"),
                password=env.get("SFTP_PASSWORD"),
                private_key_path=env.get("SFTP_PRIVATE_KEY_PATH"),
                base_path=env.get("SFTP_BASE_PATH") or "/prisma",
                notes_dir=env.get("SFTP_NOTES_DIR") or "notes",
                covers_dir=env.get("SFTP_COVERS_DIR") or "covers",
                strict_host_keys=_is_truthy(env.get("SFTP_STRICT_HOST_KEYS")),
            ),
            netlify=NetlifySettings(
                build_hook=env.get("NETLIFY_BUILD_HOOK"),
                site_id=env.get("NETLIFY_SITE_ID"),
                api_token=env.get("NETLIFY_API_TOKEN"),
                poll_interval=_float_env(env, "NETLIFY_POLL_INTERVAL", 5.0),
                poll_timeout=_float_env(env, "NETLIFY_POLL_TIMEOUT", 600.0),
            ),
        )

    def require_session_secret(self) -> str:
        if not self.session_secret:
            raise ConfigurationError("Missing required environment variable: SESSION_SECRET")
        return self.session_secret

    def require_publish_targets(self) -> None:
        missing: list[str] = []
        if "github" in self.upload_modes:
            missing.extend(self.github.missing())
        if "sftp" in self.upload_modes:
            missing.extend(self.sftp.missing())
            if not self.cover_image_url:
                missing.append("COVER_IMAGE_URL")
            if not self.netlify.build_hook:
                missing.append("NETLIFY_BUILD_HOOK")
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")
