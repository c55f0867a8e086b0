from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class UploadError(Exception):
    """Base class for every failure raised while handling a note upload."""


class ValidationFailure(UploadError):
    """The contributor can fix the submission and try again."""

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(str(error) for error in self.errors) or "Validation failed")

    @classmethod
    def single(cls, field: str, message: str) -> ValidationFailure:
        return cls([FieldError(field, message)])


class TransportError(UploadError):
    """A remote service (GitHub, SFTP, Netlify, image host) failed; resubmitting may work."""

    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


class ConfigurationError(UploadError):
    """The server is missing secrets or has an invalid setting."""
