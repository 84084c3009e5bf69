"""Domain level exceptions and helpers for the publish pipeline."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator, Sequence

from sqlalchemy import exc as sa_exc

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .media.types import ValidationIssue

__all__ = [
    "AppError",
    "UnrecoverableError",
    "RepositoryError",
    "NotFoundError",
    "IntegrityConstraintViolation",
    "DatabaseOperationError",
    "ConfigurationError",
    "CredentialValidationError",
    "DownloadError",
    "MediaError",
    "MediaInspectionError",
    "MediaValidationError",
    "MediaTranscodeError",
    "UnsupportedMediaError",
    "VendorError",
    "VendorAuthError",
    "VendorRetryExhaustedError",
    "IngestionError",
    "QueueError",
    "QueueBusyError",
    "JobTimeoutError",
    "error_detail",
    "is_unrecoverable",
    "handle_sqlalchemy_errors",
]


class AppError(Exception):
    """Base class for application specific errors."""


class UnrecoverableError(AppError):
    """Failure that redelivering the same job cannot fix; the queue fails it at once."""


# ----------------------------------------------------------------------
# Persistence
# ----------------------------------------------------------------------
class RepositoryError(AppError):
    """Base class for persistence layer failures."""


class NotFoundError(RepositoryError):
    """Raised when a record could not be located."""


class IntegrityConstraintViolation(RepositoryError):
    """Raised when a database constraint is violated."""


class DatabaseOperationError(RepositoryError):
    """Raised for unexpected database errors."""


# ----------------------------------------------------------------------
# Input / configuration
# ----------------------------------------------------------------------
class ConfigurationError(UnrecoverableError):
    """Unknown project, missing platforms or unsupported platform type."""


class CredentialValidationError(UnrecoverableError):
    """Raised when platform credentials are empty or rejected by the vendor."""

    def __init__(self, message: str, *, platform: str | None = None) -> None:
        super().__init__(message)
        self.platform = platform


class DownloadError(AppError):
    """Raised when the source media cannot be fetched."""


# ----------------------------------------------------------------------
# Media preparation
# ----------------------------------------------------------------------
class MediaError(AppError):
    """Base class for inspector, validator and transcoder failures."""


class MediaInspectionError(MediaError):
    """ffprobe failed or returned unusable metadata."""


class UnsupportedMediaError(MediaError, UnrecoverableError):
    """Raised when a file is neither a readable image nor a video."""


class MediaValidationError(MediaError, UnrecoverableError):
    """Raised in strict mode when media violates platform requirements."""

    def __init__(self, message: str, *, issues: Sequence["ValidationIssue"] = ()) -> None:
        super().__init__(message)
        self.issues = list(issues)


class MediaTranscodeError(MediaError):
    """Raised when the encode tool fails to produce the target file."""


# ----------------------------------------------------------------------
# Vendor calls
# ----------------------------------------------------------------------
class VendorError(AppError):
    """Failure reported by a platform vendor API."""

    def __init__(
        self,
        message: str,
        *,
        platform: str | None = None,
        status_code: int | None = None,
        code: str | None = None,
        retriable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code
        self.code = code
        if retriable is None:
            retriable = status_code is not None and 500 <= status_code < 600
        self.retriable = retriable


class VendorAuthError(VendorError):
    """Vendor rejected the access credentials."""

    def __init__(self, message: str, *, platform: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message, platform=platform, status_code=status_code, retriable=False)


class VendorRetryExhaustedError(VendorError):
    """Raised when transient vendor failures outlast the retry policy."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None, platform: str | None = None) -> None:
        status_code = getattr(last_error, "status_code", None)
        super().__init__(message, platform=platform, status_code=status_code, retriable=False)
        self.attempts = attempts
        self.last_error = last_error


# ----------------------------------------------------------------------
# Trace ingestion and queue
# ----------------------------------------------------------------------
class IngestionError(AppError):
    """Raised by trace sinks when a batch could not be persisted."""


class QueueError(AppError):
    """Base class for job queue failures."""


class QueueBusyError(QueueError):
    """Raised when the queue refuses new jobs due to back-pressure."""


class JobTimeoutError(QueueError):
    """Raised when waiting on a job exceeds its deadline."""


@dataclass(slots=True)
class _EntityContext:
    """Internal helper describing the entity for error messages."""

    entity: str | None = None

    def format(self, message: str) -> str:
        if self.entity:
            return f"{self.entity}: {message}"
        return message


def is_unrecoverable(exc: BaseException) -> bool:
    """True when a job failing with ``exc`` must not be redelivered.

    Input, credential and strict-mode validation errors are deterministic, and
    so are vendor 4xx rejections. Exhausted transient retries stay eligible for
    a job-level retry, which the per-job budget keeps bounded.
    """

    if isinstance(exc, UnrecoverableError):
        return True
    if isinstance(exc, VendorRetryExhaustedError):
        return False
    return isinstance(exc, VendorError) and not exc.retriable


def error_detail(exc: BaseException) -> dict[str, Any]:
    """Serialise ``exc`` into the span error payload shape."""

    detail: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    code = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    if code is not None:
        detail["code"] = code
    retriable = getattr(exc, "retriable", None)
    if retriable is not None:
        detail["retriable"] = bool(retriable)
    return detail


def _translate_sqlalchemy_error(exc: Exception, *, context: _EntityContext) -> RepositoryError:
    if isinstance(exc, sa_exc.IntegrityError):
        return IntegrityConstraintViolation(context.format("integrity constraint violated"))
    if isinstance(exc, sa_exc.DBAPIError):
        return DatabaseOperationError(context.format("database operation failed"))
    return RepositoryError(context.format(str(exc)))


@contextmanager
def handle_sqlalchemy_errors(*, entity: str | None = None) -> Iterator[None]:
    """Translate SQLAlchemy errors into domain specific ones."""

    context = _EntityContext(entity)
    try:
        yield
    except (sa_exc.IntegrityError, sa_exc.DBAPIError) as exc:
        raise _translate_sqlalchemy_error(exc, context=context) from exc
