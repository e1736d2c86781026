"""Error taxonomy shared by the filesystem services and the HTTP layer.

Every error carries a short snake_case ``code`` (sent to clients as the
``error`` field) and the HTTP ``status`` it maps to.
"""

from __future__ import annotations

from typing import Optional


class FsError(Exception):
    status = 500
    code = "internal_error"

    def __init__(self, code: Optional[str] = None, *, details: Optional[str] = None) -> None:
        if code:
            self.code = code
        self.details = details
        super().__init__(self.code if not details else f"{self.code}: {details}")


class ValidationError(FsError):
    """Missing or malformed client input."""

    status = 400
    code = "bad_request"


class PathEscapeError(FsError):
    """A client path resolved outside the root directory."""

    status = 403
    code = "path_not_allowed"


class NotFoundError(FsError):
    status = 404
    code = "not_found"


class ConflictError(FsError):
    """Destination exists and overwriting was not allowed."""

    status = 409
    code = "exists"


class UploadTooLargeError(FsError):
    status = 413
    code = "upload_too_large"


class FsIOError(FsError):
    """Underlying filesystem failure (permissions, device, disk full...)."""

    status = 500
    code = "io_failed"


def from_os_error(err: OSError, code: str = "io_failed") -> FsError:
    """Translate an OSError raised by a filesystem call."""
    if isinstance(err, FileNotFoundError):
        return NotFoundError(details=err.strerror or str(err))
    return FsIOError(code, details=err.strerror or str(err))
