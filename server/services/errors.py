"""Image server exception hierarchy.

Every failure carries an ErrorKind so callers can branch on one tag instead of
matching exception types or message strings.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Tagged error kinds surfaced by the store, the lock and the coordinator."""
    STORE_UNAVAILABLE = "store_unavailable"
    NO_LOCK = "no_lock"
    LOCK_EXPIRED = "lock_expired"
    LOCK_TIMEOUT = "lock_timeout"
    NO_SUCH_SOURCE = "no_such_source"
    TRANSFORM_FAILED = "transform_failed"
    UPLOAD_FAILED = "upload_failed"


class ImageServerError(Exception):
    """Base exception for all image server errors.

    The base class carries no kind; subclasses name theirs, and callers map
    a missing kind to a generic server error.
    """

    kind: Optional[ErrorKind] = None

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        if kind is not None:
            self.kind = kind
        super().__init__(message)


class StoreError(ImageServerError):
    """Key/value store I/O failure."""

    kind = ErrorKind.STORE_UNAVAILABLE


class LockError(ImageServerError):
    """Lock could not be waited on; the caller should claim the lock and build."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"{message}: {key}")


class NoLockError(LockError):
    """No lock is held, so no build is in progress."""

    kind = ErrorKind.NO_LOCK

    def __init__(self, key: str):
        super().__init__(key, "no lock")


class LockExpiredError(LockError):
    """The lock exists but its lease has passed."""

    kind = ErrorKind.LOCK_EXPIRED

    def __init__(self, key: str, expiry: int):
        self.expiry = expiry
        super().__init__(key, "lock expired")


class LockTimeoutError(LockError):
    """The lock was still held when the wait deadline passed."""

    kind = ErrorKind.LOCK_TIMEOUT

    def __init__(self, key: str, expiry: Optional[int] = None):
        self.expiry = expiry
        super().__init__(key, "lock timeout")


class SourceFetchError(ImageServerError):
    """The blob store could not supply the original image."""

    kind = ErrorKind.NO_SUCH_SOURCE

    def __init__(self, path: str, message: str = "original not found"):
        self.path = path
        super().__init__(f"{message}: {path}")


class TransformError(ImageServerError):
    """The transformer rejected or failed on the input."""

    kind = ErrorKind.TRANSFORM_FAILED


class UploadError(ImageServerError):
    """The generated version could not be stored."""

    kind = ErrorKind.UPLOAD_FAILED

    def __init__(self, destination: str, message: str, status_code: int = None):
        self.destination = destination
        self.status_code = status_code
        super().__init__(f"[{destination}] {message}")
