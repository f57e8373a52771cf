"""Error taxonomy shared by the store, the service and the web layer.

Every error carries the HTTP status the web layer answers with and a
message that is safe to show to the operator.
"""

from __future__ import annotations

import errno


class ProfileError(Exception):
    http_status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ProfileError):
    http_status = 404


class Conflict(ProfileError):
    http_status = 409


class ValidationError(ProfileError):
    http_status = 400


class ParseError(ProfileError):
    http_status = 500

    def __init__(self, message: str = "Profile data has an invalid format"):
        super().__init__(message)


# StorageError.kind values
STORAGE_PERMISSION = "permission"
STORAGE_SPACE = "space"
STORAGE_IO = "io"

_STORAGE_MESSAGES = {
    STORAGE_PERMISSION: "Permission denied while accessing profile data",
    STORAGE_SPACE: "Not enough disk space to save profile data",
    STORAGE_IO: "Failed to access profile data",
}


class StorageError(ProfileError):
    http_status = 500

    def __init__(self, kind: str = STORAGE_IO, detail: str = ""):
        super().__init__(_STORAGE_MESSAGES.get(kind, _STORAGE_MESSAGES[STORAGE_IO]))
        self.kind = kind
        self.detail = detail

    @classmethod
    def from_os_error(cls, exc: OSError) -> "StorageError":
        if exc.errno in (errno.EACCES, errno.EPERM) or isinstance(exc, PermissionError):
            kind = STORAGE_PERMISSION
        elif exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
            kind = STORAGE_SPACE
        else:
            kind = STORAGE_IO
        return cls(kind, str(exc))
