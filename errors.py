"""
Error kinds raised by the lending, catalog and account operations.

Each kind carries the HTTP status the API answers with; main.py turns any
LibraryError into a ``{"detail": message}`` response.
"""


class LibraryError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LibraryError):
    status_code = 404


class Conflict(LibraryError):
    """An invariant would be broken: capacity, limit, duplicate loan, on-loan deletion."""

    status_code = 400


class ValidationFailed(LibraryError):
    status_code = 400


class Unauthorized(LibraryError):
    status_code = 401


class Forbidden(LibraryError):
    status_code = 403
