"""
errors.py - Error taxonomy

Each class carries the HTTP status the API answers with. Messages are
user-facing.
"""


class TodoAppError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TodoAppError):
    """Malformed input."""

    status_code = 400


class NotFoundError(TodoAppError):
    """Record is missing or belongs to another user. The two are never told apart."""

    status_code = 404


class AuthRequired(TodoAppError):
    status_code = 401

    def __init__(self, message: str = "Please sign in first"):
        super().__init__(message)


class DuplicateResource(TodoAppError):
    status_code = 409


class StorageFailure(TodoAppError):
    status_code = 500

    def __init__(self, message: str = "Storage operation failed, please try again"):
        super().__init__(message)
