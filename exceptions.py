"""Domain errors raised by the library workflow.

Every error carries a stable ``kind`` (rendered to clients next to the
message) and the HTTP status the API layer answers with. Checks raise on the
first violation; nothing here is retried.
"""


class LibraryError(Exception):
    """Base exception for library system errors."""

    kind = "library_error"
    status_code = 400
    default_message = "Library operation failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "kind": self.kind}


class NotFoundError(LibraryError):
    """Referenced book, user, membership or borrowing does not exist."""

    kind = "not_found"
    status_code = 404
    default_message = "Not found"


class UnauthorizedError(LibraryError):
    """Missing, expired or invalid bearer credential."""

    kind = "unauthorized"
    status_code = 401
    default_message = "No token, authorization denied"


class ForbiddenError(LibraryError):
    """Role or ownership check failed."""

    kind = "forbidden"
    status_code = 403
    default_message = "Access denied"


class ValidationError(LibraryError):
    """Missing or malformed input."""

    kind = "validation"
    default_message = "Invalid input"


class ConflictError(LibraryError):
    """Duplicate record or a transition not allowed from the current state."""

    kind = "conflict"
    default_message = "Conflicting state"


class UnavailableError(LibraryError):
    """No copies left, or no usable membership."""

    kind = "unavailable"
    default_message = "Book is not available for borrowing"


class LimitExceededError(LibraryError):
    """Borrowing cap for the membership type reached."""

    kind = "limit_exceeded"
    default_message = "Borrowing limit reached"


class AlreadyReturnedError(ConflictError):
    kind = "already_returned"
    default_message = "Book is already returned"


class NothingDueError(ConflictError):
    kind = "nothing_due"
    default_message = "No fine to pay"


class AlreadyPaidError(ConflictError):
    kind = "already_paid"
    default_message = "Fine is already paid"


class GenerationFailedError(LibraryError):
    """A unique identifier could not be produced within the retry budget."""

    kind = "generation_failed"
    status_code = 500
    default_message = "Could not generate a unique membership number"
