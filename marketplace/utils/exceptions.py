"""
Exceptions raised by the chat core.

Store failures surface as StoreError with a coarse code; everything the
chat operations themselves reject is a ChatError subclass.
"""

from typing import Optional

PERMISSION_DENIED = "permission-denied"
UNAVAILABLE = "unavailable"
INTERNAL = "internal"
ABORTED = "aborted"
DEADLINE_EXCEEDED = "deadline-exceeded"
NOT_FOUND = "not-found"
UNKNOWN = "unknown"

RETRYABLE_CODES = frozenset({UNAVAILABLE, INTERNAL, ABORTED, DEADLINE_EXCEEDED})


class StoreError(Exception):
    """Raised by a DocumentStore when the backing store rejects an operation."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code

    @property
    def is_permission_denied(self) -> bool:
        return self.code == PERMISSION_DENIED

    @property
    def is_retryable(self) -> bool:
        return self.code in RETRYABLE_CODES


def is_permission_denied(error: BaseException) -> bool:
    return isinstance(error, StoreError) and error.is_permission_denied


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, StoreError) and error.is_retryable


class ChatError(Exception):
    """Base exception for chat operations."""
    pass


class ChatValidationError(ChatError):
    """Raised before any write when required input is missing or malformed."""
    pass


class NotAuthenticatedError(ChatError):
    """Raised when a write is attempted without a current user."""
    pass


class ConversationNotFoundError(ChatError):
    """Raised when a message targets a conversation that does not exist."""
    pass


class ChatInitializationError(ChatError):
    """Raised when a freshly written conversation cannot be read back intact."""
    pass


class MalformedRecordError(ChatError):
    """Raised when a stored record does not have the expected shape."""
    pass


class UserDeletionError(Exception):
    """Raised when the cascading user deletion is refused or fails."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
