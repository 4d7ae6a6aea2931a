"""
Failure taxonomy for the lending ledger.

Every refusal carries a FailureReason so callers can tell "book unavailable"
from "limit reached" from "not found" without parsing messages.
"""

from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    MEMBER_NOT_FOUND = "member_not_found"
    BOOK_NOT_FOUND = "book_not_found"
    RECORD_NOT_FOUND = "record_not_found"
    MEMBER_INACTIVE = "member_inactive"
    ALREADY_BORROWED = "already_borrowed"
    DUPLICATE_LOAN = "duplicate_loan"
    LIMIT_REACHED = "limit_reached"
    NO_ACTIVE_LOAN = "no_active_loan"
    ALREADY_RETURNED = "already_returned"
    INVALID_EXTENSION = "invalid_extension"
    INVALID_RATING = "invalid_rating"
    DUPLICATE_BOOK = "duplicate_book"
    DUPLICATE_MEMBER = "duplicate_member"
    BOOK_ON_LOAN = "book_on_loan"
    MEMBER_HAS_LOANS = "member_has_loans"
    PRECONDITION_FAILED = "precondition_failed"
    STORAGE_ERROR = "storage_error"


class LedgerError(Exception):
    """Base exception for library ledger errors."""

    default_reason = FailureReason.STORAGE_ERROR

    def __init__(self, message: str, reason: Optional[FailureReason] = None):
        super().__init__(message)
        self.reason = reason or self.default_reason


class NotFound(LedgerError):
    """A member, book or ledger record identifier is unknown."""

    default_reason = FailureReason.RECORD_NOT_FOUND


class PreconditionFailed(LedgerError):
    """The request violates a lending rule; nothing was written."""

    default_reason = FailureReason.PRECONDITION_FAILED


class StorageError(LedgerError):
    """The store could not commit or roll back cleanly."""

    default_reason = FailureReason.STORAGE_ERROR
