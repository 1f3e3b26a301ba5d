"""Typed ledger errors.

Every error carries an :class:`ErrorKind` so boundaries that convert
exceptions into results (posting engine, scheduled jobs) can report the
kind without string matching.
"""

import enum


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    DUPLICATE_ACCOUNT = "duplicate_account"
    UNBALANCED = "unbalanced"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    VALIDATION_FAILURE = "validation_failure"


class LedgerError(Exception):
    """Base exception for ledger errors."""

    kind: ErrorKind = ErrorKind.VALIDATION_FAILURE


class NotFoundError(LedgerError):
    """Unknown account, entry, settlement, item or transaction."""

    kind = ErrorKind.NOT_FOUND


class DuplicateAccountError(LedgerError):
    """Account code already exists."""

    kind = ErrorKind.DUPLICATE_ACCOUNT


class UnbalancedEntryError(LedgerError):
    """Debits do not equal credits."""

    kind = ErrorKind.UNBALANCED


class InvalidStateTransitionError(LedgerError):
    """Transition attempted from a non-qualifying state."""

    kind = ErrorKind.INVALID_STATE_TRANSITION


class ValidationFailure(LedgerError):
    """Input or self-check validation failed; carries the discrepancies."""

    kind = ErrorKind.VALIDATION_FAILURE

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])
