"""
Error taxonomy for supplier merges.

- MergeValidationError : rejected before anything is written, never retried
- BusyError            : a conflicting merge/undo holds the lock set, caller may retry
- DeadlineExpiredError : the undo window has closed, terminal
- StorageError         : the transaction was rolled back after bounded retries
- InvariantViolation   : a consistency check failed at commit time, rolled back
"""

from __future__ import annotations


class SupplierMergeError(Exception):
    code = "MERGE_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class MergeValidationError(SupplierMergeError):
    code = "VALIDATION_ERROR"

    SAME_ACCOUNT = "SameAccount"
    SOURCE_NOT_FOUND = "SourceNotFound"
    TARGET_NOT_FOUND = "TargetNotFound"
    PROTECTED_ACCOUNT = "ProtectedAccount"
    SOURCE_INACTIVE = "SourceInactive"
    TARGET_INACTIVE = "TargetInactive"
    SOURCE_HAS_PENDING_MERGE = "SourceHasPendingMerge"
    MERGE_NOT_FOUND = "MergeNotFound"
    ALREADY_PERMANENT = "AlreadyPermanent"

    NOT_FOUND_CODES = frozenset({SOURCE_NOT_FOUND, TARGET_NOT_FOUND, MERGE_NOT_FOUND})

    @property
    def is_not_found(self) -> bool:
        return self.code in self.NOT_FOUND_CODES


class BusyError(SupplierMergeError):
    code = "Busy"


class DeadlineExpiredError(SupplierMergeError):
    code = "DeadlineExpired"


class StorageError(SupplierMergeError):
    code = "StorageError"


class InvariantViolation(StorageError):
    code = "InvariantViolation"
