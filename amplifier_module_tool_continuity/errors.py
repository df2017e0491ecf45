"""Exception hierarchy for the continuity store."""


class ContinuityError(Exception):
    """Base class for continuity errors."""


class ValidationError(ContinuityError, ValueError):
    """Input rejected before anything was written."""


class StorageError(ContinuityError):
    """The SQLite database failed during an operation."""


class IndexConsistencyError(StorageError):
    """The full-text index no longer matches the conversations table."""

    def __init__(self, message: str, missing: list[int], orphaned: list[int]):
        super().__init__(message)
        self.missing = missing
        self.orphaned = orphaned
