"""
Exceptions raised by canonicalization and enumeration.

All enumeration errors can carry the batch name and the index of the
object being processed when they occurred, so a caller can resume or
diagnose a run.
"""

from typing import Optional


class EnumerationError(Exception):
    """Base class for errors raised while canonicalizing or enumerating."""

    def __init__(self, message: str, batch_name: Optional[str] = None,
                 index: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.batch_name = batch_name
        self.index = index

    def with_context(self, batch_name: Optional[str] = None,
                     index: Optional[int] = None) -> 'EnumerationError':
        """Attach batch/object context (existing context is kept)."""
        if self.batch_name is None:
            self.batch_name = batch_name
        if self.index is None:
            self.index = index
        return self

    def __str__(self):
        where = []
        if self.batch_name is not None:
            where.append(f"batch={self.batch_name}")
        if self.index is not None:
            where.append(f"index={self.index}")
        if where:
            return f"{self.message} ({', '.join(where)})"
        return self.message


class InvalidInput(EnumerationError, ValueError):
    """Malformed or empty enumeration input."""


class InvariantViolation(EnumerationError):
    """A precondition of the canonical-form algorithm was broken."""


class StorageError(EnumerationError, OSError):
    """A database could not be written durably."""
