"""
PatternBank errors.

Every public operation either succeeds or raises one of these. Validation
runs before any write, so a raised ValidationError or NotFoundError means
nothing was changed.
"""


class PatternBankError(Exception):
    """Base class for all PatternBank errors."""


class NotFoundError(PatternBankError, LookupError):
    """A referenced pattern, link or trajectory does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key!r} not found")


class ValidationError(PatternBankError, ValueError):
    """Malformed input: bad vector dimension, unknown link type, sealed trajectory, ..."""


class StorageError(PatternBankError):
    """Underlying persistence failure. The failed transaction was rolled back."""


class EmbeddingProviderError(PatternBankError):
    """A pluggable embedder failed or timed out. Recovered by falling back to the hash embedder."""


class ConcurrencyConflict(PatternBankError):
    """Write contention on the database. Retried internally with backoff."""


class InvalidStateError(ValidationError):
    """The operation is not allowed in the record's current state (e.g. a sealed trajectory)."""
