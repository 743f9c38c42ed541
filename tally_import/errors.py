"""
Exception types raised by the import engine.

Record-level problems (validation issues, unmapped ledgers, unbalanced
vouchers) are never raised to the caller; they are written to the batch.
The exceptions here cover infrastructure failures and lifecycle misuse.
"""


class TallyImportError(Exception):
    """Base class for all import engine errors."""
    pass


# Infrastructure

class TargetSystemError(TallyImportError):
    """Raised by a target repository when a call fails for one record."""
    pass


class TransientTargetError(TargetSystemError):
    """Raised for failures that are worth retrying (lock timeouts, deadlocks)."""
    pass


class TargetUnavailableError(TransientTargetError):
    """Raised when the target system cannot be reached at all.

    Retried like any transient failure; when retries are exhausted the
    whole batch fails instead of the single record.
    """
    pass


class RecordTimeoutError(TargetSystemError):
    """Raised when a target call for one record exceeds the configured timeout."""
    pass


# Mapping

class MappingConfigurationError(TallyImportError):
    """Raised when a mapping configuration is invalid."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid mapping configuration: " + "; ".join(problems))


# Lifecycle

class BatchNotFoundError(TallyImportError):
    """Raised when a batch id is unknown to the batch store."""
    pass


class InvalidTransitionError(TallyImportError):
    """Raised when a batch is asked to move to a state it cannot reach."""

    def __init__(self, batch_id: str, current: str, requested: str):
        self.batch_id = batch_id
        self.current = current
        self.requested = requested
        super().__init__(f"Batch {batch_id}: cannot move from {current} to {requested}")


class BatchStateError(TallyImportError):
    """Raised when a finished batch is mutated, or an operation needs another state."""
    pass


class ConcurrentImportError(TallyImportError):
    """Raised when a company already has a batch importing."""
    pass


class ImportCancelledError(TallyImportError):
    """Raised inside a running import when the operator cancels it."""
    pass


class RollbackNotAllowedError(TallyImportError):
    """Raised when a batch cannot be rolled back in its current state."""
    pass


class ParseError(TallyImportError):
    """Raised by low-level readers when a document cannot be parsed at all."""
    pass
