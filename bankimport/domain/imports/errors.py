"""
Error taxonomy for transaction imports.

Row-level problems never escape the orchestrator: they are converted into
a failed or skipped outcome tagged with an ``ImportFailureType``. Only the
exceptions that concern the job as a whole propagate to callers.
"""
from enum import Enum
from typing import Any, List, Optional


class ImportFailureType(str, Enum):
    VALIDATION_FAILED = "validation_failed"
    PARSING_ERROR = "parsing_error"
    PROCESSING_ERROR = "processing_error"
    DUPLICATE = "duplicate"
    PERSISTENCE_ERROR = "persistence_error"
    EMPTY_ROW = "empty_row"


class PersistenceErrorKind(str, Enum):
    FINGERPRINT_CONFLICT = "fingerprint_conflict"
    CONSTRAINT_VIOLATION = "constraint_violation"
    UNKNOWN = "unknown"


class ImportFileError(Exception):
    """Raised when the stored import file cannot be opened or read at all."""

    def __init__(self, path: str, message: Optional[str] = None):
        self.path = path
        self.message = message or f"Unable to read import file: {path}"
        super().__init__(self.message)


class RowParseError(ValueError):
    """
    Raised when a row cannot be turned into a candidate transaction.

    ``partial`` carries the candidate built from the cells that did parse,
    when the parser got that far.
    """

    def __init__(self, message: str, field: Optional[str] = None, partial: Any = None):
        self.field = field
        self.partial = partial
        super().__init__(message)


class InvalidMappingError(ValueError):
    """Raised when a column mapping cannot be used against the file headers."""

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = errors
        self.warnings = warnings or []
        super().__init__("; ".join(errors) or "Invalid column mapping")


class InvalidFailureTransition(ValueError):
    """Raised when a review action is not allowed from the failure's current status."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move import failure from '{current}' to '{target}'")


class ImportStateError(RuntimeError):
    """Raised when an operation is not valid for the import's current state."""


class ColumnSetMismatch(RuntimeError):
    """Raised inside a bulk insert when rows of one chunk disagree on their columns."""

    def __init__(self, expected: List[str], actual: List[str]):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Inconsistent columns in batch data: expected {expected}, got {actual}")


class FingerprintConflict(RuntimeError):
    """Raised when a transaction's fingerprint already exists for the user."""

    def __init__(self, fingerprint: str, existing_transaction_id: Optional[str] = None):
        self.fingerprint = fingerprint
        self.existing_transaction_id = existing_transaction_id
        super().__init__(f"Transaction fingerprint {fingerprint[:12]} already exists")


class InvalidTransactionValues(ValueError):
    """Raised when reviewer-supplied or edited values do not form a valid transaction."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors) or "Invalid transaction values")


class UploadTooLarge(ValueError):
    """Raised when an uploaded file exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Uploaded file is {size} bytes; the limit is {limit} bytes")


class ImportNotFound(LookupError):
    pass


class FailureNotFound(LookupError):
    pass


class MappingNotFound(LookupError):
    pass
