"""Error taxonomy for the deidentification engine."""

from typing import Optional


class DeidentificationError(Exception):
    """Base class for classified engine errors."""

    code = "DEIDENTIFICATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self):
        return {
            'code': self.code,
            'field': self.field,
            'message': self.message,
        }


class InvalidFormat(DeidentificationError):
    """Value does not match the shape expected by its technique."""

    code = "INVALID_FORMAT"


class NoPolicyForField(DeidentificationError):
    """Strict mode is set and no policy matched the field."""

    code = "NO_POLICY_FOR_FIELD"


class StoreUnavailable(DeidentificationError):
    """Correspondence store timed out or is down."""

    code = "STORE_UNAVAILABLE"


class ReversibilityConflict(DeidentificationError):
    """A technique id already holds entries of the other reversibility mode."""

    code = "REVERSIBILITY_CONFLICT"


class Unauthorized(DeidentificationError):
    """Reverse lookup attempted without reversal rights."""

    code = "UNAUTHORIZED"


class NotFound(DeidentificationError):
    """Reverse lookup on an unknown pseudonym."""

    code = "NOT_FOUND"


class RecordSuppressed(Exception):
    """
    Signal raised by a record-scope suppression.

    Not an error: the orchestrator catches it and drops the record.
    """

    code = "RECORD_SUPPRESSED"

    def __init__(self, field: Optional[str] = None):
        super().__init__(f"Record suppressed by policy on field '{field}'")
        self.field = field
