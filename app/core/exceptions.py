"""
Domain exceptions.

Every exception carries the HTTP status it maps to; app/main.py turns any
InventoryError into a JSON response with that status. Branch failures on
read paths are normally absorbed by the stock service and never reach the
caller as exceptions.
"""
from typing import Optional, Union


class InventoryError(Exception):
    """Base class for errors raised by the counting core."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CallerError(InventoryError):
    """Invalid input from the caller. Never retried."""
    status_code = 400


class NotFoundError(CallerError):
    """Raised when an id or folio does not exist."""
    status_code = 404


class InvalidItemSet(CallerError):
    """Raised when a count creation call has no usable items."""
    pass


class InvalidStatusTransition(CallerError):
    """Raised when a status change is not allowed by the state machine."""
    pass


class AlreadyStarted(CallerError):
    """Raised when a count that already left 'pendiente' is started again."""
    status_code = 409


class TooManyDifferences(CallerError):
    """Raised when request derivation would exceed the batch cap."""
    pass


class BranchUnavailable(InventoryError):
    """Raised when a branch has no usable connection."""
    status_code = 503

    def __init__(self, branch_id: Union[int, str], reason: Optional[str] = None):
        message = f"Branch {branch_id} is not available"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.branch_id = branch_id


class QueryError(InventoryError):
    """Raised when a query against a branch database fails."""
    status_code = 502

    NO_SUCH_TABLE = "no_such_table"

    def __init__(self, branch_id: int, message: str, code: Optional[Union[int, str]] = None):
        super().__init__(f"Query failed on branch {branch_id}: {message}")
        self.branch_id = branch_id
        self.code = code

    @property
    def is_missing_table(self) -> bool:
        return self.code == self.NO_SUCH_TABLE


class SchemaMismatch(QueryError):
    """Raised when a branch lacks every known variant of a required table."""

    def __init__(self, branch_id: int, table: str):
        super().__init__(branch_id, f"missing required table {table}", self.NO_SUCH_TABLE)
        self.message = f"Branch {branch_id} missing required table {table}"
        self.table = table
