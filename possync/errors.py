"""Exception hierarchy for the sync engine.

Only ``NetworkError`` means "the server could not be reached". Everything
else is an answer from the server and must reach the caller unchanged.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ConflictRecord


class SyncError(Exception):
    """Base class for all sync engine errors."""


class NetworkError(SyncError):
    """Connection refused, timeout, DNS failure or another transport error."""


class RemoteError(SyncError):
    """The server answered with an error status."""

    def __init__(self, status_code: int, detail: Any = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")


class AuthenticationError(RemoteError):
    """The server rejected the caller's credentials (401/403)."""


class OperationRejectedError(SyncError):
    """The server refused a single operation (validation, not found, rule)."""

    def __init__(self, op_id: str, message: str):
        self.op_id = op_id
        self.message = message
        super().__init__(f"Operation {op_id} rejected: {message}")


class ConflictError(SyncError):
    """The server kept its own state and rejected the operation."""

    def __init__(self, conflict: "ConflictRecord"):
        self.conflict = conflict
        super().__init__(
            f"{conflict.conflict_type.value} conflict on {conflict.entity.value}: "
            f"{conflict.message}"
        )


class NoCachedDataError(SyncError):
    """Offline read for a collection that has never been cached."""


class UnknownEntityError(SyncError, ValueError):
    """Entity or collection name outside the supported set."""


class OperationFailed(Exception):
    """Raised by server-side entity handlers to reject one operation.

    The push handler rolls the operation's transaction back and reports
    the message in the response's ``errors`` list.
    """
