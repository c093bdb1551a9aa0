"""Typed exceptions raised by the sync engine.

Provider failures are split by whether retrying the same credential later can
succeed; storage failures are split by whether the page data or only the
cursor failed to persist.
"""


class SyncError(Exception):
    """Base exception for all sync engine errors."""

    code = "SYNC_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ProviderError(SyncError):
    """The provider returned a non-2xx response or could not be reached."""

    def __init__(self, code: str, message: str, status_code: int | None = None):
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ProviderUnavailable(ProviderError):
    """Network failure, timeout, rate limit or 5xx. Retried on the next round."""

    retriable = True


class ProviderRejected(ProviderError):
    """4xx response, e.g. a revoked credential. Needs operator attention."""

    retriable = False


class ReconciliationError(SyncError):
    """A storage write failed while applying a page; the cursor stays put."""

    code = "RECONCILIATION_FAILED"


class CursorPersistError(SyncError):
    """The page was reconciled but the new cursor could not be stored."""

    code = "CURSOR_PERSIST_FAILED"


class ConnectionNotFoundError(SyncError):
    """No Connection exists for the requested item id."""

    code = "CONNECTION_NOT_FOUND"


class DuplicateConnectionError(SyncError):
    """A Connection with the same item id is already registered."""

    code = "DUPLICATE_CONNECTION"
