"""
Sync engine exceptions.

Engine errors come first; the QuickBooks API error family at the bottom is
raised by `qbo_sync.client` and re-exported there.
"""


class SyncError(Exception):
    """Base exception for sync engine errors."""
    pass


class ConfigurationError(SyncError):
    """Raised before any work starts when a request or setup is invalid."""
    pass


class DependencyCycleError(ConfigurationError):
    """Raised when the entity dependency graph contains a cycle."""

    def __init__(self, entity: str):
        super().__init__(f"Circular dependency detected for {entity}")
        self.entity = entity


class UnknownEntityError(ConfigurationError):
    """Raised when an entity name does not map to a supported entity."""

    def __init__(self, names: list[str]):
        valid = "customers, items, invoices, payments"
        super().__init__(
            f"Invalid entities: {', '.join(names)}. Valid options: {valid}"
        )
        self.names = names


class MissingCredentialError(SyncError):
    """Raised when a tenant has no usable QuickBooks credential."""
    pass


class UnresolvedReferenceError(SyncError):
    """
    Raised while mapping a single record whose foreign key is unknown.

    Never escapes a worker: the record is skipped and counted.
    """

    def __init__(self, field: str, external_id: str | None):
        super().__init__(f"Unresolved {field} reference: {external_id}")
        self.field = field
        self.external_id = external_id


class SessionConflictError(SyncError):
    """Raised when a session update would move its offset backwards."""
    pass


class InvalidSignatureError(SyncError):
    """Raised when a webhook signature is missing or does not match."""
    pass


# ---------------------------------------------------------------------------
# QuickBooks API errors
# ---------------------------------------------------------------------------

class QBOAPIError(SyncError):
    """Base exception for QuickBooks API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body
        self.attempts = 1

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class QBORateLimitError(QBOAPIError):
    """Raised when the API rate limit is exceeded (429)."""
    pass


class QBOAuthError(QBOAPIError):
    """Raised when authentication fails (401/403)."""
    pass


class QBONotFoundError(QBOAPIError):
    """Raised when a resource is not found (404)."""
    pass


class QBOValidationError(QBOAPIError):
    """Raised on a rejected request (400), including stale SyncTokens."""
    pass


class QBOServerError(QBOAPIError):
    """Raised on server errors (5xx) - these are retryable."""
    pass
