"""Typed exceptions for certanchor.

Each error carries the HTTP status the API layer answers with, so route
handlers only raise and never build error responses themselves.
"""


class CertAnchorError(RuntimeError):
    """Base class for all certanchor errors."""

    status_code = 500


class ConfigError(CertAnchorError):
    """Required configuration missing or malformed."""

    status_code = 500


# Request errors
class AuthenticationError(CertAnchorError):
    """Bearer token missing, malformed, expired or not signed by the pool."""

    status_code = 401


class PermissionDenied(CertAnchorError):
    """Authenticated principal lacks the required capability."""

    status_code = 403


class ValidationError(CertAnchorError):
    """Missing file or field, or a malformed digest."""

    status_code = 400


class NotFoundError(CertAnchorError):
    """Requested object does not exist."""

    status_code = 404


# Collaborator errors
class StorageError(CertAnchorError):
    """Object store operation failed."""

    status_code = 502


class DirectoryError(CertAnchorError):
    """User directory operation failed."""

    status_code = 502


class LedgerError(CertAnchorError):
    """Ledger call failed, including gas estimation."""

    status_code = 502


class AnchorFailedError(LedgerError):
    """Blob was stored but its digest could not be anchored."""

    def __init__(self, digest: str, storage_key: str, reason: str):
        self.digest = digest
        self.storage_key = storage_key
        self.reason = reason
        super().__init__(
            f"Certificate stored at {storage_key} but anchoring failed: {reason}. "
            "It will be retried by reconciliation."
        )
