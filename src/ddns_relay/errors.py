"""Error taxonomy shared by the ledger, the orchestrator and the HTTP layer.

Every error carries the HTTP status it maps to and a message that is safe to
return to the client. Detail meant only for operators goes into the log, never
into ``public_message``.
"""

from __future__ import annotations

from typing import Any, Optional


class DDNSError(Exception):
    """Base class for all errors surfaced by the relay."""

    status_code = 500
    default_message = "internal server error"

    def __init__(self, message: str = "", *, public_message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.public_message = public_message or message or self.default_message


class BadRequest(DDNSError):
    status_code = 400
    default_message = "bad request"


class InvalidKeyLength(BadRequest):
    default_message = "encryption key must be exactly 32 bytes"


class AuthenticationFailed(DDNSError):
    """Unknown user, wrong token or undecryptable payload.

    The client always sees the same message whichever check failed.
    """

    status_code = 403
    default_message = "authentication failed"

    def __init__(self, reason: str = "", *, status_code: Optional[int] = None):
        super().__init__(reason or self.default_message, public_message=self.default_message)
        if status_code is not None:
            self.status_code = status_code


class NotFound(DDNSError):
    status_code = 404
    default_message = "not found"


class QuotaExceeded(DDNSError):
    status_code = 409
    default_message = "domain limit reached"


class RecordConflict(DDNSError):
    status_code = 409
    default_message = "record is already owned by another account"


class DNSProviderError(DDNSError):
    default_message = "upstream DNS provider request failed"

    def __init__(self, message: str = ""):
        super().__init__(message, public_message=self.default_message)


class PersistenceFailed(DDNSError):
    """The durable write failed after the in-memory state was already changed.

    ``value`` holds whatever the ledger operation would have returned, so the
    caller can finish its work against the (authoritative) in-memory state.
    """

    default_message = "failed to persist account state"

    def __init__(self, message: str = "", *, value: Any = None):
        super().__init__(message, public_message=self.default_message)
        self.value = value


class DecryptionFailed(Exception):
    """Raised by the crypto envelope; never shown to clients directly."""


class LedgerLoadError(Exception):
    """The account store could not be loaded at startup."""
