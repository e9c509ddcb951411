"""
Error taxonomy for playlist ingestion.

Record-level errors (ParseError for single lines, ValidationError) are recovered
where they occur. Protocol-level errors abort the current sync cycle.
"""


class IngestError(Exception):
    """Base class for all ingestion errors"""


class ParseError(IngestError):
    """Raised when source text cannot produce any usable record"""

    EMPTY = "empty"

    def __init__(self, message: str, kind: str = EMPTY):
        super().__init__(message)
        self.kind = kind


class ValidationError(IngestError):
    """Raised when a single record fails required-field checks"""

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason


class AuthError(IngestError):
    """Raised when a provider rejects the configured credentials"""


class SessionError(IngestError):
    """Raised when a portal session expires more than once in a single cycle"""


class TransientNetworkError(IngestError):
    """Raised when a network call keeps failing after bounded retries"""


class ProviderError(IngestError):
    """Raised when a provider answers with a malformed or unusable payload"""
