"""SiteInsight: Error Taxonomy.

Every failure raised inside one tenant's processing is a subclass of
SiteInsightError, so the batch loop can record it against the tenant and
carry on with the next one.
"""

from enum import Enum


class SiteInsightError(Exception):
    """Base class for all pipeline errors."""


class CredentialErrorReason(str, Enum):
    """Why a valid access token could not be produced."""

    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    REFRESH_FAILED = "refresh_failed"
    NOT_FOUND = "not_found"


class CredentialError(SiteInsightError):
    """Raised when a credential cannot be read or refreshed."""

    def __init__(self, reason: CredentialErrorReason, message: str = ""):
        self.reason = reason
        super().__init__(message or reason.value)


class ProviderAPIError(SiteInsightError):
    """Raised when an analytics provider returns a non-2xx response."""

    def __init__(self, message: str, status_code: int = 0, provider: str = ""):
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class AggregationError(SiteInsightError):
    """Raised when provider rows do not match the report layout."""


class PersistenceError(SiteInsightError):
    """Raised when a batch commit or write contract check fails."""


class ExportError(SiteInsightError):
    """Raised when the spreadsheet lookup or write fails."""
