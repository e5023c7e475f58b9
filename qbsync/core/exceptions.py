"""
Exception hierarchy for the sync and reconciliation engine.

Every error carries an HTTP-ish status code so the API layer can translate it
without inspecting messages.
"""
from typing import Any, Dict, Optional


class QuickBooksSyncError(Exception):
    """Base class for all sync/reconciliation errors"""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class QuickBooksAPIError(QuickBooksSyncError):
    """Non-success response (or exhausted retries) from the QuickBooks API"""

    status_code = 502

    def __init__(self, message: str, http_status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.http_status = http_status

    @property
    def is_auth_failure(self) -> bool:
        return self.http_status in (401, 403)


class AuthenticationError(QuickBooksSyncError):
    """Missing/expired credential that could not be refreshed"""

    status_code = 401


class PreconditionError(QuickBooksSyncError):
    """Request rejected before any state was mutated"""

    status_code = 400


class NotFoundError(QuickBooksSyncError):
    status_code = 404


class IntegrityFault(QuickBooksSyncError):
    """Persisted state violates an invariant (e.g. orphaned entity job)"""

    status_code = 500
