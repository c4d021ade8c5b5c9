"""Account service error hierarchy.

Raised by services and rendered by the handler registered in server.py as
{"detail": ..., "error_code": ...} with the class's HTTP status.
Upstream errors are normally caught per app and recorded, not rendered.
"""
from typing import Any, Dict, List, Optional


class AccountServiceError(Exception):
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "error_code": self.error_code}
        if self.details:
            body.update(self.details)
        return body


class UnauthorizedError(AccountServiceError):
    status_code = 401
    error_code = "UNAUTHORIZED"


class NotFoundError(AccountServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class ValidationError(AccountServiceError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class BillingError(AccountServiceError):
    """Stripe rejected the change or the subscription is not in a modifiable state."""
    status_code = 400
    error_code = "BILLING_ERROR"


class UpstreamError(AccountServiceError):
    """Per-app admin endpoint returned non-2xx or an unreadable body."""
    status_code = 502
    error_code = "UPSTREAM_ERROR"

    def __init__(self, app: str, message: str, status: Optional[int] = None):
        super().__init__(message, {"app": app})
        self.app = app
        self.status = status


class UpstreamTimeoutError(UpstreamError):
    status_code = 504
    error_code = "UPSTREAM_TIMEOUT"


class ProvisioningFailedError(AccountServiceError):
    """Every per-app operation failed; carries per-app detail."""
    status_code = 500
    error_code = "PROVISIONING_FAILED"

    def __init__(
        self,
        message: str,
        failures: List[Dict[str, Any]],
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, {**(extra or {}), "failed": failures})
        self.failures = failures


class EmptyRecordGroupError(ValueError):
    """merge_statuses called with no records."""


class ConcurrentUpdateError(Exception):
    """Conditional account write lost a race with another writer."""
