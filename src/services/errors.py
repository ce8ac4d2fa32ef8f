"""Error taxonomy for reconciliation runs and response helpers."""

from typing import Any, Dict


class ReconciliationError(Exception):
    """Base reconciliation error."""

    http_status = 400

    def __init__(self, message: str, code: str):
        """Initialize error."""
        self.message = message
        self.code = code
        super().__init__(message)


class TransientStoreError(ReconciliationError):
    """Reading store timed out or failed; safe to retry."""

    http_status = 503

    def __init__(self, message: str = "Reading store unavailable"):
        super().__init__(message, "store_unavailable")


class ValidationError(ReconciliationError):
    """Input rejected without retry."""

    http_status = 400

    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, "validation_error")


class CancellationError(ReconciliationError):
    """Run halted on request; not a failure."""

    http_status = 409

    def __init__(self, message: str = "Reconciliation cancelled"):
        super().__init__(message, "cancelled")


class ConfigurationError(ReconciliationError):
    """Site or run configuration prevents any work from starting."""

    http_status = 422

    def __init__(self, message: str = "Invalid configuration"):
        super().__init__(message, "configuration_error")


def error_response(error: ReconciliationError) -> Dict[str, Any]:
    """Create a standardized error response."""
    return {
        "error": {
            "code": error.code,
            "message": error.message,
        }
    }


__all__ = [
    "ReconciliationError",
    "TransientStoreError",
    "ValidationError",
    "CancellationError",
    "ConfigurationError",
    "error_response",
]
