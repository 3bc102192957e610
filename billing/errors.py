"""Error taxonomy shared by the orchestrator.

Provider adapters raise ``TransientProviderError`` / ``PermanentProviderError``
and never let raw SDK or HTTP payloads leak past them. Business rules raise
``InvariantViolation``; bad caller input raises ``InputValidationError``.
"""


class BillingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InputValidationError(BillingError):
    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class ForbiddenError(BillingError):
    status_code = 403


class InvariantViolation(BillingError):
    status_code = 409


class WebhookVerificationError(BillingError):
    status_code = 400


class ProviderError(BillingError):
    status_code = 502
    retryable = False

    def __init__(self, message: str, code: str = None):
        self.code = code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Network, timeout or rate limit. Safe to retry on a later sweep."""
    retryable = True


class PermanentProviderError(ProviderError):
    """Declined or invalid credential. Needs customer action."""
    retryable = False
