"""
Service error taxonomy.

Registry and query operations raise these synchronously; the API layer turns
them into ``{"success": false, "message": ...}`` responses. Delivery failures
are recorded on the delivery row instead of being raised.
"""


class WebhookServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WebhookServiceError):
    """Bad input, rejected before anything is persisted."""

    status_code = 422


class AuthorizationError(WebhookServiceError):
    """Caller is not allowed to act on the resource."""

    status_code = 403


class NotFoundError(WebhookServiceError):
    """Resource does not exist in the caller's tenant."""

    status_code = 404


class DeliveryError(Exception):
    """Outbound delivery attempt failed (captured, never propagated)."""

    def __init__(self, message: str, response_code: int | None = None):
        super().__init__(message)
        self.response_code = response_code


class ExhaustedRetriesError(DeliveryError):
    """Delivery used its whole attempt budget."""

    def __init__(self, attempts: int):
        super().__init__(f"Retry budget exhausted after {attempts} attempts")
        self.attempts = attempts
