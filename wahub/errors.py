"""
Exception taxonomy for WaHub.

Only programmer and validation errors are raised. Rate-limit rejections and
webhook delivery failures are result values, never exceptions.
"""


class WaHubError(Exception):
    """Base class for all WaHub errors."""


class ValidationError(WaHubError, ValueError):
    """Malformed input: bad client id, bad URL, unknown event names."""


class SubscriptionNotFound(WaHubError, LookupError):
    """No webhook subscription with the given id in the organisation."""

    def __init__(self, subscription_id: str):
        super().__init__(f"Webhook subscription not found: {subscription_id}")
        self.subscription_id = subscription_id


class SigningError(WaHubError):
    """Payload could not be signed (missing secret, HMAC failure)."""


class TransportError(WaHubError):
    """The messaging transport could not send a message."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
