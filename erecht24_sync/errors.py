"""Error taxonomy shared by the webhook, sync, and admin layers."""

from typing import Optional


class Erecht24Error(Exception):
    """Base class for every error raised by this service."""

    http_status = 500


# ---------------------------------------------------------------------------
# Webhook rejections (never reach the sync engine)
# ---------------------------------------------------------------------------

class WebhookRejected(Erecht24Error):
    http_status = 401
    public_message = "Unauthorized"


class InvalidType(WebhookRejected):
    http_status = 400
    public_message = "Invalid type"


class Unauthorized(WebhookRejected):
    pass


class StaleRequest(WebhookRejected):
    pass


class ReplayDetected(WebhookRejected):
    pass


class MethodNotAllowed(WebhookRejected):
    http_status = 405
    public_message = "Method not allowed"


# ---------------------------------------------------------------------------
# Sync / upstream failures
# ---------------------------------------------------------------------------

class NotConfigured(Erecht24Error):
    """The eRecht24 API key (or another required setting) is missing."""


class FetchError(Erecht24Error):
    http_status = 502


class UpstreamError(FetchError):
    """The API answered with a non-retryable, non-200 status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamUnavailable(FetchError):
    """Retries were exhausted on 429 / 5xx / transport errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidResponseFormat(FetchError):
    pass


class RegistrationFailed(Erecht24Error):
    http_status = 502

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class PersistenceFailure(Erecht24Error):
    pass


class TemplateMissing(Erecht24Error):
    """The page schema offers none of the legal-text content fields."""
