"""Exception taxonomy.

Webhook errors are the only ones that reach the gateway (as HTTP 400).
Everything else is logged by whoever dispatched the failing effect.
"""

from typing import Optional


class CanvasworksError(Exception):
    """Base class for all errors raised by canvasworks."""


class WebhookError(CanvasworksError):
    """The inbound event cannot be trusted or understood."""


class SignatureError(WebhookError):
    pass


class PayloadError(WebhookError):
    pass


class InvariantViolation(CanvasworksError):
    """A domain rule was broken; needs manual investigation, never retried."""


class ProviderError(CanvasworksError):
    """An external provider answered with an error or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SendError(CanvasworksError):
    """The notification sender refused or failed to deliver a message."""
