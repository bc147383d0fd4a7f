"""Error taxonomy for the bridge.

Each error is local to one in-flight event. Routes translate them to HTTP
status codes; nothing here is retried internally.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for all bridge errors."""


class InvalidAddress(BridgeError):
    """Raised when a chat address cannot be normalized."""


class InvalidPayloadError(BridgeError):
    """Raised when a webhook payload has an unusable shape."""


class MediaFetchError(BridgeError):
    """Raised when one media item cannot be retrieved from the chat transport."""


class ThreadStoreError(BridgeError):
    """Raised when the thread store cannot be read or written."""


class HelpdeskApiError(BridgeError):
    """Raised when a helpdesk API call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EmailTransportError(BridgeError):
    """Raised when the email transport rejects or fails to accept a message."""


class ChatTransportError(BridgeError):
    """Raised when the chat transport rejects or fails to accept a message."""


class PolicyRejection(BridgeError):
    """Raised when a request is refused by policy (secret, allowlist).

    Not a fault: logged below error level and answered with a clean 4xx.
    """

    def __init__(self, reason: str, status_code: int = 403) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
