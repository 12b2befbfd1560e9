from typing import Optional


class SyncError(Exception):
    """Base class for errors raised by the sync engine."""


class MissingCredentialError(SyncError):
    """A required provider credential is not configured."""


class UpstreamError(SyncError):
    """An upstream provider request failed."""

    def __init__(self, provider: str, endpoint: str, status: Optional[int] = None, message: str = ""):
        self.provider = provider
        self.endpoint = endpoint
        self.status = status
        text = f"{provider} {endpoint}"
        if status is not None:
            text += f" ({status})"
        if message:
            text += f": {message}"
        super().__init__(text)


class TransientUpstreamError(UpstreamError):
    """Timeout, rate limit or server error that persisted through every retry."""


class PermanentUpstreamError(UpstreamError):
    """Client error (4xx other than 429); retrying will not help."""
