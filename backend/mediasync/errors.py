"""Error types shared by the sync pipeline, embedding worker and queue."""

from __future__ import annotations


class ConfigurationError(Exception):
    """Server or provider configuration is missing or incomplete."""


class QueueError(Exception):
    """Raised when a job cannot be written to the queue."""


class MediaServerError(Exception):
    """Non-2xx response from the media server API."""

    def __init__(self, status_code: int, reason: str = "", path: str = "") -> None:
        self.status_code = status_code
        self.reason = reason
        self.path = path
        super().__init__(f"API error: {status_code} {reason}".rstrip())

    @property
    def user_message(self) -> str:
        if self.status_code == 401:
            return "Invalid API key. Please check your media server API key."
        if self.status_code == 403:
            return "Access forbidden. The API key does not have sufficient permissions."
        if self.status_code == 404:
            return "Server not found. Please check the URL."
        if self.status_code >= 500:
            return "The media server returned an internal error. Please try again later."
        return f"Failed to connect to server: {self.status_code} {self.reason}".rstrip()


class MediaServerUnreachableError(Exception):
    """Transport failure talking to the media server (DNS, refused, timeout)."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"API error: unreachable ({detail})")


class MediaServerResponseError(Exception):
    """The media server answered, but the body was not what the endpoint returns."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"API error: invalid response ({detail})")


class EmbeddingProviderError(Exception):
    """Raised when the embedding provider call fails."""


class RateLimitError(EmbeddingProviderError):
    def __init__(self) -> None:
        super().__init__("Rate limit exceeded. Please try again later.")


class QuotaExceededError(EmbeddingProviderError):
    def __init__(self) -> None:
        super().__init__("Quota exceeded. Please check billing.")


class InvalidApiKeyError(EmbeddingProviderError):
    def __init__(self) -> None:
        super().__init__("Invalid API key.")


class DimensionMismatchError(EmbeddingProviderError):
    def __init__(self, actual: int, expected: int) -> None:
        self.actual = actual
        self.expected = expected
        super().__init__(
            f"Dimension mismatch: model outputs {actual}, configured for {expected}. "
            f"Update dimension setting to {actual}."
        )
