"""
Custom exception types for the External API client.

These exceptions allow callers to distinguish between invalid
arguments rejected locally, failures while obtaining an access
token, and error responses returned by the API itself.  Connection
level failures are not wrapped: once the client gives up retrying
them, the original :mod:`requests` exception propagates.
"""

from typing import Any, Optional


class ExternalApiClientError(Exception):
    """Base exception for all External API client errors."""


class ExternalArgumentError(ExternalApiClientError, TypeError):
    """Raised when a method argument is missing or malformed.

    Nothing is sent over the network when this is raised.
    """


class ExternalApiError(ExternalApiClientError):
    """Raised when an HTTP request to the External API returns an error status.

    ``response_body`` holds the decoded JSON body when the server sent
    one, otherwise the raw response text.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Any = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def __repr__(self) -> str:
        return "%s(%r, status_code=%r)" % (
            type(self).__name__,
            str(self),
            self.status_code,
        )


class ExternalAuthError(ExternalApiError):
    """Raised when the token endpoint rejects the credentials or
    returns a response without a usable token."""


class ExternalApiTimeoutError(ExternalApiError):
    """Raised when a single request attempt exceeds the client timeout."""

    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(message, status_code=408)
