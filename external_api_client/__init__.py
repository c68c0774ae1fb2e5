"""
Python client for interacting with the External API.

This package provides an `ExternalApiClient` class that handles
OAuth2 client-credentials authentication against the External API
authorization server and exposes one method per API operation for
contacts, organizations, matters, timecards, webhooks, events and
quota.

The client caches access tokens for their entire lifetime and
automatically requests a new token when the current one expires.
Rate-limited requests (HTTP 429) and connection failures are retried
up to ``max_retries`` times.

Examples
--------

```python
from external_api_client import ExternalApiClient, ExternalApiError

client = ExternalApiClient(
    client_id="YOUR_CLIENT_ID",
    client_secret="YOUR_CLIENT_SECRET",
)

organization = client.create_organization({"id": "O1", "name": "Acme Corp"})

try:
    profile = client.get_organization_profile_for_data_source("O1", "dnb")
except ExternalApiError as exc:
    print(exc.status_code, exc.response_body)
```

Credentials can also be read from ``EXTERNAL_API_*`` environment
variables or a ``.env`` file with :meth:`ExternalApiClient.from_env`.

Errors
------
Invalid arguments raise `ExternalArgumentError` before any request is
made.  Error responses raise `ExternalApiError` carrying the status
code and the decoded response body; timeouts raise
`ExternalApiTimeoutError` with status 408.  Failures of the token
endpoint raise `ExternalAuthError`.
"""

from .client import ExternalApiClient
from .exceptions import (
    ExternalApiClientError,
    ExternalApiError,
    ExternalApiTimeoutError,
    ExternalArgumentError,
    ExternalAuthError,
)

VALID_DATA_SOURCES = ExternalApiClient.VALID_DATA_SOURCES
VALID_REFERENCE_TYPES = ExternalApiClient.VALID_REFERENCE_TYPES
VALID_EVENT_TYPES = ExternalApiClient.VALID_EVENT_TYPES
VALID_SCOPES = ExternalApiClient.VALID_SCOPES

__all__ = [
    "ExternalApiClient",
    "ExternalApiClientError",
    "ExternalApiError",
    "ExternalApiTimeoutError",
    "ExternalArgumentError",
    "ExternalAuthError",
    "VALID_DATA_SOURCES",
    "VALID_REFERENCE_TYPES",
    "VALID_EVENT_TYPES",
    "VALID_SCOPES",
]
