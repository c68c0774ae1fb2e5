"""
Client implementation for the External API.

This module defines the :class:`ExternalApiClient` class which
authenticates against the External API authorization server using
the OAuth2 client credentials grant and performs HTTP requests
against the versioned ``/v1`` API.  The client caches the access
token for the duration specified by ``expires_in`` in the token
response and automatically refreshes it when needed.

Usage
-----

.. code-block:: python

    from external_api_client import ExternalApiClient

    client = ExternalApiClient(
        client_id="abc123",
        client_secret="shhsecret",
        scope="bch.external/organization.read",
    )

    profile = client.get_organization_profile_for_data_source("O1", "dnb")

Requests that are rate limited (HTTP 429) are retried after the
delay advertised in the ``Retry-After`` header, and requests that
fail at the connection level are retried after ``retry_delay``
milliseconds, in both cases up to ``max_retries`` times.
"""

from __future__ import annotations

import base64
import logging
import math
import os
import threading
import time
from collections.abc import Mapping
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import requests
from dotenv import find_dotenv, load_dotenv

from .exceptions import (
    ExternalApiError,
    ExternalApiTimeoutError,
    ExternalArgumentError,
    ExternalAuthError,
)

logger = logging.getLogger(__name__)


def _require_id(value: Any, name: str) -> None:
    if not value or not isinstance(value, str):
        raise ExternalArgumentError(f"{name} must be a non-empty string")


def _require_mapping(value: Any, name: str) -> None:
    if not isinstance(value, Mapping):
        raise ExternalArgumentError(f"{name} must be a mapping")


def _require_fields(data: Mapping, *fields: str) -> None:
    for field in fields:
        if not data.get(field):
            raise ExternalArgumentError(f"{field} is required")


def _require_choice(value: Any, choices: Sequence[str], name: str) -> None:
    if not value or not isinstance(value, str) or value not in choices:
        raise ExternalArgumentError(f"{name} must be one of: {', '.join(choices)}")


def _build_query(params: Mapping) -> Dict[str, Any]:
    """Drop ``None`` values and comma-join sequences for the query string."""
    query: Dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ",".join(str(item) for item in value)
        query[key] = value
    return query


def _decode_error_body(response: requests.Response) -> Any:
    """Return the JSON error body if there is one, else the raw text."""
    try:
        return response.json()
    except ValueError:
        return response.text


class ExternalApiClient:
    """A client for the External API.

    Parameters
    ----------
    client_id : str
        Your OAuth client identifier.
    client_secret : str
        Your OAuth client secret.
    scope : str, optional
        Space separated OAuth scopes to request.  Every scope must be
        one of :attr:`VALID_SCOPES`.  Defaults to all of them.
    max_retries : int, optional
        How many times a request is retried after a 429 response or
        a connection failure.  Defaults to ``3``.
    retry_delay : int or float, optional
        Delay in milliseconds between retries when the server gives
        no ``Retry-After`` header.  Defaults to ``1000``.
    timeout : int or float, optional
        Timeout in milliseconds for a single request attempt.
        Defaults to ``30000``.
    token_endpoint : str, optional
        Override the OAuth token endpoint URL.
    api_base : str, optional
        Override the API base URL.

    Notes
    -----
    The client caches the access token and its expiry time and reuses
    it until the expiry time is reached.  A single client may be shared
    between threads; token refreshes are serialized so that concurrent
    callers holding an expired token trigger only one token request.
    """

    VALID_DATA_SOURCES: Tuple[str, ...] = (
        "dnb",
        "sp",
        "web",
        "naics",
        "sali",
        "customTaxonomy",
        "linkedin",
    )
    VALID_REFERENCE_TYPES: Tuple[str, ...] = ("self", "global-parent", "domestic-parent")
    VALID_EVENT_TYPES: Tuple[str, ...] = (
        "contact-updated",
        "contact-profile-updated",
        "organization-updated",
        "workflow-failed",
        "matter-updated",
        "timecard-updated",
    )
    VALID_SCOPES: Tuple[str, ...] = (
        "bch.external/contact.write",
        "bch.external/contact.read",
        "bch.external/organization.write",
        "bch.external/organization.read",
        "bch.external/matter.write",
        "bch.external/matter.read",
        "bch.external/timecard.write",
        "bch.external/timecard.read",
    )

    _DEFAULT_TOKEN_ENDPOINT = "https://auth.external.index.io/oauth2/token"
    _DEFAULT_API_BASE = "https://external.index.io"
    _API_VERSION = "v1"

    # Constructor option -> environment variable, used by from_env()
    _ENV_VARIABLES = {
        "client_id": "EXTERNAL_API_CLIENT_ID",
        "client_secret": "EXTERNAL_API_CLIENT_SECRET",
        "scope": "EXTERNAL_API_SCOPE",
        "token_endpoint": "EXTERNAL_API_TOKEN_ENDPOINT",
        "api_base": "EXTERNAL_API_BASE",
        "max_retries": "EXTERNAL_API_MAX_RETRIES",
        "retry_delay": "EXTERNAL_API_RETRY_DELAY",
        "timeout": "EXTERNAL_API_TIMEOUT",
    }
    _INTEGER_OPTIONS = {"max_retries"}
    _FLOAT_OPTIONS = {"retry_delay", "timeout"}

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        scope: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 1000,
        timeout: float = 30000,
        token_endpoint: Optional[str] = None,
        api_base: Optional[str] = None,
    ) -> None:
        if not client_id:
            raise ValueError("client_id must be provided")
        if not client_secret:
            raise ValueError("client_secret must be provided")

        if scope is None:
            scope = " ".join(self.VALID_SCOPES)
        if not all(item in self.VALID_SCOPES for item in scope.split(" ")):
            raise ValueError(
                "Invalid scope %r. Must be one of: %s" % (scope, ", ".join(self.VALID_SCOPES))
            )

        if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ValueError("max_retries must be a non-negative integer, got %r" % (max_retries,))
        if isinstance(retry_delay, bool) or not isinstance(retry_delay, (int, float)) or retry_delay < 0:
            raise ValueError("retry_delay must be a non-negative number, got %r" % (retry_delay,))
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError("timeout must be a positive number, got %r" % (timeout,))

        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._timeout = timeout
        self._token_endpoint = token_endpoint or self._DEFAULT_TOKEN_ENDPOINT
        self._api_base = (api_base or self._DEFAULT_API_BASE).rstrip("/")

        # (authorization header value, epoch seconds when it expires).
        # Always replaced as a whole so readers never see a mixed state.
        self._token_state: Optional[Tuple[str, float]] = None
        self._token_lock = threading.Lock()

    @classmethod
    def from_env(cls, env_file: Optional[str] = None, **overrides: Any) -> "ExternalApiClient":
        """Create a client from ``EXTERNAL_API_*`` environment variables.

        A ``.env`` file is loaded first with :func:`dotenv.load_dotenv`;
        variables already present in the environment take precedence
        over the file.  Keyword arguments take precedence over both.

        Parameters
        ----------
        env_file : str, optional
            Path to the ``.env`` file.  When omitted, python-dotenv
            searches the current working directory and its parents.
        **overrides
            Constructor options that replace environment values.

        Raises
        ------
        ValueError
            If a numeric variable cannot be parsed or a required
            credential is missing.
        """
        load_dotenv(dotenv_path=env_file or find_dotenv(usecwd=True), override=False)

        options: Dict[str, Any] = {"client_id": None, "client_secret": None}
        for option, variable in cls._ENV_VARIABLES.items():
            value = os.environ.get(variable)
            if not value:
                continue
            try:
                if option in cls._INTEGER_OPTIONS:
                    options[option] = int(value)
                elif option in cls._FLOAT_OPTIONS:
                    options[option] = float(value)
                else:
                    options[option] = value
            except ValueError:
                raise ValueError("%s must be numeric, got %r" % (variable, value)) from None
        options.update(overrides)
        return cls(**options)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def scope(self) -> str:
        return self._scope

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def retry_delay(self) -> float:
        """Delay between retries, in milliseconds."""
        return self._retry_delay

    @property
    def timeout(self) -> float:
        """Per-attempt request timeout, in milliseconds."""
        return self._timeout

    @property
    def token_endpoint(self) -> str:
        return self._token_endpoint

    @property
    def api_base(self) -> str:
        return self._api_base

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def _refresh_access_token(self) -> Tuple[str, float]:
        """Retrieve a new access token from the authorization server.

        This method posts a client credentials grant for the configured
        scope to the token endpoint, authenticating with HTTP Basic
        credentials built from ``client_id`` and ``client_secret``.  On
        success it stores ``"<token_type> <access_token>"`` together
        with the absolute expiry time computed from ``expires_in``.

        Connection failures are not caught here so that the request
        dispatcher can retry them.  An error status or an unusable
        response body raises :class:`ExternalAuthError`.
        """
        credentials = base64.b64encode(
            f"{self._client_id}:{self._client_secret}".encode("utf-8")
        ).decode("ascii")
        headers = {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/x-www-form-urlencoded",
        }
        payload = {
            "grant_type": "client_credentials",
            "scope": self._scope,
        }
        logger.debug("Requesting access token from %s", self._token_endpoint)
        response = requests.post(
            self._token_endpoint,
            data=payload,
            headers=headers,
            timeout=self._timeout / 1000,
        )

        if not 200 <= response.status_code < 300:
            raise ExternalAuthError(
                "Authentication failed with status %d" % response.status_code,
                response.status_code,
                _decode_error_body(response),
            )

        try:
            token_info = response.json()
        except ValueError as exc:
            raise ExternalAuthError(
                "Authentication response is not valid JSON",
                response.status_code,
                response.text,
            ) from exc

        if not isinstance(token_info, dict):
            raise ExternalAuthError(
                "Authentication response is not a JSON object",
                response.status_code,
                token_info,
            )
        token_type = token_info.get("token_type")
        access_token = token_info.get("access_token")
        expires_in = token_info.get("expires_in")
        if not token_type or not access_token:
            raise ExternalAuthError(
                "Authentication response did not contain token_type and access_token",
                response.status_code,
                token_info,
            )
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            raise ExternalAuthError(
                "Authentication response did not contain a numeric expires_in",
                response.status_code,
                token_info,
            )

        state = (f"{token_type} {access_token}", time.time() + float(expires_in))
        self._token_state = state
        logger.debug("Access token refreshed, valid for %s seconds", expires_in)
        return state

    def _get_access_token(self) -> str:
        """Return a valid authorization header value, refreshing it if expired.

        The token is stale once the current time reaches its expiry.
        The check is repeated under the lock so that only one of several
        threads waiting on an expired token performs the refresh.
        """
        state = self._token_state
        if state is None or time.time() >= state[1]:
            with self._token_lock:
                state = self._token_state
                if state is None or time.time() >= state[1]:
                    state = self._refresh_access_token()
        return state[0]

    # ------------------------------------------------------------------
    # HTTP request helpers
    # ------------------------------------------------------------------
    def _prepare_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self._api_base}/{self._API_VERSION}{path}"

    def _retry_after_seconds(self, response: requests.Response) -> float:
        """Seconds to wait before retrying a 429 response.

        ``Retry-After`` may be a number of seconds or an HTTP date.
        Without a usable header the configured ``retry_delay`` applies.
        """
        value = response.headers.get("Retry-After")
        if value:
            try:
                seconds = float(value)
            except ValueError:
                seconds = None
            if seconds is not None:
                if math.isfinite(seconds):
                    return max(0.0, seconds)
                return self._retry_delay / 1000
            try:
                retry_at = parsedate_to_datetime(value)
            except (TypeError, ValueError):
                retry_at = None
            if retry_at is not None:
                if retry_at.tzinfo is None:
                    retry_at = retry_at.replace(tzinfo=timezone.utc)
                return max(0.0, retry_at.timestamp() - time.time())
        return self._retry_delay / 1000

    def _send(self, method: str, url: str, payload: Any) -> requests.Response:
        headers = {
            "Authorization": self._get_access_token(),
            "Content-Type": "application/json",
        }
        kwargs: Dict[str, Any] = {}
        if payload is not None:
            if method in ("POST", "PUT"):
                kwargs["json"] = payload
            else:
                kwargs["params"] = _build_query(payload)
        logger.debug("%s %s", method, url)
        return requests.request(
            method=method,
            url=url,
            headers=headers,
            timeout=self._timeout / 1000,
            **kwargs,
        )

    def _request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        *,
        retry_count: int = 0,
    ) -> Any:
        """Perform an HTTP request against the External API.

        Parameters
        ----------
        method : str
            The HTTP verb, such as ``"GET"``, ``"POST"``, ``"PUT"`` or ``"DELETE"``.
        path : str
            The endpoint path below ``/v1``.  A leading slash is added
            when missing.
        payload : object, optional
            For ``POST`` and ``PUT``, a JSON-serialisable request body.
            For other methods, a mapping of query parameters; ``None``
            values are dropped and lists are comma-joined.
        retry_count : int, optional
            Number of retries already made for this request.

        Returns
        -------
        Any
            The decoded JSON body, or the (empty) response text for a
            204 response.

        Raises
        ------
        ExternalApiError
            If the response status is not 2xx once retries are exhausted.
        ExternalApiTimeoutError
            If an attempt exceeds the configured timeout.
        ExternalAuthError
            If token refresh fails.
        requests.ConnectionError
            If the connection still fails after ``max_retries`` retries.
        """
        method = method.upper()
        url = self._prepare_url(path)

        try:
            response = self._send(method, url, payload)
        except requests.Timeout as exc:
            raise ExternalApiTimeoutError() from exc
        except requests.ConnectionError as exc:
            if retry_count >= self._max_retries:
                raise
            logger.warning(
                "Connection to %s failed (%s), retry %d of %d in %sms",
                url,
                exc,
                retry_count + 1,
                self._max_retries,
                self._retry_delay,
            )
            time.sleep(self._retry_delay / 1000)
            return self._request(method, path, payload, retry_count=retry_count + 1)

        if response.status_code == 429 and retry_count < self._max_retries:
            delay = self._retry_after_seconds(response)
            logger.warning(
                "Rate limited on %s %s, retry %d of %d in %.3fs",
                method,
                url,
                retry_count + 1,
                self._max_retries,
                delay,
            )
            time.sleep(delay)
            return self._request(method, path, payload, retry_count=retry_count + 1)

        if not 200 <= response.status_code < 300:
            raise ExternalApiError(
                "Request failed with status %d" % response.status_code,
                response.status_code,
                _decode_error_body(response),
            )

        if response.status_code == 204:
            return response.text
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalApiError(
                "Response from %s is not valid JSON" % url,
                response.status_code,
                response.text,
            ) from exc

    # ------------------------------------------------------------------
    # Public convenience methods
    # ------------------------------------------------------------------
    def get(self, path: str, *, params: Optional[Mapping] = None) -> Any:
        """Perform a GET request.

        See :meth:`_request` for full parameter documentation.
        """
        return self._request("GET", path, params)

    def post(self, path: str, *, json: Optional[Any] = None) -> Any:
        """Perform a POST request.

        See :meth:`_request` for full parameter documentation.
        """
        return self._request("POST", path, json)

    def put(self, path: str, *, json: Optional[Any] = None) -> Any:
        """Perform a PUT request.

        See :meth:`_request` for full parameter documentation.
        """
        return self._request("PUT", path, json)

    def delete(self, path: str, *, params: Optional[Mapping] = None) -> Any:
        """Perform a DELETE request.

        See :meth:`_request` for full parameter documentation.
        """
        return self._request("DELETE", path, params)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------
    def create_contact(self, contact_data: Mapping) -> Dict[str, Any]:
        """Create a new contact.

        Parameters
        ----------
        contact_data : mapping
            Contact information, optionally with a product ``config``.

        Returns
        -------
        dict
            The created contact with its configuration.
        """
        _require_mapping(contact_data, "contact_data")
        return self._request("POST", "/contacts", contact_data)

    def get_contact(self, contact_id: str) -> Dict[str, Any]:
        """Get a contact by ID."""
        _require_id(contact_id, "contact_id")
        return self._request("GET", f"/contacts/{contact_id}")

    def delete_contact(self, contact_id: str) -> str:
        """Delete a contact by ID.  Returns the empty 204 response body."""
        _require_id(contact_id, "contact_id")
        return self._request("DELETE", f"/contacts/{contact_id}")

    def get_contact_profile(self, contact_id: str) -> Dict[str, Any]:
        _require_id(contact_id, "contact_id")
        return self._request("GET", f"/contacts/{contact_id}/profile")

    def get_contact_profile_raw(self, contact_id: str) -> Dict[str, Any]:
        """Get the contact profile as delivered by the data providers,
        before it is merged."""
        _require_id(contact_id, "contact_id")
        return self._request("GET", f"/contacts/{contact_id}/profile/raw")

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------
    def create_organization(self, organization_data: Mapping) -> Dict[str, Any]:
        """Create a new organization.  ``name`` is required."""
        _require_mapping(organization_data, "organization_data")
        _require_fields(organization_data, "name")
        return self._request("POST", "/organizations", organization_data)

    def get_organization(self, organization_id: str) -> Dict[str, Any]:
        _require_id(organization_id, "organization_id")
        return self._request("GET", f"/organizations/{organization_id}")

    def update_organization(self, organization_id: str, organization_data: Mapping) -> Dict[str, Any]:
        """Replace an organization.

        Parameters
        ----------
        organization_id : str
            The ID of the organization to update.
        organization_data : mapping
            The full organization record.  ``name`` is required.
        """
        _require_id(organization_id, "organization_id")
        _require_mapping(organization_data, "organization_data")
        _require_fields(organization_data, "name")
        return self._request("PUT", f"/organizations/{organization_id}", organization_data)

    def delete_organization(self, organization_id: str) -> str:
        _require_id(organization_id, "organization_id")
        return self._request("DELETE", f"/organizations/{organization_id}")

    def list_organization_profiles(self, organization_id: str) -> Dict[str, Any]:
        """List the profiles of an organization, keyed by data source."""
        _require_id(organization_id, "organization_id")
        return self._request("GET", f"/organizations/{organization_id}/profiles")

    def get_organization_profile_for_data_source(self, organization_id: str, data_source: str) -> Dict[str, Any]:
        """Get an organization's profile from one data source.

        Parameters
        ----------
        organization_id : str
            The ID of the organization.
        data_source : str
            One of :attr:`VALID_DATA_SOURCES`.

        Raises
        ------
        ExternalArgumentError
            If ``data_source`` is not a known data source.
        """
        _require_id(organization_id, "organization_id")
        _require_choice(data_source, self.VALID_DATA_SOURCES, "data_source")
        return self._request("GET", f"/organizations/{organization_id}/profiles/{data_source}")

    def list_parent_organization_profiles(self, organization_id: str, reference_type: str) -> Dict[str, Any]:
        """List the profiles of an organization's parent.

        ``reference_type`` is one of :attr:`VALID_REFERENCE_TYPES`.
        """
        _require_id(organization_id, "organization_id")
        _require_choice(reference_type, self.VALID_REFERENCE_TYPES, "reference_type")
        return self._request("GET", f"/organizations/{organization_id}/{reference_type}/profiles")

    def get_parent_organization_profile_for_data_source(
        self,
        organization_id: str,
        reference_type: str,
        data_source: str,
    ) -> Dict[str, Any]:
        _require_id(organization_id, "organization_id")
        _require_choice(reference_type, self.VALID_REFERENCE_TYPES, "reference_type")
        _require_choice(data_source, self.VALID_DATA_SOURCES, "data_source")
        return self._request(
            "GET",
            f"/organizations/{organization_id}/{reference_type}/profiles/{data_source}",
        )

    # ------------------------------------------------------------------
    # Events and webhooks
    # ------------------------------------------------------------------
    def list_events(self, event_types: Union[str, Sequence[str], None] = None) -> Dict[str, Any]:
        """List events, optionally filtered by type.

        Parameters
        ----------
        event_types : str or sequence of str, optional
            A single event type or a list of them, each one of
            :attr:`VALID_EVENT_TYPES`.  Multiple types are sent as a
            comma separated ``eventTypes`` query parameter.
        """
        if event_types is not None:
            if isinstance(event_types, (list, tuple)):
                for event_type in event_types:
                    _require_choice(event_type, self.VALID_EVENT_TYPES, "event_types")
            else:
                _require_choice(event_types, self.VALID_EVENT_TYPES, "event_types")
        return self._request("GET", "/events", {"eventTypes": event_types})

    def list_webhooks(self) -> list:
        return self._request("GET", "/webhooks")

    def delete_webhook(self, webhook_id: str) -> str:
        _require_id(webhook_id, "webhook_id")
        return self._request("DELETE", f"/webhooks/{webhook_id}")

    # ------------------------------------------------------------------
    # Matters and timecards
    # ------------------------------------------------------------------
    def create_matter(self, matter_data: Mapping) -> Dict[str, Any]:
        """Create a new matter.  ``title`` and ``id`` are required."""
        _require_mapping(matter_data, "matter_data")
        _require_fields(matter_data, "title", "id")
        return self._request("POST", "/matters", matter_data)

    def get_matter(self, matter_id: str) -> Dict[str, Any]:
        """Get a matter by ID, including its SALI classifications."""
        _require_id(matter_id, "matter_id")
        return self._request("GET", f"/matters/{matter_id}")

    def create_timecard(self, matter_id: str, timecard_data: Mapping) -> Dict[str, Any]:
        """Create a timecard on a matter.

        Parameters
        ----------
        matter_id : str
            The ID of the matter the timecard belongs to.
        timecard_data : mapping
            The timecard.  ``externalId`` and ``narrative`` are
            required.  ``externalMatterId`` defaults to ``matter_id``
            and must equal it when given.

        Raises
        ------
        ExternalArgumentError
            If a required field is missing or ``externalMatterId``
            names a different matter.
        """
        _require_id(matter_id, "matter_id")
        _require_mapping(timecard_data, "timecard_data")
        _require_fields(timecard_data, "externalId", "narrative")

        external_matter_id = timecard_data.get("externalMatterId")
        if not external_matter_id:
            timecard_data = dict(timecard_data, externalMatterId=matter_id)
        elif external_matter_id != matter_id:
            raise ExternalArgumentError(
                "externalMatterId %r does not match matter_id %r" % (external_matter_id, matter_id)
            )
        return self._request("POST", f"/matters/{matter_id}/timecards", timecard_data)

    def get_timecard(self, matter_id: str, timecard_id: str) -> Dict[str, Any]:
        _require_id(matter_id, "matter_id")
        _require_id(timecard_id, "timecard_id")
        return self._request("GET", f"/matters/{matter_id}/timecards/{timecard_id}")

    def delete_timecard(self, matter_id: str, timecard_id: str) -> str:
        _require_id(matter_id, "matter_id")
        _require_id(timecard_id, "timecard_id")
        return self._request("DELETE", f"/matters/{matter_id}/timecards/{timecard_id}")

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------
    def get_quota(self) -> Dict[str, Any]:
        """Get the product quotas and license usage for this project."""
        return self._request("GET", "/quota")

    def test_authentication(self) -> Dict[str, Any]:
        """Check that the configured credentials are accepted by the API."""
        return self._request("GET", "/test")
