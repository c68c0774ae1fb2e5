import json

import pytest
import requests

from external_api_client import ExternalApiClient

TOKEN_BODY = {"token_type": "Bearer", "access_token": "abc123", "expires_in": 3600}


def _make_response(status_code=200, body=None, headers=None):
    """Build a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status_code
    if body is None:
        response._content = b""
    elif isinstance(body, str):
        response._content = body.encode("utf-8")
    else:
        response._content = json.dumps(body).encode("utf-8")
    response.encoding = "utf-8"
    if headers:
        response.headers.update(headers)
    return response


@pytest.fixture
def make_response():
    return _make_response


@pytest.fixture
def fake_time(mocker):
    """Replaces the time module used by the client: fixed clock, no real sleeping."""
    mock_time = mocker.patch("external_api_client.client.time")
    mock_time.time.return_value = 1_000.0
    return mock_time


@pytest.fixture
def token_post(mocker, fake_time):
    """Mocks the token endpoint with a successful one hour token."""
    return mocker.patch(
        "external_api_client.client.requests.post",
        return_value=_make_response(200, TOKEN_BODY),
    )


@pytest.fixture
def api_request(mocker, token_post):
    """Mocks API calls; answers 200 with an empty JSON object by default."""
    return mocker.patch(
        "external_api_client.client.requests.request",
        return_value=_make_response(200, {}),
    )


@pytest.fixture
def client():
    return ExternalApiClient(client_id="id", client_secret="secret")
