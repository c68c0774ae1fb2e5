import os
from unittest.mock import patch

import pytest

from external_api_client import ExternalApiClient


def test_defaults():
    client = ExternalApiClient(client_id="id", client_secret="secret")

    assert client.client_id == "id"
    assert client.scope == " ".join(ExternalApiClient.VALID_SCOPES)
    assert client.max_retries == 3
    assert client.retry_delay == 1000
    assert client.timeout == 30000
    assert client.token_endpoint == "https://auth.external.index.io/oauth2/token"
    assert client.api_base == "https://external.index.io"


def test_eight_scopes_are_known():
    assert len(ExternalApiClient.VALID_SCOPES) == 8
    assert "bch.external/timecard.write" in ExternalApiClient.VALID_SCOPES


@pytest.mark.parametrize(
    "credentials",
    [
        {"client_id": "", "client_secret": "secret"},
        {"client_id": "id", "client_secret": ""},
        {"client_id": None, "client_secret": None},
    ],
)
def test_missing_credentials(credentials):
    with pytest.raises(ValueError, match="must be provided"):
        ExternalApiClient(**credentials)


@pytest.mark.parametrize(
    "scope",
    [
        "bch.external/contact.admin",
        "bch.external/contact.read bogus",
        "bch.external/contact.read  bch.external/matter.read",
        "",
    ],
)
def test_invalid_scope_fails_construction(scope, mocker):
    post = mocker.patch("external_api_client.client.requests.post")

    with pytest.raises(ValueError, match="Invalid scope"):
        ExternalApiClient(client_id="id", client_secret="secret", scope=scope)

    post.assert_not_called()


@pytest.mark.parametrize(
    "options",
    [
        {"max_retries": -1},
        {"max_retries": 1.5},
        {"max_retries": True},
        {"retry_delay": -10},
        {"timeout": 0},
        {"timeout": "30000"},
    ],
)
def test_invalid_numeric_options(options):
    with pytest.raises(ValueError):
        ExternalApiClient(client_id="id", client_secret="secret", **options)


def test_from_env_reads_environment(tmp_path):
    env = {
        "EXTERNAL_API_CLIENT_ID": "env-id",
        "EXTERNAL_API_CLIENT_SECRET": "env-secret",
        "EXTERNAL_API_SCOPE": "bch.external/contact.read",
        "EXTERNAL_API_MAX_RETRIES": "5",
        "EXTERNAL_API_RETRY_DELAY": "250",
        "EXTERNAL_API_TIMEOUT": "1500.5",
        "EXTERNAL_API_BASE": "https://sandbox.example.test",
    }
    with patch.dict(os.environ, env, clear=True):
        client = ExternalApiClient.from_env(env_file=str(tmp_path / "missing.env"))

    assert client.client_id == "env-id"
    assert client.scope == "bch.external/contact.read"
    assert client.max_retries == 5
    assert client.retry_delay == 250.0
    assert client.timeout == 1500.5
    assert client.api_base == "https://sandbox.example.test"
    assert client.token_endpoint == "https://auth.external.index.io/oauth2/token"


def test_from_env_loads_dotenv_file_without_overriding_environment(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "EXTERNAL_API_CLIENT_ID=file-id\n"
        "EXTERNAL_API_CLIENT_SECRET=file-secret\n"
    )
    with patch.dict(os.environ, {"EXTERNAL_API_CLIENT_ID": "env-id"}, clear=True):
        client = ExternalApiClient.from_env(env_file=str(env_file))

    assert client.client_id == "env-id"
    assert client._client_secret == "file-secret"


def test_from_env_keyword_overrides_win(tmp_path):
    env = {"EXTERNAL_API_CLIENT_ID": "env-id", "EXTERNAL_API_CLIENT_SECRET": "env-secret"}
    with patch.dict(os.environ, env, clear=True):
        client = ExternalApiClient.from_env(env_file=str(tmp_path / "missing.env"), max_retries=0)

    assert client.max_retries == 0


def test_from_env_requires_credentials(tmp_path):
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValueError, match="client_id must be provided"):
            ExternalApiClient.from_env(env_file=str(tmp_path / "missing.env"))


def test_from_env_rejects_non_numeric_values(tmp_path):
    env = {
        "EXTERNAL_API_CLIENT_ID": "id",
        "EXTERNAL_API_CLIENT_SECRET": "secret",
        "EXTERNAL_API_MAX_RETRIES": "three",
    }
    with patch.dict(os.environ, env, clear=True):
        with pytest.raises(ValueError, match="EXTERNAL_API_MAX_RETRIES must be numeric"):
            ExternalApiClient.from_env(env_file=str(tmp_path / "missing.env"))


def test_from_env_finds_dotenv_in_working_directory(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text(
        "EXTERNAL_API_CLIENT_ID=cwd-id\n"
        "EXTERNAL_API_CLIENT_SECRET=cwd-secret\n"
    )
    monkeypatch.chdir(tmp_path)
    with patch.dict(os.environ, {}, clear=True):
        client = ExternalApiClient.from_env()

    assert client.client_id == "cwd-id"
    assert client._client_secret == "cwd-secret"
