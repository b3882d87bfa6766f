from dataclasses import replace
from datetime import timedelta

import pytest

from clinops.ehr_client import EHRClient
from clinops.errors import TokenExhaustedError
from clinops.time_utils import utc_now
from clinops.tokens import TokenManager

IDENTITY = "svc@clinic.test"


@pytest.fixture
def manager(settings, repository):
    return TokenManager(repository, EHRClient(settings), settings)


def _store_expired(repository, refresh_token="old-refresh"):
    repository.store_token(
        IDENTITY,
        access_token="expired-access",
        refresh_token=refresh_token,
        endpoint="https://app.test",
        expires_at=utc_now() - timedelta(minutes=5),
    )


def test_cached_token_is_returned_without_network(manager, repository, requests_mock):
    repository.store_token(
        IDENTITY,
        access_token="cached",
        refresh_token="r",
        endpoint="https://app.test",
        expires_at=utc_now() + timedelta(minutes=30),
    )

    token = manager.get_valid_token()

    assert token.access_token == "cached"
    assert requests_mock.call_count == 0


def test_expired_token_is_refreshed_and_refresh_token_kept(manager, repository, settings, requests_mock):
    _store_expired(repository)
    requests_mock.post(settings.refresh_url, json={"accessToken": "new-access"})

    token = manager.get_valid_token()

    assert token.access_token == "new-access"
    assert token.refresh_token == "old-refresh"
    assert token.endpoint == "https://app.test"
    assert requests_mock.last_request.json()["refreshToken"] == "old-refresh"
    stored = repository.get_token(IDENTITY)
    assert stored.access_token == "new-access"
    assert stored.expires_at > utc_now() + timedelta(minutes=50)


def test_rotated_refresh_token_is_persisted(manager, repository, settings, requests_mock):
    _store_expired(repository)
    requests_mock.post(settings.refresh_url, json={"accessToken": "a2", "refreshToken": "r2"})

    assert manager.get_valid_token().refresh_token == "r2"
    assert repository.get_token(IDENTITY).refresh_token == "r2"


def test_failed_refresh_falls_back_to_login(manager, repository, settings, requests_mock):
    _store_expired(repository)
    repository.store_credentials(IDENTITY, "s3cret")
    requests_mock.post(settings.refresh_url, status_code=401)
    requests_mock.post(
        settings.login_url,
        json={"accessToken": "login-access", "refreshToken": "login-refresh", "servers": {"app": "https://srv9.test"}},
    )

    token = manager.get_valid_token()

    assert token.access_token == "login-access"
    assert token.endpoint == "https://srv9.test"
    login_body = requests_mock.request_history[-1].json()
    assert login_body["username"] == IDENTITY
    assert login_body["password"] == "s3cret"
    assert repository.get_token(IDENTITY).endpoint == "https://srv9.test"


def test_login_used_when_no_token_stored(manager, repository, settings, requests_mock):
    repository.store_credentials(IDENTITY, "s3cret")
    requests_mock.post(settings.login_url, json={"accessToken": "fresh", "servers": {}})

    token = manager.get_valid_token()

    assert token.access_token == "fresh"
    assert token.endpoint == settings.api_base_url
    assert requests_mock.call_count == 1


def test_all_tiers_failing_raises(manager, repository, settings, requests_mock):
    _store_expired(repository)
    repository.store_credentials(IDENTITY, "wrong")
    requests_mock.post(settings.refresh_url, status_code=500)
    requests_mock.post(settings.login_url, status_code=403)

    with pytest.raises(TokenExhaustedError):
        manager.get_valid_token()
    assert requests_mock.call_count == 2


def test_missing_credentials_raise(manager, repository):
    with pytest.raises(TokenExhaustedError):
        manager.get_valid_token()


def test_identity_falls_back_to_active_credentials(settings, repository, requests_mock):
    manager = TokenManager(repository, EHRClient(settings), replace(settings, service_identity=None))
    repository.store_credentials("other@clinic.test", "pw")
    requests_mock.post(settings.login_url, json={"accessToken": "t", "servers": {"app": "https://a.test"}})

    token = manager.get_valid_token()

    assert token.identity == "other@clinic.test"


@pytest.mark.asyncio
async def test_acquire_wraps_blocking_lookup(manager, repository):
    repository.store_token(
        IDENTITY,
        access_token="cached",
        refresh_token=None,
        endpoint="https://app.test",
        expires_at=utc_now() + timedelta(minutes=30),
    )
    token = await manager.acquire()
    assert token.access_token == "cached"
