import threading
import time
from unittest.mock import Mock

import pytest
import requests

from carapp_billing.errors import AuthConfigError, AuthExchangeError
from carapp_billing.gateway.credentials import CredentialCache

TOKEN_URL = "https://oauth2.bog.ge/auth/realms/bog/protocol/openid-connect/token"
NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


def make_cache(session, clock=None):
    return CredentialCache(
        client_id="client",
        client_secret="secret",
        token_url=TOKEN_URL,
        session=session,
        timeout=5,
        clock=clock or FakeClock(),
    )


@pytest.mark.parametrize("client_id,client_secret", [(None, "secret"), ("client", ""), ("", None)])
def test_missing_credentials_fail_at_construction(client_id, client_secret):
    with pytest.raises(AuthConfigError):
        CredentialCache(client_id, client_secret, TOKEN_URL, session=Mock())


def test_exchange_uses_basic_auth_and_client_credentials_grant(token_response):
    session = Mock()
    session.post.return_value = token_response()
    cache = make_cache(session)

    cache.get_token()

    args, kwargs = session.post.call_args
    assert args[0] == TOKEN_URL
    assert kwargs["auth"] == ("client", "secret")
    assert kwargs["data"] == {"grant_type": "client_credentials"}
    assert kwargs["timeout"] == 5


def test_token_is_cached_until_expiry(token_response):
    session = Mock()
    session.post.return_value = token_response(payload={
        "access_token": "tok-1",
        "expires_in": 4102444800000,
    })
    cache = make_cache(session)

    assert cache.get_token() == "tok-1"
    assert cache.get_token() == "tok-1"
    assert session.post.call_count == 1
    assert cache.is_valid()


def test_expires_in_is_an_absolute_instant_in_milliseconds(token_response):
    session = Mock()
    session.post.return_value = token_response(payload={
        "access_token": "tok",
        "expires_in": 1_700_000_600_000,
    })
    cache = make_cache(session)

    cache.get_token()

    assert cache.expires_at == pytest.approx(1_700_000_600.0)


def test_expires_in_is_not_added_to_now(token_response):
    """A small value is an instant long past, not a lifetime of one hour."""
    session = Mock()
    session.post.return_value = token_response(payload={"access_token": "tok", "expires_in": 3600})
    cache = make_cache(session)

    cache.get_token()

    assert cache.expires_at == 3600
    assert not cache.is_valid()


def test_expired_token_is_refreshed(token_response):
    clock = FakeClock()
    session = Mock()
    session.post.side_effect = [
        token_response(payload={"access_token": "old", "expires_in": NOW + 60}),
        token_response(payload={"access_token": "new", "expires_in": NOW + 7200}),
    ]
    cache = make_cache(session, clock)

    assert cache.get_token() == "old"
    clock.now = NOW + 61
    assert cache.get_token() == "new"
    assert session.post.call_count == 2


def test_token_exactly_at_expiry_is_refreshed(token_response):
    clock = FakeClock()
    session = Mock()
    session.post.side_effect = [
        token_response(payload={"access_token": "old", "expires_in": NOW + 60}),
        token_response(payload={"access_token": "new", "expires_in": NOW + 7200}),
    ]
    cache = make_cache(session, clock)

    cache.get_token()
    clock.now = NOW + 60

    assert cache.get_token() == "new"


def test_invalidate_forces_a_new_exchange(token_response):
    session = Mock()
    session.post.return_value = token_response()
    cache = make_cache(session)

    cache.get_token()
    cache.invalidate()

    assert cache.expires_at is None
    assert not cache.is_valid()
    cache.get_token()
    assert session.post.call_count == 2


def test_non_2xx_raises_auth_exchange_error(token_response):
    session = Mock()
    session.post.return_value = token_response(status_code=401, payload={"error": "invalid_client"})
    cache = make_cache(session)

    with pytest.raises(AuthExchangeError) as exc_info:
        cache.get_token()

    assert exc_info.value.status_code == 401
    assert not cache.is_valid()


def test_transport_failure_raises_auth_exchange_error():
    session = Mock()
    session.post.side_effect = requests.ConnectionError("connection refused")
    cache = make_cache(session)

    with pytest.raises(AuthExchangeError):
        cache.get_token()


def test_response_without_access_token_raises(token_response):
    session = Mock()
    session.post.return_value = token_response(payload={"token_type": "Bearer", "expires_in": 4102444800000})
    cache = make_cache(session)

    with pytest.raises(AuthExchangeError):
        cache.get_token()


def test_concurrent_callers_share_one_exchange(token_response):
    session = Mock()

    def slow_post(*args, **kwargs):
        time.sleep(0.05)
        return token_response(payload={"access_token": "shared", "expires_in": 4102444800000})

    session.post.side_effect = slow_post
    cache = make_cache(session)

    tokens = []
    threads = [threading.Thread(target=lambda: tokens.append(cache.get_token())) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert tokens == ["shared"] * 8
    assert session.post.call_count == 1
