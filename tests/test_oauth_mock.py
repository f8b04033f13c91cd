from urllib.parse import parse_qs, urlparse

import pytest
from pony.orm import db_session

import backend
from backend import app, init_db, uid_from_subject


@pytest.fixture(autouse=True)
def _init_db():
    init_db()
    yield


def test_login_redirects_to_provider_with_pkce(monkeypatch):
    monkeypatch.setenv('OIDC_CLIENT_ID', 'test-client')
    monkeypatch.delenv('ALLOW_MOCK_LOGIN', raising=False)
    client = app.test_client()

    r = client.get('/login')
    assert r.status_code in (302, 303)
    assert r.headers['Location'].endswith('/login-oidc')

    r = client.get('/login-oidc')
    assert r.status_code in (302, 303)
    query = parse_qs(urlparse(r.headers['Location']).query)
    assert query['client_id'] == ['test-client']
    assert query['code_challenge_method'] == ['S256']
    with client.session_transaction() as sess:
        assert sess['pkce_verifier']
        assert query['state'] == [sess['oauth_state']]


def test_login_callback_with_mocked_oauth(monkeypatch, new_uid):
    client = app.test_client()
    sub = new_uid('sub')
    fake_token = {'access_token': 'fake-access', 'refresh_token': 'fake-refresh', 'expires_in': 3600}
    seen = {}

    def fake_exchange(code, verifier, redirect_uri):
        seen['verifier'] = verifier
        return fake_token

    # backend imports these at module level
    monkeypatch.setattr(backend, 'exchange_code_for_token', fake_exchange)
    monkeypatch.setattr(backend, 'fetch_userinfo',
                        lambda token: {'sub': sub, 'email': 'oauth@example.com', 'name': 'OAuth Diver ' + sub})

    with client.session_transaction() as sess:
        sess['pkce_verifier'] = 'fakeverifier'
        sess['oauth_state'] = 'xyz'

    r = client.get('/login-callback?code=somecode&state=xyz', follow_redirects=False)
    assert r.status_code in (302, 303)
    assert seen['verifier'] == 'fakeverifier'

    with db_session:
        from models import User

        u = User.get(uid=sub)
        assert u is not None
        assert u.email == 'oauth@example.com'
        assert u.access_token == 'fake-access'
        assert u.refresh_token == 'fake-refresh'
        assert u.token_expires_at is not None

    assert client.get('/api/session').get_json()['uid'] == sub

    client.get('/logout')
    with db_session:
        from models import User

        assert User[sub].access_token is None


def test_login_callback_rejects_state_mismatch(monkeypatch):
    client = app.test_client()
    monkeypatch.setattr(backend, 'exchange_code_for_token', lambda *a: pytest.fail('should not exchange'))
    with client.session_transaction() as sess:
        sess['pkce_verifier'] = 'v'
        sess['oauth_state'] = 'expected'
    r = client.get('/login-callback?code=c&state=forged')
    assert r.status_code == 400
    assert r.get_json()['error'] == 'state-mismatch'


def test_login_callback_token_failure(monkeypatch):
    client = app.test_client()

    def failing(*a):
        raise RuntimeError('OIDC token exchange failed: 400 invalid_grant')

    monkeypatch.setattr(backend, 'exchange_code_for_token', failing)
    with client.session_transaction() as sess:
        sess['oauth_state'] = 's'
    r = client.get('/login-callback?code=c&state=s')
    assert r.status_code == 400
    assert r.get_json()['error'] == 'token-exchange-failed'


def test_uid_from_subject_is_path_safe():
    assert uid_from_subject('1234567890') == '1234567890'
    hashed = uid_from_subject('auth0|abc/../def')
    assert len(hashed) == 32
    assert '/' not in hashed and '|' not in hashed
