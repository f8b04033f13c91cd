import base64
import hashlib
import os
from urllib.parse import urlencode

import requests

# Google's OpenID Connect endpoints are the defaults; any OIDC provider works
# by overriding the three URLs.
DEFAULT_AUTHORIZE_URL = 'https://accounts.google.com/o/oauth2/v2/auth'
DEFAULT_TOKEN_URL = 'https://oauth2.googleapis.com/token'
DEFAULT_USERINFO_URL = 'https://openidconnect.googleapis.com/v1/userinfo'

REQUEST_TIMEOUT = 10


def _client_id():
    client_id = os.environ.get('OIDC_CLIENT_ID')
    if not client_id:
        raise RuntimeError('OIDC_CLIENT_ID not configured')
    return client_id


def is_configured():
    return bool(os.environ.get('OIDC_CLIENT_ID'))


def generate_pkce_pair():
    """Return (verifier, challenge) for PKCE.

    verifier is a urlsafe base64-encoded random 32-byte string without padding.
    challenge is the base64url-encoded SHA256 digest of the verifier.
    """
    verifier = base64.urlsafe_b64encode(os.urandom(32)).rstrip(b'=').decode('utf-8')
    challenge = hashlib.sha256(verifier.encode('utf-8')).digest()
    challenge = base64.urlsafe_b64encode(challenge).rstrip(b'=').decode('utf-8')
    return verifier, challenge


def build_authorize_url(redirect_uri, challenge, state):
    params = {
        'client_id': _client_id(),
        'redirect_uri': redirect_uri,
        'response_type': 'code',
        'scope': 'openid email profile',
        'code_challenge_method': 'S256',
        'code_challenge': challenge,
        'state': state,
    }
    base = os.environ.get('OIDC_AUTHORIZE_URL') or DEFAULT_AUTHORIZE_URL
    return base + '?' + urlencode(params)


def exchange_code_for_token(code, verifier, redirect_uri):
    data = {'grant_type': 'authorization_code', 'code': code, 'redirect_uri': redirect_uri,
            'client_id': _client_id(), 'code_verifier': verifier}
    secret = os.environ.get('OIDC_CLIENT_SECRET')
    if secret:
        data['client_secret'] = secret
    resp = requests.post(os.environ.get('OIDC_TOKEN_URL') or DEFAULT_TOKEN_URL, data=data, timeout=REQUEST_TIMEOUT)
    # Surface provider error details to help debugging redirect/missing-secret issues
    if resp.status_code != 200:
        raise RuntimeError(f'OIDC token exchange failed: {resp.status_code} {resp.text}')
    return resp.json()


def fetch_userinfo(access_token):
    """Return the provider's userinfo claims (sub, email, name, ...)."""
    headers = {'Authorization': f'Bearer {access_token}'}
    resp = requests.get(os.environ.get('OIDC_USERINFO_URL') or DEFAULT_USERINFO_URL, headers=headers,
                        timeout=REQUEST_TIMEOUT)
    if resp.status_code != 200:
        raise RuntimeError(f'OIDC userinfo failed: {resp.status_code} {resp.text}')
    return resp.json()
