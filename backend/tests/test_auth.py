import time
from types import SimpleNamespace

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from middleware import auth

DOMAIN = "carepanel.eu.auth0.com"
AUDIENCE = "https://api.carepanel.app"


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.fixture
def dev_mode(monkeypatch):
    monkeypatch.setattr(auth.settings, "carepanel_dev_mode", True)
    monkeypatch.setattr(auth.settings, "auth0_domain", "")


@pytest.fixture
def signing_key(monkeypatch):
    """RSA key pair standing in for the Auth0 JWKS."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwks = SimpleNamespace(
        get_signing_key_from_jwt=lambda token: SimpleNamespace(key=key.public_key())
    )
    monkeypatch.setattr(auth.settings, "carepanel_dev_mode", False)
    monkeypatch.setattr(auth.settings, "auth0_domain", DOMAIN)
    monkeypatch.setattr(auth.settings, "auth0_audience", AUDIENCE)
    monkeypatch.setattr(auth, "_jwks_client", lambda: jwks)
    return key


def _token(key, **overrides) -> str:
    claims = {
        "sub": "auth0|provider-7",
        "iss": f"https://{DOMAIN}/",
        "aud": AUDIENCE,
        "exp": int(time.time()) + 300,
        auth.ORG_CLAIM: "org-7",
        auth.ROLE_CLAIM: "nurse",
    }
    claims.update(overrides)
    return jwt.encode({k: v for k, v in claims.items() if v is not None}, key, algorithm="RS256")


@pytest.mark.asyncio
async def test_dev_mode_without_token_runs_as_local_provider(dev_mode):
    ctx = await auth.get_provider_context(None)

    assert ctx.user_id == "dev|local-provider"
    assert ctx.role == "physician"
    assert ctx.organization_id == "00000000-0000-0000-0000-000000000001"


@pytest.mark.asyncio
async def test_dev_mode_token_claims_override_local_identity(dev_mode):
    token = jwt.encode(
        {"sub": "auth0|abc", auth.ORG_CLAIM: "org-9"},
        "not-a-real-secret-but-long-enough-for-hs256",
        algorithm="HS256",
    )

    ctx = await auth.get_provider_context(_bearer(token))

    assert ctx.organization_id == "org-9"
    assert ctx.user_id == "auth0|abc"
    assert ctx.role == "physician"


@pytest.mark.asyncio
async def test_dev_mode_still_rejects_non_provider_role(dev_mode):
    token = jwt.encode(
        {"sub": "auth0|abc", auth.ROLE_CLAIM: "patient"},
        "not-a-real-secret-but-long-enough-for-hs256",
        algorithm="HS256",
    )

    with pytest.raises(HTTPException) as excinfo:
        await auth.get_provider_context(_bearer(token))

    assert excinfo.value.status_code == 403


@pytest.mark.asyncio
async def test_missing_token_outside_dev_mode_is_401(monkeypatch):
    monkeypatch.setattr(auth.settings, "carepanel_dev_mode", False)

    with pytest.raises(HTTPException) as excinfo:
        await auth.get_provider_context(None)

    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_token_without_auth0_config_is_503(monkeypatch):
    monkeypatch.setattr(auth.settings, "carepanel_dev_mode", False)
    monkeypatch.setattr(auth.settings, "auth0_domain", "")

    with pytest.raises(HTTPException) as excinfo:
        await auth.get_provider_context(_bearer("abc"))

    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_verified_token_yields_provider_context(signing_key):
    ctx = await auth.get_provider_context(_bearer(_token(signing_key)))

    assert ctx == auth.ProviderContext(
        organization_id="org-7", user_id="auth0|provider-7", role="nurse"
    )


@pytest.mark.asyncio
async def test_expired_token_is_401(signing_key):
    token = _token(signing_key, exp=int(time.time()) - 60)

    with pytest.raises(HTTPException) as excinfo:
        await auth.get_provider_context(_bearer(token))

    assert excinfo.value.status_code == 401
    assert excinfo.value.detail == "Token has expired."


@pytest.mark.asyncio
async def test_wrong_issuer_is_401(signing_key):
    token = _token(signing_key, iss="https://someone-else.auth0.com/")

    with pytest.raises(HTTPException) as excinfo:
        await auth.get_provider_context(_bearer(token))

    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_token_signed_by_another_key_is_401(signing_key):
    stranger = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    with pytest.raises(HTTPException) as excinfo:
        await auth.get_provider_context(_bearer(_token(stranger)))

    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {auth.ORG_CLAIM: None},
        {auth.ROLE_CLAIM: "patient"},
    ],
)
async def test_verified_token_needs_organization_and_provider_role(signing_key, overrides):
    with pytest.raises(HTTPException) as excinfo:
        await auth.get_provider_context(_bearer(_token(signing_key, **overrides)))

    assert excinfo.value.status_code == 403
