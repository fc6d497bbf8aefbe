"""
Provider authentication.

Every roster and notification request runs as a provider inside one
organization. The Auth0 access token carries that as custom claims:

  https://carepanel.app/organization_id   organization whose patients are visible
  https://carepanel.app/role              physician | nurse | pa | np | admin | tech
  sub                                     Auth0 subject, owns the notifications

Tokens are verified against the Auth0 JWKS (RS256, audience and issuer
checked). A token without an organization, or with a role outside
PROVIDER_ROLES, is rejected with 403.

DEV MODE (CAREPANEL_DEV_MODE=true, Auth0 not configured):
  Requests without a token run as a fixed local provider. A supplied token is
  read without verification and its claims override the local defaults.
  NEVER enable in production.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping

import jwt
from jwt import PyJWKClient
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config import get_settings

settings = get_settings()

CLAIM_NS = "https://carepanel.app/"
ORG_CLAIM = f"{CLAIM_NS}organization_id"
ROLE_CLAIM = f"{CLAIM_NS}role"

# provider_role enum of the portal database
PROVIDER_ROLES = ("physician", "nurse", "pa", "np", "admin", "tech")

_DEV_CLAIMS = {
    "sub": "dev|local-provider",
    ORG_CLAIM: "00000000-0000-0000-0000-000000000001",
    ROLE_CLAIM: "physician",
}

# auto_error=False so a missing header can fall through to the dev identity
_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class ProviderContext:
    organization_id: str
    user_id: str
    role: str


@lru_cache(maxsize=1)
def _jwks_client() -> PyJWKClient:
    return PyJWKClient(settings.jwks_uri, cache_jwk_set=True, lifespan=3600)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def context_from_claims(claims: Mapping[str, Any]) -> ProviderContext:
    """Build the request context from token claims, enforcing organization and role."""
    organization_id = claims.get(ORG_CLAIM)
    if not organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token missing organization_id claim.",
        )
    role = claims.get(ROLE_CLAIM, "physician")
    if role not in PROVIDER_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{role}' may not use the provider portal.",
        )
    return ProviderContext(
        organization_id=str(organization_id),
        user_id=claims["sub"],
        role=role,
    )


def _verified_claims(token: str) -> dict:
    try:
        signing_key = _jwks_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=settings.auth0_audience,
            issuer=settings.auth0_issuer,
            options={"require": ["exp", "iss", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired.")
    except jwt.PyJWTError as exc:
        raise _unauthorized(f"Invalid token: {exc}")


async def get_provider_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> ProviderContext:
    """FastAPI dependency: the authenticated provider and their organization."""
    if settings.carepanel_dev_mode and not settings.auth_configured:
        claims = dict(_DEV_CLAIMS)
        if credentials is not None:
            try:
                claims.update(jwt.decode(
                    credentials.credentials,
                    options={"verify_signature": False},
                ))
            except jwt.PyJWTError:
                pass  # unreadable dev token: keep the local identity
        return context_from_claims(claims)

    if credentials is None:
        raise _unauthorized("Authorization header required.")

    if not settings.auth_configured:
        raise HTTPException(
            status_code=503,
            detail=(
                "Auth0 is not configured on this server. "
                "Set AUTH0_DOMAIN + AUTH0_AUDIENCE in .env, "
                "or set CAREPANEL_DEV_MODE=true for local testing."
            ),
        )

    return context_from_claims(_verified_claims(credentials.credentials))
