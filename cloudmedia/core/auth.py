"""
Clerk JWT verification and the authenticated-user dependency.

Handles:
- HS256 verification with CLERK_SECRET_KEY (development/testing)
- JWKS/RS256 verification with issuer/audience checks (production)
- Test helpers for deterministic testing (no network)
"""
import json
import time
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from fastapi import Request

from cloudmedia.core.config import settings
from cloudmedia.core.errors import UnauthenticatedError
from cloudmedia.core.logging import log_event


# JWKS override (tests) and cache keyed by issuer/jwks_url
_jwks_provider_override: Optional[Callable[[str, str], Dict[str, Any]]] = None
_jwks_cache: Dict[str, Dict[str, Any]] = {}


def set_jwks_provider_for_tests(provider: Optional[Callable[[str, str], Dict[str, Any]]]) -> None:
    """Set or clear JWKS provider override for deterministic testing (no network)."""
    global _jwks_provider_override
    _jwks_provider_override = provider
    _jwks_cache.clear()


def _default_fetch_jwks(issuer: str, jwks_url: str) -> Dict[str, Any]:
    response = httpx.get(jwks_url, timeout=5.0)
    response.raise_for_status()
    return response.json()


def get_jwks(issuer: str, jwks_url: Optional[str] = None) -> Dict[str, Any]:
    """Fetch JWKS using override (tests) or default fetcher. Cached per issuer/url."""
    resolved_url = jwks_url or f"{issuer.rstrip('/')}/.well-known/jwks.json"
    cache_key = f"{issuer}|{resolved_url}"

    if cache_key in _jwks_cache:
        return _jwks_cache[cache_key]

    if _jwks_provider_override:
        jwks = _jwks_provider_override(issuer, resolved_url)
    else:
        jwks = _default_fetch_jwks(issuer, resolved_url)

    _jwks_cache[cache_key] = jwks
    return jwks


def verify_jwt_token(token: str) -> Dict[str, Any]:
    """
    Verify a Clerk JWT and return its claims.

    Raises jwt.PyJWTError on an invalid token.
    """
    secret = settings.CLERK_SECRET_KEY
    if secret:
        # Symmetric verification; aud/iss are not checked in this mode
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )

    issuer = settings.CLERK_ISSUER
    jwks_url = settings.CLERK_JWKS_URL
    if not issuer and not jwks_url:
        raise jwt.PyJWTError("CLERK_ISSUER or CLERK_JWKS_URL must be configured for RS256 verification")

    jwks = get_jwks(issuer or "https://clerk.test", jwks_url)

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.PyJWTError("Token missing 'kid' in header")

    matching_key = None
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            matching_key = key
            break

    if not matching_key:
        raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

    public_key = jwt.algorithms.RSAAlgorithm.from_jwk(json.dumps(matching_key))

    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        audience=settings.CLERK_AUDIENCE,
        issuer=issuer,
        options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.CLERK_AUDIENCE)},
    )


async def get_current_user_id(request: Request) -> str:
    """
    Resolve the caller's identity-provider user id from `Authorization: Bearer`.

    Missing or invalid credentials raise UnauthenticatedError (401) before any
    business logic runs.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise UnauthenticatedError("Missing Authorization bearer token")

    token = auth_header[7:].strip()
    try:
        claims = verify_jwt_token(token)
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.PyJWTError as e:
        log_event("info", "auth.invalid_token", error_code="unauthenticated", extra={"reason": e})
        raise UnauthenticatedError("Invalid token")
    except httpx.HTTPError as e:
        log_event("warning", "auth.jwks_unavailable", error_code="unauthenticated", extra={"reason": e})
        raise UnauthenticatedError("Token verification failed")

    user_id = claims.get("sub")
    if not user_id:
        raise UnauthenticatedError("Token has no subject")
    request.state.user_claims = claims
    return user_id


# ============================================================================
# Test Helpers (deterministic, no network)
# ============================================================================

def create_test_jwt(
    sub: str = "user_test_123",
    email: Optional[str] = "test@example.com",
    exp_minutes: int = 60,
    secret: str = "test-secret-key",
    algorithm: str = "HS256",
    private_key: Optional[str] = None,
    kid: Optional[str] = None,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
) -> str:
    """
    Create a signed JWT for tests.

    Supports HS256 (default) and RS256 (for JWKS-based tests).
    """
    now = int(time.time())
    payload = {
        "sub": sub,
        "email": email,
        "iat": now,
        "exp": now + (exp_minutes * 60),
        "iss": issuer or settings.CLERK_ISSUER or "https://test.clerk.accounts.dev",
        "aud": audience or settings.CLERK_AUDIENCE or "test-audience",
    }

    headers = {"kid": kid} if kid else None
    key = private_key if algorithm == "RS256" and private_key else secret
    return jwt.encode(payload, key, algorithm=algorithm, headers=headers)
