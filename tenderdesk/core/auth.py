"""
Caller identity. With FF_USE_AUTH0 on, bearer tokens are Auth0 JWTs whose
namespaced claims carry the organization and roles; with it off every
request acts as the dev member of "dev-org".
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
from jose import JWTError, jwt

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedUser:
    """A member of an organization, or a public visitor when org_id is empty."""

    user_id: str
    email: str = ""
    org_id: str = ""
    roles: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id


DEV_USER = AuthenticatedUser(user_id="dev-user", email="dev@local", org_id="dev-org", roles=["admin"])

ANONYMOUS_USER = AuthenticatedUser(user_id="")


class JwksCache:
    """Signing keys of the Auth0 tenant, refetched every `ttl` seconds."""

    def __init__(self, ttl: int = 600):
        self.ttl = ttl
        self._keys: dict[str, dict] = {}
        self._loaded_at = 0.0

    async def key_for(self, domain: str, kid: Optional[str]) -> dict:
        if not self._keys or time.time() - self._loaded_at >= self.ttl:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.get(f"https://{domain}/.well-known/jwks.json")
                resp.raise_for_status()
            self._keys = {k["kid"]: k for k in resp.json().get("keys", []) if "kid" in k}
            self._loaded_at = time.time()
            logger.info("Loaded %d signing keys from %s", len(self._keys), domain)

        key = self._keys.get(kid or "")
        if key is None:
            raise JWTError(f"No signing key with kid={kid!r}")
        return {name: key[name] for name in ("kty", "kid", "use", "n", "e") if name in key}


_jwks = JwksCache()


def _caller_from_claims(claims: dict, namespace: str) -> AuthenticatedUser:
    roles = claims.get(f"{namespace}roles") or []
    return AuthenticatedUser(
        user_id=claims.get("sub", ""),
        email=claims.get("email") or claims.get(f"{namespace}email", ""),
        org_id=claims.get(f"{namespace}org_id") or "",
        roles=list(roles),
    )


async def _decode(token: str) -> AuthenticatedUser:
    settings = get_settings()
    key = await _jwks.key_for(settings.auth0_domain, jwt.get_unverified_header(token).get("kid"))
    claims = jwt.decode(
        token,
        key,
        algorithms=[settings.auth0_algorithm],
        audience=settings.auth0_audience,
        issuer=f"https://{settings.auth0_domain}/",
    )
    return _caller_from_claims(claims, settings.auth0_claim_namespace)


def _bearer(authorization: str) -> str:
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise PermissionError("Authorization header must be 'Bearer <token>'")
    return token.strip()


async def get_current_user(authorization: str = "") -> AuthenticatedUser:
    """Caller behind the Authorization header. PermissionError when it is missing or invalid."""
    if not get_flags().use_auth0:
        return DEV_USER
    if not authorization:
        raise PermissionError("Missing Authorization header")

    try:
        return await _decode(_bearer(authorization))
    except JWTError as e:
        raise PermissionError(f"Invalid token: {e}")


async def get_optional_user(authorization: str = "") -> AuthenticatedUser:
    """Like get_current_user, but no header at all means a public visitor."""
    if not authorization and get_flags().use_auth0:
        return ANONYMOUS_USER
    return await get_current_user(authorization)
