"""
Identity token verification.

The identity provider is an external collaborator: the service only needs
`verify_token(token) -> VerifiedIdentity(uid)` or an AuthError. The default
verifier checks JWTs with PyJWT, against either a shared secret (HS*) or a
JWKS document fetched with httpx and cached for 24 hours (RS*).
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol
import json
import logging
import threading
import time

import httpx
import jwt
from fastapi import Depends, Header
from starlette.concurrency import run_in_threadpool

from dreamstate.core.config import settings
from dreamstate.core.errors import AuthError

logger = logging.getLogger("dreamstate")

JWKS_CACHE_SECONDS = 86400


@dataclass(frozen=True)
class VerifiedIdentity:
    uid: str
    claims: Dict[str, Any]


class TokenVerifier(Protocol):
    def verify_token(self, token: str) -> VerifiedIdentity:
        ...


def extract_bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Return the token from `Bearer <token>`, or None for anything else."""
    if not header_value:
        return None
    parts = header_value.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


class JwksCache:
    """Fetches and caches a JWKS document."""

    def __init__(self, url: str, ttl_seconds: int = JWKS_CACHE_SECONDS):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self._keys: Optional[Dict[str, Any]] = None
        self._fetched_at: Optional[float] = None
        self._lock = threading.Lock()

    def _fetch(self) -> Dict[str, Any]:
        with httpx.Client(timeout=5.0) as client:
            response = client.get(self.url)
            response.raise_for_status()
            return response.json()

    def signing_key(self, kid: Optional[str]):
        with self._lock:
            if self._keys is None or self._fetched_at is None or (time.time() - self._fetched_at) >= self.ttl_seconds:
                self._keys = self._fetch()
                self._fetched_at = time.time()
            keys = self._keys.get("keys", [])
        for key in keys:
            if kid is None or key.get("kid") == kid:
                return jwt.PyJWK.from_json(json.dumps(key)).key
        raise AuthError("Unknown signing key")


class JwtTokenVerifier:
    """Verify JWTs and extract the uid from the `sub` (or `uid`) claim."""

    def __init__(
        self,
        secret: Optional[str] = None,
        algorithms: Optional[List[str]] = None,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        jwks_url: Optional[str] = None,
    ):
        self.secret = secret
        self.algorithms = algorithms or ["HS256"]
        self.issuer = issuer
        self.audience = audience
        self.jwks = JwksCache(jwks_url) if jwks_url else None

    @classmethod
    def from_settings(cls, cfg=None) -> "JwtTokenVerifier":
        cfg = cfg or settings
        algorithms = [a.strip() for a in (cfg.AUTH_JWT_ALGORITHMS or "").split(",") if a.strip()]
        return cls(
            secret=cfg.AUTH_JWT_SECRET,
            algorithms=algorithms or None,
            issuer=cfg.AUTH_JWT_ISSUER,
            audience=cfg.AUTH_JWT_AUDIENCE,
            jwks_url=cfg.AUTH_JWKS_URL,
        )

    def _key_for(self, token: str):
        header = jwt.get_unverified_header(token)
        alg = header.get("alg", "")
        if alg not in self.algorithms:
            raise AuthError("Unsupported token algorithm")
        if alg.startswith("HS"):
            if not self.secret:
                raise AuthError("Token verification is not configured")
            return self.secret
        if self.jwks is None:
            raise AuthError("Token verification is not configured")
        return self.jwks.signing_key(header.get("kid"))

    def verify_token(self, token: str) -> VerifiedIdentity:
        try:
            payload = jwt.decode(
                token,
                self._key_for(token),
                algorithms=self.algorithms,
                issuer=self.issuer,
                audience=self.audience,
                options={"verify_signature": True, "verify_exp": True, "verify_aud": self.audience is not None},
            )
        except AuthError:
            raise
        except jwt.ExpiredSignatureError:
            raise AuthError("Token expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"Invalid token: {e}")
            raise AuthError("Invalid token")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch JWKS: {e}")
            raise AuthError("Token verification failed")

        uid = payload.get("sub") or payload.get("uid")
        if not uid or not isinstance(uid, str):
            raise AuthError("Token has no subject")
        return VerifiedIdentity(uid=uid, claims=payload)


_verifier: Optional[TokenVerifier] = None


def get_token_verifier() -> TokenVerifier:
    """FastAPI dependency; tests override it with a fake verifier."""
    global _verifier
    if _verifier is None:
        _verifier = JwtTokenVerifier.from_settings()
    return _verifier


def authenticate(verifier: TokenVerifier, token: Optional[str]) -> str:
    """Verify `token` and return the uid; any failure is an AuthError (401)."""
    if not token:
        raise AuthError("Missing Authorization (Bearer token)")
    try:
        identity = verifier.verify_token(token)
    except AuthError:
        raise
    except Exception as e:
        logger.warning(f"Token verification error: {e}")
        raise AuthError("Token verification failed")
    if not identity or not identity.uid:
        raise AuthError("Token has no subject")
    return identity.uid


async def require_user(
    authorization: Optional[str] = Header(None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> str:
    """Dependency requiring `Authorization: Bearer <token>`; returns the uid."""
    token = extract_bearer_token(authorization)
    if not token:
        raise AuthError("Missing or invalid Authorization header (expected Bearer token)")
    return await run_in_threadpool(authenticate, verifier, token)
