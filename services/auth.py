"""Bearer token verification against an OpenID Connect provider's key set."""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError
from pydantic import ValidationError

from config import Settings
from schemas.auth import AuthenticatedUser, TokenClaims
from services.errors import Unauthorized

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"
REQUIRED_CLAIMS = ("exp", "iss", "aud", "sub")


class _SigningKeyNotFound(Exception):
    """Raised when no key in the cached set matches the token's kid."""


class JWKSVerifier:
    """
    Verify RS256-style bearer tokens issued by a trusted identity provider.

    The provider's discovery document and published key set are fetched over
    HTTP and cached. A token that fails on key material (unknown kid or bad
    signature) triggers one throttled refresh before it is rejected, so key
    rotation never needs a restart.
    """

    def __init__(
        self,
        issuer: str,
        audience: str,
        algorithms: Optional[List[str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cache_ttl: float = 3600.0,
        fetch_timeout: float = 5.0,
        min_refresh_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not issuer or not audience:
            raise ValueError("OIDC issuer and audience are required for JWKS verification")
        # Matched against the iss claim exactly as configured.
        self.issuer = issuer
        self.audience = audience
        self.algorithms = algorithms or ["RS256"]
        self.cache_ttl = cache_ttl
        self.min_refresh_interval = min_refresh_interval
        self._client = http_client or httpx.AsyncClient(timeout=fetch_timeout)
        self._owns_client = http_client is None
        self._clock = clock
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_uri: Optional[str] = None
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> "JWKSVerifier":
        return cls(
            issuer=settings.oidc_issuer,
            audience=settings.oidc_audience,
            algorithms=settings.oidc_algorithms,
            http_client=http_client,
            cache_ttl=settings.jwks_cache_ttl_seconds,
            fetch_timeout=settings.jwks_fetch_timeout_seconds,
            min_refresh_interval=settings.jwks_min_refresh_interval_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch_json(self, url: str) -> Dict[str, Any]:
        response = await self._client.get(url)
        response.raise_for_status()
        return response.json()

    async def _get_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """Return the cached key set, fetching it when stale or on a forced refresh."""
        async with self._lock:
            now = self._clock()
            fresh = self._jwks is not None and now - self._fetched_at < self.cache_ttl
            if fresh and not force_refresh:
                return self._jwks
            if force_refresh and self._jwks is not None and now - self._fetched_at < self.min_refresh_interval:
                logger.debug("Skipping JWKS refresh, last fetch was too recent")
                return self._jwks

            try:
                if self._jwks_uri is None:
                    discovery = await self._fetch_json(f"{self.issuer.rstrip('/')}{DISCOVERY_PATH}")
                    self._jwks_uri = discovery["jwks_uri"]
                jwks = await self._fetch_json(self._jwks_uri)
                if not isinstance(jwks.get("keys"), list):
                    raise ValueError("key set document has no 'keys' list")
            except (httpx.HTTPError, KeyError, ValueError) as e:
                if self._jwks is not None:
                    logger.warning(f"JWKS refresh failed, using cached keys: {e}")
                    return self._jwks
                logger.error(f"Could not fetch JWKS from identity provider: {e}")
                raise Unauthorized("identity provider keys unavailable") from e

            self._jwks = jwks
            self._fetched_at = now
            logger.info(f"Fetched JWKS with {len(jwks['keys'])} keys")
            return jwks

    @staticmethod
    def _select_key(jwks: Dict[str, Any], kid: Optional[str]) -> Dict[str, Any]:
        if kid is None:
            return jwks
        for key in jwks.get("keys", []):
            if key.get("kid") == kid:
                return key
        raise _SigningKeyNotFound(kid)

    def _decode(self, token: str, jwks: Dict[str, Any], kid: Optional[str]) -> Dict[str, Any]:
        return jwt.decode(
            token,
            self._select_key(jwks, kid),
            algorithms=self.algorithms,
            audience=self.audience,
            issuer=self.issuer,
            options={
                "require_exp": True,
                "require_iss": True,
                "require_aud": True,
                "require_sub": True,
            },
        )

    async def verify(self, token: Optional[str]) -> AuthenticatedUser:
        """Return the authenticated user for a bearer token or raise Unauthorized."""
        if not token:
            raise Unauthorized("missing bearer token")

        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise Unauthorized("malformed token") from e

        if header.get("alg") not in self.algorithms:
            raise Unauthorized("token algorithm not allowed")
        kid = header.get("kid")

        # jose reports a missing claim as a plain JWTError, which would look like a key failure.
        try:
            unverified = jwt.get_unverified_claims(token)
        except JWTError as e:
            raise Unauthorized("malformed token") from e
        missing = [claim for claim in REQUIRED_CLAIMS if claim not in unverified]
        if missing:
            raise Unauthorized(f"token is missing required claims: {', '.join(missing)}")

        jwks = await self._get_jwks()
        try:
            payload = self._decode(token, jwks, kid)
        except (ExpiredSignatureError, JWTClaimsError) as e:
            raise Unauthorized(str(e)) from e
        except (JWTError, _SigningKeyNotFound) as e:
            logger.info(f"Token failed key verification ({e}); refreshing JWKS")
            jwks = await self._get_jwks(force_refresh=True)
            try:
                payload = self._decode(token, jwks, kid)
            except (JWTError, _SigningKeyNotFound) as retry_error:
                raise Unauthorized(str(retry_error)) from retry_error

        try:
            claims = TokenClaims(**payload)
        except ValidationError as e:
            raise Unauthorized("token claims incomplete") from e

        return AuthenticatedUser(user_id=claims.sub, claims=payload)


class InsecureLocalVerifier:
    """
    Local testing bypass: the bearer value itself is taken as the user id.

    Only built when AUTH_MODE=insecure-local; never the default.
    """

    def __init__(self):
        logger.warning("Authentication bypass is ENABLED (AUTH_MODE=insecure-local); do not use in production")

    async def verify(self, token: Optional[str]) -> AuthenticatedUser:
        if not token or not token.strip():
            raise Unauthorized("missing bearer token")
        return AuthenticatedUser(user_id=token.strip(), claims={"sub": token.strip(), "bypass": True})

    async def aclose(self) -> None:
        return None


def build_verifier(settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
    """Pick the verifier for the configured auth mode."""
    if settings.auth_mode == "insecure-local":
        return InsecureLocalVerifier()
    return JWKSVerifier.from_settings(settings, http_client=http_client)
