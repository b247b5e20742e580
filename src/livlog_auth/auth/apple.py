"""Sign in with Apple identity-token verification.

Learn: the mobile client gets an identity token (a JWT signed by Apple)
and forwards it. We verify it against Apple's published JWKS:
1. read `kid` from the unverified header
2. find the matching public key (cached; refetched when an unknown kid
   shows up, which is how Apple key rotation is picked up; at most once
   per min_refetch_interval so made-up kids cannot drive outbound calls)
3. verify RS256 signature, expiry, issuer and audience (our bundle id)

The only thing the rest of the system needs is the stable `sub`.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

import httpx
import jwt
import structlog

logger = structlog.get_logger()

APPLE_ISSUER = "https://appleid.apple.com"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"


class FederatedTokenError(Exception):
    """Raised when a provider identity token is rejected."""


@dataclass(frozen=True)
class AppleIdentity:
    subject: str
    email: Optional[str] = None
    email_verified: bool = False
    is_private_email: bool = False


def _claim_bool(value) -> bool:
    """Apple sends booleans either as JSON bools or as "true"/"false"."""
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


class AppleIdentityVerifier:
    """Verifies Apple identity tokens for one app bundle id."""

    def __init__(
        self,
        bundle_id: str,
        keys_url: str = APPLE_KEYS_URL,
        client: Optional[httpx.AsyncClient] = None,
        leeway: float = 30.0,
        min_refetch_interval: float = 60.0,
    ):
        self.bundle_id = bundle_id
        self.keys_url = keys_url
        self.leeway = leeway
        self.min_refetch_interval = min_refetch_interval
        self._client = client
        self._keys: dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None
        self._lock = asyncio.Lock()

    async def verify(self, identity_token: str) -> AppleIdentity:
        try:
            header = jwt.get_unverified_header(identity_token)
        except jwt.InvalidTokenError as e:
            raise FederatedTokenError(f"Malformed identity token: {e}")

        kid = header.get("kid")
        if not kid:
            raise FederatedTokenError("kid not found in token header")

        key = await self._get_key(kid)

        try:
            claims = jwt.decode(
                identity_token,
                key.key,
                algorithms=["RS256"],
                audience=self.bundle_id,
                issuer=APPLE_ISSUER,
                leeway=self.leeway,
                options={"require": ["sub", "exp", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError:
            raise FederatedTokenError("Identity token has expired")
        except jwt.InvalidTokenError as e:
            raise FederatedTokenError(f"Invalid identity token: {e}")

        return AppleIdentity(
            subject=claims["sub"],
            email=claims.get("email"),
            email_verified=_claim_bool(claims.get("email_verified", False)),
            is_private_email=_claim_bool(claims.get("is_private_email", False)),
        )

    async def _get_key(self, kid: str) -> jwt.PyJWK:
        if kid in self._keys:
            return self._keys[kid]

        async with self._lock:
            # Another request may have refreshed while we waited; unknown
            # kids refetch at most once per min_refetch_interval
            if kid not in self._keys and self._refetch_allowed():
                await self._fetch_keys()

        key = self._keys.get(kid)
        if key is None:
            raise FederatedTokenError("Apple public key not found")
        return key

    def _refetch_allowed(self) -> bool:
        if self._fetched_at is None:
            return True
        return time.monotonic() - self._fetched_at >= self.min_refetch_interval

    async def _fetch_keys(self) -> None:
        client = self._client or httpx.AsyncClient(timeout=10.0)
        try:
            resp = await client.get(self.keys_url)
            resp.raise_for_status()
            jwks = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("apple.jwks_fetch_failed", url=self.keys_url, error=str(e))
            raise FederatedTokenError("Could not fetch Apple public keys")
        finally:
            if self._client is None:
                await client.aclose()

        keys = {}
        for entry in jwks.get("keys", []):
            try:
                keys[entry["kid"]] = jwt.PyJWK(entry, algorithm="RS256")
            except (KeyError, jwt.PyJWKError) as e:
                logger.warning("apple.jwk_skipped", kid=entry.get("kid"), error=str(e))
        self._keys = keys
        self._fetched_at = time.monotonic()
        logger.info("apple.jwks_refreshed", kids=sorted(keys))
