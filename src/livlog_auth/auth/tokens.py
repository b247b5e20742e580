"""Access-token minting and validation (RS256 JWT).

Learn: access tokens are stateless. The issuer signs with a private key;
anything holding the public key can validate without touching storage,
which is what lets every protected request be authorized with no
database round-trip.

- Access token: short-lived (1h), carries sub/iat/exp/iss/aud
- Refresh tokens are NOT JWTs: they are opaque random strings owned by
  the session store (see services/session_store.py)

The key pair is loaded once at startup and never mutated, so a single
CredentialIssuer can be shared by every request concurrently.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import jwt
import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = structlog.get_logger()

ALGORITHM = "RS256"


class TokenError(Exception):
    """Raised when an access token cannot be minted or validated."""


class InvalidTokenError(TokenError):
    """Malformed, tampered, wrong audience/issuer, or not an access token."""


class ExpiredTokenError(TokenError):
    """Signature is fine but the token is past its expiry (plus leeway)."""


@dataclass(frozen=True)
class AccessClaims:
    user_id: uuid.UUID
    expires_at: datetime
    email: Optional[str] = None


class CredentialIssuer:
    """Mints and validates access tokens with a static RSA key pair."""

    def __init__(
        self,
        public_key: rsa.RSAPublicKey,
        private_key: Optional[rsa.RSAPrivateKey] = None,
        issuer: str = "livlog-api",
        audience: str = "livlog-app",
        access_ttl: timedelta = timedelta(hours=1),
        leeway: timedelta = timedelta(seconds=30),
    ):
        self._public_key = public_key
        self._private_key = private_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.leeway = leeway

    # ─── Construction ─────────────────────────────────────

    @classmethod
    def from_pem(
        cls,
        public_pem: bytes,
        private_pem: Optional[bytes] = None,
        **kwargs,
    ) -> "CredentialIssuer":
        """Build from PEM bytes (PKCS#8 private, SubjectPublicKeyInfo public)."""
        public_key = serialization.load_pem_public_key(public_pem)
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise TokenError("public key is not RSA")
        private_key = None
        if private_pem is not None:
            private_key = serialization.load_pem_private_key(private_pem, password=None)
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise TokenError("private key is not RSA")
        return cls(public_key, private_key, **kwargs)

    @classmethod
    def from_settings(cls, settings) -> "CredentialIssuer":
        """Load the key pair named by settings.

        Learn: inline PEM settings win over key files. In development, if
        neither is present, an ephemeral key pair is generated so the app
        still boots; tokens then die with the process.
        """
        kwargs = dict(
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            leeway=timedelta(seconds=settings.token_leeway_seconds),
        )

        if settings.jwt_private_key:
            private_pem = settings.jwt_private_key.encode()
            if settings.jwt_public_key:
                return cls.from_pem(settings.jwt_public_key.encode(), private_pem, **kwargs)
            private_key = serialization.load_pem_private_key(private_pem, password=None)
            return cls(private_key.public_key(), private_key, **kwargs)

        private_path = Path(settings.jwt_private_key_path)
        public_path = Path(settings.jwt_public_key_path)
        if private_path.exists():
            private_pem = private_path.read_bytes()
            if public_path.exists():
                return cls.from_pem(public_path.read_bytes(), private_pem, **kwargs)
            private_key = serialization.load_pem_private_key(private_pem, password=None)
            return cls(private_key.public_key(), private_key, **kwargs)

        if settings.environment != "development":
            raise TokenError(f"signing key not found at {private_path}")

        logger.warning("issuer.ephemeral_keys", path=str(private_path))
        private_key = generate_private_key()
        return cls(private_key.public_key(), private_key, **kwargs)

    # ─── Mint / validate ──────────────────────────────────

    def mint_access(
        self,
        user_id: uuid.UUID,
        ttl: Optional[timedelta] = None,
        email: Optional[str] = None,
    ) -> str:
        """Create a signed access token for a user."""
        if self._private_key is None:
            raise TokenError("this issuer holds no private key")

        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "type": "access",
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + (ttl if ttl is not None else self.access_ttl),
        }
        if email:
            payload["email"] = email
        return jwt.encode(payload, self._private_key, algorithm=ALGORITHM)

    def validate(self, token: str) -> AccessClaims:
        """Verify signature, issuer, audience and expiry.

        Returns the claims on success.
        Raises ExpiredTokenError or InvalidTokenError on failure.
        """
        try:
            payload = jwt.decode(
                token,
                self._public_key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredTokenError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError(f"Invalid token: {e}")

        if payload.get("type") != "access":
            raise InvalidTokenError("Not an access token")
        try:
            user_id = uuid.UUID(payload["sub"])
        except (ValueError, TypeError):
            raise InvalidTokenError("Invalid subject")

        return AccessClaims(
            user_id=user_id,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            email=payload.get("email"),
        )


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_to_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_to_pem(key: rsa.RSAPublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
