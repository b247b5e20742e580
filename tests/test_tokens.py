"""Credential issuer tests.

Learn: validate() is pure, so these tests need no database. They cover
the three ways a token can fail (expired, forged, meant for someone else)
and the key-loading paths used at startup.
"""

import uuid
from datetime import timedelta

import jwt
import pytest

from livlog_auth.auth.tokens import (
    CredentialIssuer,
    ExpiredTokenError,
    InvalidTokenError,
    TokenError,
    generate_private_key,
    private_key_to_pem,
    public_key_to_pem,
)
from livlog_auth.config import Settings


# ═══════════════════════════════════════════════════════════
# Round trip
# ═══════════════════════════════════════════════════════════


def test_valid_token_resolves_to_user(issuer):
    user_id = uuid.uuid4()
    token = issuer.mint_access(user_id, email="a@example.com")

    claims = issuer.validate(token)
    assert claims.user_id == user_id
    assert claims.email == "a@example.com"


def test_token_carries_standard_claims(issuer):
    token = issuer.mint_access(uuid.uuid4())
    payload = jwt.decode(token, options={"verify_signature": False})

    assert payload["iss"] == "livlog-api"
    assert payload["aud"] == "livlog-app"
    assert payload["type"] == "access"
    assert payload["exp"] - payload["iat"] == 3600
    assert jwt.get_unverified_header(token)["alg"] == "RS256"


# ═══════════════════════════════════════════════════════════
# Expiry
# ═══════════════════════════════════════════════════════════


def test_expired_token_rejected(issuer):
    token = issuer.mint_access(uuid.uuid4(), ttl=timedelta(minutes=-5))
    with pytest.raises(ExpiredTokenError):
        issuer.validate(token)


def test_leeway_accepts_just_expired_token(issuer):
    """Expired 10s ago is still inside the default 30s leeway."""
    token = issuer.mint_access(uuid.uuid4(), ttl=timedelta(seconds=-10))
    assert issuer.validate(token).user_id


def test_expired_is_a_token_error(issuer):
    token = issuer.mint_access(uuid.uuid4(), ttl=timedelta(minutes=-5))
    with pytest.raises(TokenError):
        issuer.validate(token)


# ═══════════════════════════════════════════════════════════
# Forged / foreign tokens
# ═══════════════════════════════════════════════════════════


def test_tampered_signature_rejected(issuer):
    token = issuer.mint_access(uuid.uuid4())
    header, payload, signature = token.split(".")
    flipped = signature[:-4] + ("AAAA" if signature[-4:] != "AAAA" else "BBBB")
    with pytest.raises(InvalidTokenError):
        issuer.validate(f"{header}.{payload}.{flipped}")


def test_tampered_payload_rejected(issuer):
    other = issuer.mint_access(uuid.uuid4())
    token = issuer.mint_access(uuid.uuid4())
    # Payload from one token, signature from another
    forged = ".".join([token.split(".")[0], other.split(".")[1], token.split(".")[2]])
    with pytest.raises(InvalidTokenError):
        issuer.validate(forged)


def test_token_from_foreign_key_rejected(issuer):
    stranger_key = generate_private_key()
    stranger = CredentialIssuer(stranger_key.public_key(), stranger_key)
    with pytest.raises(InvalidTokenError):
        issuer.validate(stranger.mint_access(uuid.uuid4()))


def test_wrong_audience_rejected(private_key, issuer):
    other_app = CredentialIssuer(private_key.public_key(), private_key, audience="other-app")
    with pytest.raises(InvalidTokenError):
        issuer.validate(other_app.mint_access(uuid.uuid4()))


def test_wrong_issuer_rejected(private_key, issuer):
    other = CredentialIssuer(private_key.public_key(), private_key, issuer="someone-else")
    with pytest.raises(InvalidTokenError):
        issuer.validate(other.mint_access(uuid.uuid4()))


def test_non_access_token_rejected(private_key, issuer):
    token = jwt.encode(
        {
            "sub": str(uuid.uuid4()),
            "type": "refresh",
            "iss": "livlog-api",
            "aud": "livlog-app",
            "iat": 1_700_000_000,
            "exp": 4_100_000_000,
        },
        private_key,
        algorithm="RS256",
    )
    with pytest.raises(InvalidTokenError, match="Not an access token"):
        issuer.validate(token)


def test_hs256_token_rejected(issuer):
    token = jwt.encode({"sub": str(uuid.uuid4()), "type": "access"}, "secret", algorithm="HS256")
    with pytest.raises(InvalidTokenError):
        issuer.validate(token)


def test_garbage_rejected(issuer):
    with pytest.raises(InvalidTokenError):
        issuer.validate("not-a-jwt")


# ═══════════════════════════════════════════════════════════
# Key loading
# ═══════════════════════════════════════════════════════════


def test_public_key_only_issuer_validates_but_cannot_mint(private_key, issuer):
    validator = CredentialIssuer.from_pem(public_key_to_pem(private_key.public_key()))
    user_id = uuid.uuid4()

    assert validator.validate(issuer.mint_access(user_id)).user_id == user_id
    with pytest.raises(TokenError):
        validator.mint_access(user_id)


def test_from_settings_inline_pem(private_key, issuer):
    settings = Settings(
        environment="production",
        jwt_private_key=private_key_to_pem(private_key).decode(),
        access_token_ttl_seconds=120,
    )
    loaded = CredentialIssuer.from_settings(settings)

    assert loaded.access_ttl == timedelta(seconds=120)
    # Same key pair: tokens are interchangeable
    assert issuer.validate(loaded.mint_access(uuid.uuid4()))


def test_from_settings_key_files(tmp_path, private_key, issuer):
    (tmp_path / "private.pem").write_bytes(private_key_to_pem(private_key))
    (tmp_path / "public.pem").write_bytes(public_key_to_pem(private_key.public_key()))
    settings = Settings(
        environment="production",
        jwt_private_key_path=str(tmp_path / "private.pem"),
        jwt_public_key_path=str(tmp_path / "public.pem"),
    )
    loaded = CredentialIssuer.from_settings(settings)

    user_id = uuid.uuid4()
    assert loaded.validate(issuer.mint_access(user_id)).user_id == user_id


def test_development_without_keys_uses_ephemeral_pair(tmp_path):
    settings = Settings(
        environment="development",
        jwt_private_key_path=str(tmp_path / "missing.pem"),
    )
    loaded = CredentialIssuer.from_settings(settings)
    user_id = uuid.uuid4()
    assert loaded.validate(loaded.mint_access(user_id)).user_id == user_id
