"""Secret generation and hashing.

Learn: two kinds of secrets, two kinds of hashes.

- Refresh tokens are 256 random bits. They are looked up BY hash, so the
  hash must be deterministic: plain SHA-256 is enough because the input
  is unguessable.
- Verification codes are short (a 6-digit code has only a million values),
  so a fast hash of one can be brute-forced from a database dump in
  milliseconds. They are hashed with bcrypt and compared per email, never
  looked up by hash.
"""

import base64
import hashlib
import secrets

import bcrypt


def generate_refresh_token() -> str:
    """32 random bytes, URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_code(length: int) -> str:
    """Uniformly random numeric code, zero-padded to `length` digits."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_code(code: str, rounds: int = 10) -> str:
    """Hash a verification code with bcrypt.

    Learn: bcrypt embeds a random salt and the cost factor in the output
    ("$2b$10$..."), so verify_code needs nothing but the stored string.
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(code.encode("utf-8"), salt).decode("utf-8")


def verify_code(code: str, code_hash: str) -> bool:
    try:
        return bcrypt.checkpw(code.encode("utf-8"), code_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False
