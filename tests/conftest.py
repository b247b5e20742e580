"""Test fixtures: a fresh SQLite database per test, real keys, real app.

Learn: Testing pattern for async SQLAlchemy + FastAPI:

1. Each test gets its own SQLite file (aiosqlite) created from the models,
   so commits are real commits. The services commit and roll back on
   their own, and the concurrency tests need several connections that
   see each other's committed writes, which a rolled-back outer
   transaction could not give us.
2. RSA keys are generated with cryptography, once per test session.
3. The HTTP client talks to create_app() through ASGITransport, with
   get_db overridden to hand out sessions on the test database.
4. Apple's JWKS endpoint is served by an httpx.MockTransport, so
   Sign in with Apple is tested against real RS256 signatures.
"""

import json
import time
import uuid

import httpx
import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.ext.asyncio import async_sessionmaker

from livlog_auth.auth.apple import APPLE_ISSUER, AppleIdentityVerifier
from livlog_auth.auth.tokens import (
    CredentialIssuer,
    generate_private_key,
    private_key_to_pem,
)
from livlog_auth.config import Settings
from livlog_auth.db.engine import build_engine, get_db
from livlog_auth.db.models import Base, User, new_uuid
from livlog_auth.services.identity_linker import IdentityLinker
from livlog_auth.services.verification import IssuedCode

APPLE_BUNDLE_ID = "net.avalarin.livlog.tests"
APPLE_KID = "test-apple-kid"


# ═══════════════════════════════════════════════════════════
# Keys
# ═══════════════════════════════════════════════════════════


@pytest.fixture(scope="session")
def private_key():
    return generate_private_key()


@pytest.fixture(scope="session")
def apple_private_key():
    return generate_private_key()


@pytest.fixture()
def issuer(private_key):
    return CredentialIssuer(private_key.public_key(), private_key)


# ═══════════════════════════════════════════════════════════
# Database
# ═══════════════════════════════════════════════════════════


@pytest.fixture()
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'livlog-test.db'}"


@pytest_asyncio.fixture()
async def engine(database_url):
    engine = build_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture()
async def user(session_factory):
    """A committed, active basic-tier user."""
    async with session_factory() as session:
        u = User(id=new_uuid(), email=f"user-{uuid.uuid4().hex[:8]}@example.com", email_verified=True)
        session.add(u)
        await session.commit()
        return u


# ═══════════════════════════════════════════════════════════
# Sign in with Apple
# ═══════════════════════════════════════════════════════════


@pytest.fixture()
def apple_jwks(apple_private_key):
    jwk = json.loads(RSAAlgorithm.to_jwk(apple_private_key.public_key()))
    jwk.update({"kid": APPLE_KID, "alg": "RS256", "use": "sig"})
    return {"keys": [jwk]}


@pytest.fixture()
def apple_key_fetches():
    return []


@pytest.fixture()
def apple_http(apple_jwks, apple_key_fetches):
    """httpx client whose only endpoint is Apple's key set."""

    def handler(request: httpx.Request) -> httpx.Response:
        apple_key_fetches.append(str(request.url))
        return httpx.Response(200, json=apple_jwks)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture()
def apple_verifier(apple_http):
    return AppleIdentityVerifier(APPLE_BUNDLE_ID, client=apple_http)


@pytest.fixture()
def make_apple_token(apple_private_key):
    """Build an Apple-style identity token signed with the test key."""

    def _make(sub="001234.apple-user", kid=APPLE_KID, key=None, **claims):
        now = int(time.time())
        payload = {
            "iss": APPLE_ISSUER,
            "aud": APPLE_BUNDLE_ID,
            "sub": sub,
            "iat": now,
            "exp": now + 600,
        }
        payload.update(claims)
        return jwt.encode(
            payload,
            key or apple_private_key,
            algorithm="RS256",
            headers={"kid": kid},
        )

    return _make


# ═══════════════════════════════════════════════════════════
# App + HTTP client
# ═══════════════════════════════════════════════════════════


class RecordingSender:
    """Code sender that keeps every issued code for the test to read."""

    def __init__(self):
        self.sent: list[IssuedCode] = []

    async def send(self, issued: IssuedCode) -> None:
        self.sent.append(issued)

    def last_code(self, email: str) -> str:
        for issued in reversed(self.sent):
            if issued.email == email:
                return issued.code
        raise AssertionError(f"no code sent to {email}")


@pytest.fixture()
def test_settings(private_key, database_url):
    return Settings(
        environment="test",
        database_url=database_url,
        jwt_private_key=private_key_to_pem(private_key).decode(),
        code_hash_rounds=4,
        apple_bundle_id=APPLE_BUNDLE_ID,
    )


@pytest.fixture()
def code_sender():
    return RecordingSender()


@pytest_asyncio.fixture()
async def app(test_settings, session_factory, code_sender, apple_verifier):
    from livlog_auth.main import create_app

    application = create_app(test_settings)
    application.state.code_sender = code_sender
    application.state.apple_verifier = apple_verifier

    async def override_get_db():
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def linker(db_session):
    return IdentityLinker(db_session)
