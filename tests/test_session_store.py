"""Session store tests: issue, one-time rotation, revocation.

Learn: rotation is a compare-and-set on the session row. The key
property is that a refresh token works exactly once; presenting it again
fails no matter how the two presentations are interleaved.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from livlog_auth.auth.hashing import hash_refresh_token
from livlog_auth.db.models import UserSession, utcnow
from livlog_auth.services.session_store import (
    SessionExpiredError,
    SessionNotFoundError,
    SessionRevokedError,
    SessionStore,
)
from livlog_auth.services.users import soft_delete_user


# ═══════════════════════════════════════════════════════════
# Issue
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_issue_stores_only_the_hash(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    token, session = await store.issue(user.id, device_info="iPhone 15")
    await db_session.commit()

    assert len(token) == 43  # 32 bytes, base64url without padding
    assert session.refresh_token_hash == hash_refresh_token(token)
    assert session.refresh_token_hash != token
    assert session.device_info == "iPhone 15"
    assert session.expires_at - session.created_at == timedelta(days=30)


@pytest.mark.asyncio
async def test_each_login_starts_a_new_family(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    _, first = await store.issue(user.id)
    _, second = await store.issue(user.id)
    assert first.family_id != second.family_id


# ═══════════════════════════════════════════════════════════
# Rotate
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_rotate_returns_fresh_pair(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    token, original = await store.issue(user.id, device_info="iPad")
    await db_session.commit()

    result = await store.rotate(token)
    await db_session.commit()

    assert result.refresh_token != token
    assert issuer.validate(result.access_token).user_id == user.id
    assert result.user.id == user.id
    assert result.session.family_id == original.family_id
    assert result.session.device_info == "iPad"

    old = (
        await db_session.execute(
            select(UserSession)
            .where(UserSession.id == original.id)
            .execution_options(populate_existing=True)
        )
    ).scalars().one()
    assert old.revoked_at is not None
    assert old.replaced_by_id == result.session.id


@pytest.mark.asyncio
async def test_rotate_twice_fails_second_time(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    token, _ = await store.issue(user.id)
    await db_session.commit()

    await store.rotate(token)
    await db_session.commit()

    with pytest.raises(SessionRevokedError):
        await store.rotate(token)


@pytest.mark.asyncio
async def test_concurrent_rotations_only_one_wins(session_factory, issuer, user):
    async with session_factory() as db:
        token, _ = await SessionStore(db, issuer).issue(user.id)
        await db.commit()

    async def attempt():
        async with session_factory() as db:
            try:
                await SessionStore(db, issuer).rotate(token)
                await db.commit()
                return True
            except SessionRevokedError:
                await db.rollback()
                return False

    results = await asyncio.gather(*[attempt() for _ in range(4)])
    assert sum(results) == 1

    async with session_factory() as db:
        active = await db.scalar(
            select(func.count()).select_from(UserSession).where(UserSession.revoked_at.is_(None))
        )
    assert active == 1


@pytest.mark.asyncio
async def test_rotate_unknown_token(db_session, issuer):
    with pytest.raises(SessionNotFoundError):
        await SessionStore(db_session, issuer).rotate("no-such-token")


@pytest.mark.asyncio
async def test_rotate_expired_session(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    token, session = await store.issue(user.id)
    await db_session.execute(
        update(UserSession)
        .where(UserSession.id == session.id)
        .values(expires_at=utcnow() - timedelta(minutes=1))
    )
    await db_session.commit()

    with pytest.raises(SessionExpiredError):
        await store.rotate(token)


@pytest.mark.asyncio
async def test_rotate_rejected_after_account_deletion(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    token, _ = await store.issue(user.id)
    await soft_delete_user(db_session, user.id)
    await db_session.commit()

    with pytest.raises(SessionRevokedError):
        await store.rotate(token)


# ═══════════════════════════════════════════════════════════
# Reuse detection
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_reuse_without_family_revocation_keeps_successor(db_session, issuer, user):
    store = SessionStore(db_session, issuer, revoke_family_on_reuse=False)
    token, _ = await store.issue(user.id)
    rotated = await store.rotate(token)
    await db_session.commit()

    with pytest.raises(SessionRevokedError):
        await store.rotate(token)

    # The legitimate successor still works
    assert (await store.rotate(rotated.refresh_token)).user.id == user.id


@pytest.mark.asyncio
async def test_reuse_revokes_whole_family_when_enabled(db_session, issuer, user):
    store = SessionStore(db_session, issuer, revoke_family_on_reuse=True)
    token, _ = await store.issue(user.id)
    other_device, _ = await store.issue(user.id)
    rotated = await store.rotate(token)
    await db_session.commit()

    with pytest.raises(SessionRevokedError):
        await store.rotate(token)
    await db_session.commit()

    with pytest.raises(SessionRevokedError):
        await store.rotate(rotated.refresh_token)
    # A different login (family) is untouched
    assert (await store.rotate(other_device)).user.id == user.id


# ═══════════════════════════════════════════════════════════
# Revoke
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_revoke_single_session(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    token, session = await store.issue(user.id)

    assert await store.revoke(session.id) is True
    assert await store.revoke(session.id) is False
    with pytest.raises(SessionRevokedError):
        await store.rotate(token)


@pytest.mark.asyncio
async def test_revoke_token_is_idempotent(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    token, _ = await store.issue(user.id)

    assert await store.revoke_token(token) is True
    assert await store.revoke_token(token) is False
    assert await store.revoke_token("never-issued") is False


@pytest.mark.asyncio
async def test_revoke_all(db_session, issuer, user):
    store = SessionStore(db_session, issuer)
    tokens = [(await store.issue(user.id))[0] for _ in range(3)]
    await db_session.commit()

    assert await store.revoke_all(user.id) == 3
    await db_session.commit()

    for token in tokens:
        with pytest.raises(SessionRevokedError):
            await store.rotate(token)
