import asyncio
from datetime import timedelta

import pytest

import auth
import crud
from auth import AgentIdentity, UserIdentity, authenticate, bearer_token_from_header
from exceptions import Unauthenticated, ValidationError
from models import utcnow
from security import generate_session_token

PASSWORD = "Correct-Horse-9"


async def _session_for(db, user_id, expires_in=timedelta(hours=1)):
    token = generate_session_token()
    await crud.create_session(db, user_id, token, utcnow() + expires_in)
    await db.commit()
    return token


async def test_register_then_login_then_authenticate(db, tenant):
    user = await auth.register(db, "new@acme.example.com", PASSWORD, "Newt")
    await crud.create_permission(db, "acme", "read", user_id=user.id)
    await db.commit()

    token, logged_in, permissions = await auth.login(db, "new@acme.example.com", PASSWORD, ttl_hours=1)

    assert logged_in.id == user.id
    await db.refresh(logged_in)
    assert logged_in.last_login is not None
    assert [(p.role, a.id) for p, a in permissions] == [("read", "acme")]

    identity = await authenticate(db, bearer_token=token)
    assert identity == UserIdentity(id=user.id, email="new@acme.example.com", name="Newt")
    assert identity.kind == "user"


async def test_login_with_wrong_password(db):
    await auth.register(db, "new@acme.example.com", PASSWORD, "Newt")

    with pytest.raises(Unauthenticated, match="Invalid credentials"):
        await auth.login(db, "new@acme.example.com", "Wrong-Horse-9", ttl_hours=1)
    with pytest.raises(Unauthenticated, match="Invalid credentials"):
        await auth.login(db, "ghost@acme.example.com", PASSWORD, ttl_hours=1)


@pytest.mark.parametrize(
    "password", ["Short1", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere", "Aa1" + "x" * 70]
)
async def test_register_rejects_weak_password(db, password):
    with pytest.raises(ValidationError):
        await auth.register(db, "weak@acme.example.com", password, "Weak")


async def test_register_rejects_duplicate_email(db):
    await auth.register(db, "dup@acme.example.com", PASSWORD, "First")

    with pytest.raises(ValidationError, match="already exists"):
        await auth.register(db, "dup@acme.example.com", PASSWORD, "Second")


async def test_expired_session_looks_like_unknown_token(db, tenant):
    expired = await _session_for(db, tenant.writer.id, expires_in=timedelta(seconds=-1))

    with pytest.raises(Unauthenticated) as expired_exc:
        await authenticate(db, bearer_token=expired)
    with pytest.raises(Unauthenticated) as unknown_exc:
        await authenticate(db, bearer_token="not-a-real-token")

    assert expired_exc.value.message == unknown_exc.value.message == "Invalid or expired token"


async def test_logout_ends_session(db, tenant):
    token = await _session_for(db, tenant.writer.id)
    await authenticate(db, bearer_token=token)

    await auth.logout(db, token)

    with pytest.raises(Unauthenticated):
        await authenticate(db, bearer_token=token)


async def test_active_api_key_resolves_agent_and_records_usage(db, tenant):
    identity = await authenticate(db, api_key=tenant.agent_api_key)

    assert identity == AgentIdentity(id=tenant.agent.id, name="Acme Assistant")
    assert identity.kind == "agent"
    agent = await crud.get_agent(db, tenant.agent.id)
    await db.refresh(agent)
    assert agent.last_used is not None


async def test_revoked_and_unknown_api_keys_fail(db, tenant):
    await crud.revoke_agent(db, tenant.agent.id)
    await db.commit()

    with pytest.raises(Unauthenticated, match="Invalid API key"):
        await authenticate(db, api_key=tenant.agent_api_key)
    with pytest.raises(Unauthenticated, match="Invalid API key"):
        await authenticate(db, api_key="f" * 64)


async def test_session_wins_over_api_key(db, tenant):
    token = await _session_for(db, tenant.writer.id)

    identity = await authenticate(db, bearer_token=token, api_key="garbage")

    assert isinstance(identity, UserIdentity)
    assert identity.id == tenant.writer.id


async def test_invalid_session_does_not_fall_back_to_api_key(db, tenant):
    with pytest.raises(Unauthenticated, match="Invalid or expired token"):
        await authenticate(db, bearer_token="stale", api_key=tenant.agent_api_key)


async def test_no_credentials(db):
    with pytest.raises(Unauthenticated, match="No authentication provided"):
        await authenticate(db)


@pytest.mark.parametrize(
    "header, expected",
    [(None, None), ("Bearer abc123", "abc123"), ("bearer  abc123 ", "abc123")],
)
def test_bearer_token_from_header(header, expected):
    assert bearer_token_from_header(header) == expected


@pytest.mark.parametrize("header", ["abc123", "Basic dXNlcjpwYXNz", "Bearer", "Bearer   "])
def test_malformed_authorization_header(header):
    with pytest.raises(Unauthenticated, match="Malformed"):
        bearer_token_from_header(header)


async def test_cleanup_removes_only_expired_sessions(db, session_factory, tenant):
    live = await _session_for(db, tenant.writer.id)
    await _session_for(db, tenant.writer.id, expires_in=timedelta(minutes=-5))
    await _session_for(db, tenant.reader.id, expires_in=timedelta(days=-1))

    removed = await auth.cleanup_expired_sessions(session_factory)

    assert removed == 2
    assert await authenticate(db, bearer_token=live)
    assert await auth.cleanup_expired_sessions(session_factory) == 0


async def test_cleanup_loop_keeps_running_after_unexpected_error(session_factory, monkeypatch):
    calls = []

    async def flaky(factory):
        calls.append(factory)
        if len(calls) == 1:
            raise RuntimeError("filesystem went away")
        return 0

    monkeypatch.setattr(auth, "cleanup_expired_sessions", flaky)
    task = asyncio.create_task(auth.session_cleanup_loop(session_factory, 0))
    for _ in range(200):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(calls) >= 2
