"""Request authentication for DarkDrop.

Two mutually exclusive schemes resolve a request to exactly one identity:
a user session (opaque bearer token) or an agent (API key). The session
token wins when both are present; the key is then not looked at.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import ClassVar, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import crud
from exceptions import DependencyError, Unauthenticated, ValidationError
from models import Account, Permission, User, utcnow
from security import generate_session_token, hash_password, validate_password_strength, verify_password

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    kind: ClassVar[str] = "user"


@dataclass(frozen=True)
class AgentIdentity:
    id: str
    name: Optional[str] = None
    kind: ClassVar[str] = "agent"


Identity = Union[UserIdentity, AgentIdentity]


def bearer_token_from_header(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an Authorization header; a malformed header is rejected."""
    if authorization is None:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Malformed Authorization header")
    return token.strip()


async def authenticate(
    db: AsyncSession,
    bearer_token: Optional[str] = None,
    api_key: Optional[str] = None,
) -> Identity:
    if bearer_token:
        return await authenticate_session(db, bearer_token)
    if api_key:
        return await authenticate_api_key(db, api_key)
    raise Unauthenticated("No authentication provided")


async def authenticate_session(db: AsyncSession, token: str) -> UserIdentity:
    row = await crud.get_session_by_token(db, token)
    if row is None:
        raise Unauthenticated("Invalid or expired token")
    _, user = row
    return UserIdentity(id=user.id, email=user.email, name=user.name)


async def authenticate_api_key(db: AsyncSession, api_key: str) -> AgentIdentity:
    agent = await crud.get_agent_by_api_key(db, api_key)
    if agent is None or agent.status != "active":
        raise Unauthenticated("Invalid API key")

    identity = AgentIdentity(id=agent.id, name=agent.name)
    try:
        await crud.update_agent_usage(db, agent.id)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Could not record usage for agent {agent.id}: {e}")
    return identity


# ─── Registration / login ─────────────────────────────────────────────────────

async def register(db: AsyncSession, email: str, password: str, name: str) -> User:
    if not email or not password or not name:
        raise ValidationError("Email, password, and name required")
    ok, reason = validate_password_strength(password)
    if not ok:
        raise ValidationError(reason)
    if await crud.get_user_by_email(db, email):
        raise ValidationError("User already exists")

    password_hash = await asyncio.to_thread(hash_password, password)
    try:
        user = await crud.create_user(db, email=email, password_hash=password_hash, name=name)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Registration failed for {email}: {e}")
        raise DependencyError("Registration failed")
    logger.info(f"Registered user {user.id}")
    return user


async def login(
    db: AsyncSession,
    email: str,
    password: str,
    ttl_hours: int,
) -> tuple[str, User, list[tuple[Permission, Account]]]:
    """Create a session for valid credentials. Returns (token, user, permissions)."""
    if not email or not password:
        raise ValidationError("Email and password required")

    user = await crud.get_user_by_email(db, email)
    if user is None or not await asyncio.to_thread(verify_password, password, user.password_hash):
        raise Unauthenticated("Invalid credentials")

    token = generate_session_token()
    try:
        await crud.update_user_login(db, user.id)
        await crud.create_session(db, user.id, token, utcnow() + timedelta(hours=ttl_hours))
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Could not create session for user {user.id}: {e}")
        raise DependencyError("Login failed")

    permissions = await crud.get_identity_permissions(db, user_id=user.id)
    return token, user, permissions


async def logout(db: AsyncSession, token: str) -> None:
    try:
        await crud.delete_session(db, token)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Logout failed: {e}")
        raise DependencyError("Logout failed")


# ─── Expired session sweep ────────────────────────────────────────────────────

async def cleanup_expired_sessions(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as db:
        removed = await crud.clean_expired_sessions(db)
        await db.commit()
    if removed:
        logger.info(f"Removed {removed} expired sessions")
    return removed


async def session_cleanup_loop(session_factory: async_sessionmaker[AsyncSession], interval_seconds: int):
    """Background task: sweep expired sessions every interval_seconds."""
    logger.info("Session cleanup task started")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await cleanup_expired_sessions(session_factory)
        except SQLAlchemyError as e:
            logger.error(f"Session cleanup failed: {e}")
        except Exception:
            # the sweep must outlive any single failure
            logger.exception("Unexpected error in session cleanup")
