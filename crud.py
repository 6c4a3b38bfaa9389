"""Data access for DarkDrop.

Functions here stage changes on the session and flush, but never commit:
the caller owns the transaction so multi-row writes land together.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import ValidationError
from models import (
    ROLE_HIERARCHY, Account, Agent, File, FileVersion, Permission, Session, User, new_id, utcnow,
)
from security import generate_api_key


# ─── Accounts ─────────────────────────────────────────────────────────────────

async def create_account(
    db: AsyncSession,
    account_id: str,
    name: str,
    domain: Optional[str] = None,
    storage_quota: int = 0,
    encryption_enabled: bool = False,
) -> Account:
    account = Account(
        id=account_id,
        name=name,
        domain=domain,
        status="active",
        storage_used=0,
        storage_quota=storage_quota,
        encryption_enabled=encryption_enabled,
    )
    db.add(account)
    await db.flush()
    return account


async def get_account(db: AsyncSession, account_id: str) -> Optional[Account]:
    result = await db.execute(
        select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_active_accounts(db: AsyncSession) -> list[Account]:
    result = await db.execute(select(Account).where(Account.status == "active").order_by(Account.id))
    return list(result.scalars().all())


async def adjust_account_storage(
    db: AsyncSession,
    account_id: str,
    delta: int,
    enforce_quota: bool = False,
) -> bool:
    """Atomically add delta (possibly negative) bytes to storage_used.

    With enforce_quota, growth that would push a quota-limited account past its
    quota matches no row and returns False; the quota test and the increment are
    one statement, so concurrent writers cannot both slip under the limit.
    """
    query = update(Account).where(Account.id == account_id)
    if enforce_quota and delta > 0:
        query = query.where(
            or_(Account.storage_quota == 0, Account.storage_used + delta <= Account.storage_quota)
        )
    result = await db.execute(
        query.values(storage_used=Account.storage_used + delta).execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


# ─── Users ────────────────────────────────────────────────────────────────────

async def create_user(db: AsyncSession, email: str, password_hash: str, name: str) -> User:
    user = User(id=new_id(), email=email, password_hash=password_hash, name=name)
    db.add(user)
    await db.flush()
    return user


async def get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def update_user_login(db: AsyncSession, user_id: str) -> None:
    await db.execute(
        update(User).where(User.id == user_id).values(last_login=utcnow())
        .execution_options(synchronize_session=False)
    )


# ─── Agents ───────────────────────────────────────────────────────────────────

async def create_agent(db: AsyncSession, name: str, api_key: Optional[str] = None) -> Agent:
    agent = Agent(id=new_id(), name=name, api_key=api_key or generate_api_key(), status="active")
    db.add(agent)
    await db.flush()
    return agent


async def get_agent(db: AsyncSession, agent_id: str) -> Optional[Agent]:
    result = await db.execute(select(Agent).where(Agent.id == agent_id))
    return result.scalar_one_or_none()


async def get_agent_by_api_key(db: AsyncSession, api_key: str) -> Optional[Agent]:
    result = await db.execute(select(Agent).where(Agent.api_key == api_key))
    return result.scalar_one_or_none()


async def update_agent_usage(db: AsyncSession, agent_id: str) -> None:
    await db.execute(
        update(Agent).where(Agent.id == agent_id).values(last_used=utcnow())
        .execution_options(synchronize_session=False)
    )


async def revoke_agent(db: AsyncSession, agent_id: str) -> None:
    await db.execute(
        update(Agent).where(Agent.id == agent_id).values(status="revoked")
        .execution_options(synchronize_session=False)
    )


# ─── Permissions ──────────────────────────────────────────────────────────────

async def create_permission(
    db: AsyncSession,
    account_id: str,
    role: str,
    user_id: Optional[str] = None,
    agent_id: Optional[str] = None,
) -> Permission:
    if (user_id is None) == (agent_id is None):
        raise ValidationError("A permission binds exactly one of user_id or agent_id")
    if role not in ROLE_HIERARCHY:
        raise ValidationError(f"Role must be one of: {', '.join(ROLE_HIERARCHY)}")

    permission = Permission(id=new_id(), account_id=account_id, user_id=user_id, agent_id=agent_id, role=role)
    db.add(permission)
    await db.flush()
    return permission


async def get_permission_role(
    db: AsyncSession,
    account_id: str,
    user_id: Optional[str] = None,
    agent_id: Optional[str] = None,
) -> Optional[str]:
    if user_id is not None:
        where = Permission.user_id == user_id
    elif agent_id is not None:
        where = Permission.agent_id == agent_id
    else:
        return None

    result = await db.execute(select(Permission.role).where(Permission.account_id == account_id, where))
    return result.scalar_one_or_none()


async def check_permission(
    db: AsyncSession,
    account_id: str,
    user_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    required_role: str = "read",
) -> bool:
    """True when the identity's role on the account ranks at or above required_role."""
    role = await get_permission_role(db, account_id, user_id=user_id, agent_id=agent_id)
    if role is None:
        return False
    required = ROLE_HIERARCHY.get(required_role)
    if required is None:
        raise ValidationError(f"Unknown role: {required_role}")
    return ROLE_HIERARCHY.get(role, 0) >= required


async def get_identity_permissions(
    db: AsyncSession,
    user_id: Optional[str] = None,
    agent_id: Optional[str] = None,
) -> list[tuple[Permission, Account]]:
    """Permissions of one identity on active accounts, joined with the account."""
    where = Permission.user_id == user_id if user_id is not None else Permission.agent_id == agent_id
    result = await db.execute(
        select(Permission, Account)
        .join(Account, Permission.account_id == Account.id)
        .where(where, Account.status == "active")
        .order_by(Account.id)
    )
    return [(p, a) for p, a in result.all()]


# ─── Files ────────────────────────────────────────────────────────────────────

async def create_file(db: AsyncSession, **fields) -> File:
    db_file = File(id=fields.pop("id", None) or new_id(), **fields)
    db.add(db_file)
    await db.flush()
    return db_file


async def get_file(db: AsyncSession, file_id: str) -> Optional[File]:
    result = await db.execute(
        select(File).where(File.id == file_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_file_by_public_token(db: AsyncSession, token: str) -> Optional[File]:
    result = await db.execute(
        select(File).where(File.public_token == token, File.is_public.is_(True))
    )
    return result.scalar_one_or_none()


async def find_file(db: AsyncSession, account_id: str, folder: str, original_name: str) -> Optional[File]:
    result = await db.execute(
        select(File)
        .where(File.account_id == account_id, File.folder == folder, File.original_name == original_name)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_files(
    db: AsyncSession,
    account_id: str,
    folder: str = "/",
    file_type: Optional[str] = None,
) -> list[File]:
    query = select(File).where(File.account_id == account_id, File.folder == folder)
    if file_type:
        query = query.where(File.type == file_type)
    result = await db.execute(query.order_by(File.created_at.desc()))
    return list(result.scalars().all())


async def search_files(
    db: AsyncSession,
    account_id: str,
    term: str,
    folder: Optional[str] = None,
    file_type: Optional[str] = None,
) -> list[File]:
    query = select(File).where(
        File.account_id == account_id,
        or_(
            File.name.contains(term, autoescape=True),
            File.original_name.contains(term, autoescape=True),
        ),
    )
    if folder:
        query = query.where(File.folder == folder)
    if file_type:
        query = query.where(File.type == file_type)
    result = await db.execute(query.order_by(File.created_at.desc()))
    return list(result.scalars().all())


async def delete_file(db: AsyncSession, file_id: str) -> None:
    # versions go with the file; audit rows are kept
    await db.execute(delete(FileVersion).where(FileVersion.file_id == file_id))
    await db.execute(delete(File).where(File.id == file_id))


async def make_file_public(db: AsyncSession, file_id: str, public_token: str) -> None:
    await db.execute(
        update(File).where(File.id == file_id).values(is_public=True, public_token=public_token)
        .execution_options(synchronize_session=False)
    )


async def increment_download_count(db: AsyncSession, file_id: str) -> None:
    await db.execute(
        update(File).where(File.id == file_id).values(download_count=File.download_count + 1)
        .execution_options(synchronize_session=False)
    )


# ─── File versions ────────────────────────────────────────────────────────────

async def create_file_version(db: AsyncSession, **fields) -> FileVersion:
    version = FileVersion(id=new_id(), **fields)
    db.add(version)
    await db.flush()
    return version


async def get_file_versions(db: AsyncSession, file_id: str) -> list[FileVersion]:
    result = await db.execute(
        select(FileVersion).where(FileVersion.file_id == file_id).order_by(FileVersion.version_number.desc())
    )
    return list(result.scalars().all())


async def get_file_version(db: AsyncSession, version_id: str) -> Optional[FileVersion]:
    result = await db.execute(select(FileVersion).where(FileVersion.id == version_id))
    return result.scalar_one_or_none()


async def get_max_version_number(db: AsyncSession, file_id: str) -> int:
    result = await db.execute(
        select(func.max(FileVersion.version_number)).where(FileVersion.file_id == file_id)
    )
    return result.scalar() or 0


# ─── Sessions ─────────────────────────────────────────────────────────────────

async def create_session(db: AsyncSession, user_id: str, token: str, expires_at: datetime) -> Session:
    session = Session(id=new_id(), user_id=user_id, token=token, expires_at=expires_at)
    db.add(session)
    await db.flush()
    return session


async def get_session_by_token(db: AsyncSession, token: str) -> Optional[tuple[Session, User]]:
    """Live session joined with its user. Expired and missing sessions look the same."""
    result = await db.execute(
        select(Session, User)
        .join(User, Session.user_id == User.id)
        .where(Session.token == token, Session.expires_at > utcnow())
    )
    row = result.first()
    return (row[0], row[1]) if row else None


async def delete_session(db: AsyncSession, token: str) -> None:
    await db.execute(delete(Session).where(Session.token == token))


async def clean_expired_sessions(db: AsyncSession) -> int:
    result = await db.execute(delete(Session).where(Session.expires_at <= utcnow()))
    return result.rowcount or 0
