"""Access control: may this identity act at this role level on this account?

Every check re-queries the permission row; results are never cached.
"""
import enum

from sqlalchemy.ext.asyncio import AsyncSession

import crud
from auth import AgentIdentity, Identity, UserIdentity
from exceptions import Forbidden, ValidationError


class Role(str, enum.Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


async def has_access(db: AsyncSession, account_id: str, identity: Identity, required_role: Role) -> bool:
    role = Role(required_role).value
    if isinstance(identity, UserIdentity):
        return await crud.check_permission(db, account_id, user_id=identity.id, required_role=role)
    if isinstance(identity, AgentIdentity):
        return await crud.check_permission(db, account_id, agent_id=identity.id, required_role=role)
    raise ValidationError("Exactly one user or agent identity is required")


async def require_access(db: AsyncSession, account_id: str, identity: Identity, required_role: Role) -> None:
    if not await has_access(db, account_id, identity, required_role):
        raise Forbidden("Access denied")


async def list_accounts_for(db: AsyncSession, identity: Identity) -> list[dict]:
    if isinstance(identity, UserIdentity):
        rows = await crud.get_identity_permissions(db, user_id=identity.id)
    else:
        rows = await crud.get_identity_permissions(db, agent_id=identity.id)
    return [
        {"id": account.id, "name": account.name, "domain": account.domain, "role": permission.role}
        for permission, account in rows
    ]
