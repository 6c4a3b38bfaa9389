from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import models
from exceptions import ValidationError


async def create_audit_entry(
    db: AsyncSession,
    action: str,
    file_id: str,
    account_id: str,
    performed_by: Optional[str],
    performed_by_type: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> models.AuditLog:
    """Append one audit row. Joins the caller's transaction instead of committing."""
    if action not in models.AUDIT_ACTIONS:
        raise ValidationError(f"Unknown audit action: {action}")

    log = models.AuditLog(
        id=models.new_id(),
        file_id=file_id,
        account_id=account_id,
        action=action,
        performed_by=performed_by or "unknown",
        performed_by_type=performed_by_type,
        ip_address=ip_address,
        user_agent=user_agent[:500] if user_agent else None,
    )
    db.add(log)
    await db.flush()
    return log


async def get_file_audit_log(db: AsyncSession, file_id: str) -> list[models.AuditLog]:
    result = await db.execute(
        select(models.AuditLog)
        .where(models.AuditLog.file_id == file_id)
        .order_by(models.AuditLog.created_at.desc())
    )
    return list(result.scalars().all())
